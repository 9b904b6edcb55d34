from __future__ import annotations

import json
import logging
import sqlite3
import warnings
from collections.abc import Callable, Iterable, Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .. import db
from ..checkpoints import Checkpoint, advance_checkpoint, get_checkpoint
from ..config import SessionDbConfig, load_config
from ..coordination import (
    HeartbeatKeeper,
    LeaseManager,
    WriterHealth,
    WriterInfo,
)
from ..errors import (
    InvalidInputError,
    PermissionDeniedError,
    database_errors,
    require_text,
)
from ..events import EVENT_WRITER_CHANGED, EventBus, SessionEvent
from ..ingest.parser import (
    MESSAGE_ROLES,
    ParsedMessage,
    SessionDescription,
    normalize_role,
    parse_jsonl,
    parse_timestamp,
    project_name_for,
)
from . import search as store_search
from .types import Message, Project, SearchResult, Session, Stats

if TYPE_CHECKING:
    from ..ingest.collector import CollectResult
    from ..ingest.sources import TranscriptSource

logger = logging.getLogger(__name__)

_UUID_CHUNK = 500


def _escape_like(value: str, *, escape: str = "!") -> str:
    return (
        value.replace(escape, escape + escape)
        .replace("%", escape + "%")
        .replace("_", escape + "_")
    )


def _optional_text(record: Mapping[str, Any], key: str) -> str | None:
    value = record.get(key)
    return require_text(value, key) if value is not None else None


class SessionStore:
    """Handle on one session database: the connection plus this process's lease state.

    Reads never consult the lease. Every write runs in one BEGIN IMMEDIATE
    transaction that first re-checks write entitlement, so a handle whose lease
    was taken over cannot commit. Closing the store stops the heartbeat
    thread, gives up a held lease and closes the connection.
    """

    def __init__(
        self,
        db_path: Path | str | None = None,
        *,
        config: SessionDbConfig | None = None,
        events: EventBus | None = None,
        writer_id: str | None = None,
        clock: Callable[[], int] = db.now_ms,
    ) -> None:
        self.config = config or load_config()
        self.db_path = Path(db_path or self.config.db_path or db.DEFAULT_DB_PATH).expanduser()
        try:
            with database_errors(f"open {self.db_path}"):
                self.conn = db.connect(self.db_path, busy_timeout_ms=self.config.busy_timeout_ms)
                db.initialize_schema(self.conn)
        except PermissionError as exc:
            raise PermissionDeniedError(f"cannot open {self.db_path}: {exc}") from exc
        self.events = events or EventBus()
        self.lease = LeaseManager(
            self.conn,
            writer_id=writer_id,
            timeout_ms=self.config.lease_timeout_ms,
            clock=clock,
        )
        self._heartbeat: HeartbeatKeeper | None = None
        self._closed = False

    def __enter__(self) -> SessionStore:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._stop_heartbeat()
            if self.lease.is_writer:
                self.lease.release()
        finally:
            self.conn.close()

    @property
    def closed(self) -> bool:
        return self._closed

    # ---- writer lease -------------------------------------------------------

    @property
    def role(self) -> str | None:
        return self.lease.role

    @property
    def is_writer(self) -> bool:
        return self.lease.is_writer

    def register_writer(self, role_hint: str | None = None) -> str:
        was_writer = self.lease.is_writer
        role = self.lease.register(role_hint)
        self._start_heartbeat()
        if not was_writer:
            self._publish_writer_changed("registered")
        return role

    def heartbeat(self) -> None:
        self.lease.heartbeat()

    def release_writer(self) -> bool:
        self._stop_heartbeat()
        released = self.lease.release()
        if released:
            self._publish_writer_changed("released")
        return released

    def check_writer_health(self) -> WriterHealth:
        return self.lease.check_health()

    def try_takeover(self, role_hint: str | None = None) -> bool:
        if not self.lease.try_takeover(role_hint):
            return False
        self._start_heartbeat()
        self._publish_writer_changed("takeover")
        return True

    def current_writer(self) -> WriterInfo | None:
        return self.lease.current_writer()

    def _start_heartbeat(self) -> None:
        if not self.config.auto_heartbeat:
            return
        if self._heartbeat is not None and self._heartbeat.running:
            return
        interval_ms = self.config.heartbeat_interval_ms
        timeout_ms = self.config.lease_timeout_ms
        if interval_ms <= 0 or interval_ms >= timeout_ms:
            warnings.warn(
                f"heartbeat_interval_ms={interval_ms} must be below lease_timeout_ms={timeout_ms}",
                RuntimeWarning,
                stacklevel=3,
            )
            interval_ms = max(1, timeout_ms // 3)
        self._heartbeat = HeartbeatKeeper(
            self.db_path,
            self.lease.writer_id,
            interval_ms=interval_ms,
            timeout_ms=timeout_ms,
            busy_timeout_ms=self.config.busy_timeout_ms,
            on_lost=self.lease.mark_lost,
        )
        self._heartbeat.start()

    def _stop_heartbeat(self) -> None:
        keeper = self._heartbeat
        self._heartbeat = None
        if keeper is not None:
            keeper.stop()

    def _publish_writer_changed(self, action: str) -> None:
        self.events.publish(
            SessionEvent(
                kind=EVENT_WRITER_CHANGED,
                data={"action": action, "writer_id": self.lease.writer_id, "role": self.role},
            )
        )

    @contextmanager
    def write_batch(self, action: str) -> Iterator[sqlite3.Connection]:
        """Open a write transaction for one logical step, lease checked inside it."""

        with database_errors(action), db.write_transaction(self.conn) as conn:
            self.lease.ensure_write_entitlement()
            yield conn

    # ---- projects -----------------------------------------------------------

    def _upsert_project_row(
        self, conn: sqlite3.Connection, name: str, path: str, source: str
    ) -> int:
        now = db.now_ms()
        rows = conn.execute(
            """
            INSERT INTO projects(name, path, source, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(path, source) DO UPDATE SET
                name = excluded.name,
                updated_at = excluded.updated_at
            RETURNING id
            """,
            (name, path, source, now, now),
        ).fetchall()
        return int(rows[0]["id"])

    def upsert_project(self, name: str | None, path: str, source: str = "claude") -> int:
        path = require_text(path, "path")
        source = require_text(source, "source")
        if not path.strip():
            raise InvalidInputError("path must not be empty", kind="null_pointer")
        name = require_text(name, "name") if name is not None else ""
        name = name.strip() or project_name_for(path)
        with self.write_batch("upsert project") as conn:
            return self._upsert_project_row(conn, name, path, source)

    def get_project(self, project_id: int) -> Project | None:
        with database_errors("get project"):
            row = self.conn.execute(
                """
                SELECT projects.*, COUNT(sessions.id) AS session_count
                FROM projects
                LEFT JOIN sessions ON sessions.project_id = projects.id
                WHERE projects.id = ?
                GROUP BY projects.id
                """,
                (project_id,),
            ).fetchone()
        return Project(**dict(row)) if row else None

    def list_projects(self) -> list[Project]:
        with database_errors("list projects"):
            rows = self.conn.execute(
                """
                SELECT projects.*, COUNT(sessions.id) AS session_count
                FROM projects
                LEFT JOIN sessions ON sessions.project_id = projects.id
                GROUP BY projects.id
                ORDER BY projects.updated_at DESC, projects.id DESC
                """
            ).fetchall()
        return [Project(**dict(row)) for row in rows]

    # ---- sessions -----------------------------------------------------------

    def _upsert_session_row(
        self,
        conn: sqlite3.Connection,
        session_id: str,
        project_id: int,
        cwd: str | None = None,
        *,
        model: str | None = None,
        channel: str | None = None,
    ) -> int:
        now = db.now_ms()
        rows = conn.execute(
            """
            INSERT INTO sessions(session_id, project_id, cwd, model, channel, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(session_id) DO UPDATE SET
                cwd = COALESCE(excluded.cwd, sessions.cwd),
                model = COALESCE(excluded.model, sessions.model),
                channel = COALESCE(excluded.channel, sessions.channel),
                updated_at = excluded.updated_at
            RETURNING id
            """,
            (session_id, project_id, cwd, model, channel, now, now),
        ).fetchall()
        return int(rows[0]["id"])

    def upsert_session(
        self,
        session_id: str,
        project_id: int,
        cwd: str | None = None,
        *,
        model: str | None = None,
        channel: str | None = None,
    ) -> int:
        session_id = require_text(session_id, "session_id")
        if cwd is not None:
            cwd = require_text(cwd, "cwd")
        if model is not None:
            model = require_text(model, "model")
        if channel is not None:
            channel = require_text(channel, "channel")
        with self.write_batch("upsert session") as conn:
            return self._upsert_session_row(
                conn, session_id, project_id, cwd, model=model, channel=channel
            )

    def _session_from_row(self, row: sqlite3.Row) -> Session:
        return Session(
            id=row["id"],
            session_id=row["session_id"],
            project_id=row["project_id"],
            message_count=row["message_count"],
            last_message_at=row["last_message_at"],
            cwd=row["cwd"],
            model=row["model"],
            channel=row["channel"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def get_session(self, session_id: str) -> Session | None:
        session_id = require_text(session_id, "session_id")
        with database_errors("get session"):
            row = self.conn.execute(
                "SELECT * FROM sessions WHERE session_id = ?", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def resolve_session_id(self, prefix: str) -> str | None:
        """Full session id for an exact id or a unique-enough prefix (most recent wins)."""

        prefix = require_text(prefix, "prefix")
        if self.get_session(prefix) is not None:
            return prefix
        matches = self.search_sessions_by_prefix(prefix, limit=1)
        return matches[0].session_id if matches else None

    def search_sessions_by_prefix(self, prefix: str, limit: int = 20) -> list[Session]:
        prefix = require_text(prefix, "prefix")
        if not prefix or limit <= 0:
            return []
        pattern = _escape_like(prefix) + "%"
        with database_errors("search sessions"):
            rows = self.conn.execute(
                """
                SELECT * FROM sessions
                WHERE session_id LIKE ? ESCAPE '!'
                ORDER BY updated_at DESC, id DESC
                LIMIT ?
                """,
                (pattern, limit),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def list_sessions(self, project_id: int) -> list[Session]:
        with database_errors("list sessions"):
            rows = self.conn.execute(
                """
                SELECT * FROM sessions
                WHERE project_id = ?
                ORDER BY COALESCE(last_message_at, updated_at) DESC, id DESC
                """,
                (project_id,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def _refresh_session_counts(self, conn: sqlite3.Connection, session_id: str) -> None:
        conn.execute(
            """
            UPDATE sessions SET
                message_count = (SELECT COUNT(*) FROM messages WHERE session_id = ?),
                last_message_at = (SELECT MAX(timestamp) FROM messages WHERE session_id = ?),
                updated_at = ?
            WHERE session_id = ?
            """,
            (session_id, session_id, db.now_ms(), session_id),
        )

    # ---- checkpoints --------------------------------------------------------

    def get_checkpoint(self, session_id: str) -> Checkpoint | None:
        session_id = require_text(session_id, "session_id")
        with database_errors("read checkpoint"):
            return get_checkpoint(self.conn, session_id)

    def get_scan_checkpoint(self, session_id: str) -> int | None:
        checkpoint = self.get_checkpoint(session_id)
        return checkpoint.last_timestamp if checkpoint else None

    def update_session_last_message(self, session_id: str, timestamp: int) -> int:
        """Advance the session's scan checkpoint; returns the stored (clamped) value."""

        session_id = require_text(session_id, "session_id")
        with self.write_batch("update scan checkpoint") as conn:
            return advance_checkpoint(conn, session_id, last_timestamp=int(timestamp)).last_timestamp

    # ---- messages -----------------------------------------------------------

    @staticmethod
    def _coerce_record(record: ParsedMessage | Mapping[str, Any], index: int) -> ParsedMessage:
        if isinstance(record, ParsedMessage):
            return record
        if not isinstance(record, Mapping):
            raise InvalidInputError(f"record {index} must be a mapping", kind="null_pointer")
        uuid = record.get("uuid")
        if uuid is None or not str(uuid).strip():
            raise InvalidInputError(f"record {index} has no uuid", kind="null_pointer")
        role = normalize_role(record.get("role"))
        if role not in MESSAGE_ROLES:
            raise InvalidInputError(f"record {index} has invalid role {record.get('role')!r}")
        timestamp = parse_timestamp(record.get("timestamp"))
        if timestamp is None:
            raise InvalidInputError(f"record {index} has invalid timestamp")
        sequence = record.get("sequence")
        if not isinstance(sequence, int) or isinstance(sequence, bool):
            sequence = index
        content = record.get("content")
        raw = record.get("raw")
        tool_args = record.get("tool_args")
        if tool_args is not None and not isinstance(tool_args, (str, bytes)):
            tool_args = json.dumps(tool_args, ensure_ascii=False)
        return ParsedMessage(
            uuid=require_text(str(uuid), "uuid"),
            role=role,
            content=require_text(content, "content") if content is not None else "",
            timestamp=timestamp,
            sequence=sequence,
            raw=require_text(raw, "raw") if raw is not None else None,
            model=_optional_text(record, "model"),
            tool_name=_optional_text(record, "tool_name"),
            tool_args=require_text(tool_args, "tool_args") if tool_args is not None else None,
            tool_call_id=_optional_text(record, "tool_call_id"),
        )

    def _existing_uuids(
        self, conn: sqlite3.Connection, session_id: str, uuids: list[str]
    ) -> set[str]:
        existing: set[str] = set()
        for start in range(0, len(uuids), _UUID_CHUNK):
            chunk = uuids[start : start + _UUID_CHUNK]
            placeholders = ",".join("?" for _ in chunk)
            rows = conn.execute(
                f"SELECT uuid FROM messages WHERE session_id = ? AND uuid IN ({placeholders})",
                [session_id, *chunk],
            ).fetchall()
            existing.update(row["uuid"] for row in rows)
        return existing

    def _insert_message_rows(
        self,
        conn: sqlite3.Connection,
        session_id: str,
        messages: Iterable[ParsedMessage],
    ) -> list[int]:
        now = db.now_ms()
        inserted: list[int] = []
        for message in messages:
            rows = conn.execute(
                """
                INSERT INTO messages(
                    session_id, uuid, role, content, timestamp, sequence, raw,
                    model, tool_name, tool_args, tool_call_id, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(session_id, uuid) DO NOTHING
                RETURNING id
                """,
                (
                    session_id,
                    message.uuid,
                    message.role,
                    message.content,
                    message.timestamp,
                    message.sequence,
                    message.raw,
                    message.model,
                    message.tool_name,
                    message.tool_args,
                    message.tool_call_id,
                    now,
                ),
            ).fetchall()
            if rows:
                inserted.append(int(rows[0]["id"]))
        self._refresh_session_counts(conn, session_id)
        return inserted

    def insert_messages(
        self,
        session_id: str,
        records: Iterable[ParsedMessage | Mapping[str, Any]],
    ) -> int:
        """Insert records for an existing session; returns how many were new."""

        session_id = require_text(session_id, "session_id")
        messages = [self._coerce_record(record, index) for index, record in enumerate(records)]
        with self.write_batch("insert messages") as conn:
            inserted = self._insert_message_rows(conn, session_id, messages)
        logger.debug("inserted %s of %s messages into %s", len(inserted), len(messages), session_id)
        return len(inserted)

    def list_messages(
        self, session_id: str, limit: int | None = None, offset: int = 0
    ) -> list[Message]:
        session_id = require_text(session_id, "session_id")
        with database_errors("list messages"):
            rows = self.conn.execute(
                """
                SELECT id, session_id, uuid, role, content, timestamp, sequence, raw,
                       model, tool_name, tool_args, tool_call_id, created_at
                FROM messages
                WHERE session_id = ?
                ORDER BY sequence ASC, timestamp ASC, id ASC
                LIMIT ? OFFSET ?
                """,
                (session_id, -1 if limit is None else limit, max(0, offset)),
            ).fetchall()
        return [Message(**dict(row)) for row in rows]

    # ---- stats and search ---------------------------------------------------

    def get_stats(self) -> Stats:
        with database_errors("read stats"):
            row = self.conn.execute(
                """
                SELECT
                    (SELECT COUNT(*) FROM projects) AS projects,
                    (SELECT COUNT(*) FROM sessions) AS sessions,
                    (SELECT COUNT(*) FROM messages) AS messages
                """
            ).fetchone()
        return Stats(projects=row["projects"], sessions=row["sessions"], messages=row["messages"])

    def search_fts(
        self,
        query: str,
        limit: int = 20,
        *,
        project_id: int | None = None,
        order_by: str = store_search.ORDER_SCORE,
        start_ts: int | None = None,
        end_ts: int | None = None,
    ) -> list[SearchResult]:
        return store_search.search_fts(
            self,
            query,
            limit,
            project_id=project_id,
            order_by=order_by,
            start_ts=start_ts,
            end_ts=end_ts,
        )

    # ---- ingestion ----------------------------------------------------------

    def parse_jsonl(self, path: Path | str) -> SessionDescription:
        return parse_jsonl(path)

    def collect(self, sources: list[TranscriptSource] | None = None) -> CollectResult:
        from ..ingest.collector import collect

        return collect(self, sources)

    def collect_by_path(self, path: Path | str, source: str | None = None) -> CollectResult:
        from ..ingest.collector import collect_by_path

        return collect_by_path(self, path, source=source)


def connect(db_path: Path | str | None = None, **kwargs: Any) -> SessionStore:
    return SessionStore(db_path, **kwargs)
