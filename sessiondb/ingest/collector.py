from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ..checkpoints import FileState, advance_checkpoint, file_unchanged, needs_reset
from ..errors import (
    CoordinationError,
    ParseFileError,
    PermissionDeniedError,
)
from ..events import EVENT_COLLECT_FINISHED, EVENT_NEW_MESSAGES, SessionEvent
from .parser import TranscriptReader, project_name_for
from .sources import TranscriptSource, default_sources, source_for_path

if TYPE_CHECKING:
    from ..store import SessionStore

logger = logging.getLogger(__name__)

# Sessions collected from coding agent transcripts.
CHANNEL_CODE = "code"


@dataclass
class CollectResult:
    projects_scanned: int = 0
    sessions_scanned: int = 0
    messages_inserted: int = 0
    files_skipped: int = 0
    parse_errors: int = 0
    new_message_ids: list[int] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def error_count(self) -> int:
        return len(self.errors)

    @property
    def first_error(self) -> str | None:
        return self.errors[0] if self.errors else None

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["error_count"] = self.error_count
        data["first_error"] = self.first_error
        return data


def _file_state(path: Path) -> FileState:
    try:
        return FileState.from_stat(path.stat())
    except FileNotFoundError as exc:
        raise ParseFileError(f"transcript not found: {path}") from exc
    except PermissionError as exc:
        raise PermissionDeniedError(f"cannot stat transcript: {path}") from exc
    except OSError as exc:
        raise ParseFileError(f"cannot stat transcript {path}: {exc}") from exc


def _collect_file(
    store: SessionStore,
    path: Path,
    source: str,
    result: CollectResult,
    project_ids: set[int],
) -> None:
    session_id = path.stem
    state = _file_state(path)
    checkpoint = store.get_checkpoint(session_id)
    if file_unchanged(checkpoint, state):
        logger.debug("skip unchanged transcript %s", path)
        result.files_skipped += 1
        return

    reset = needs_reset(checkpoint, state)
    if reset:
        logger.info("transcript %s was replaced or truncated; rescanning", path)
    resume = checkpoint is not None and not reset
    reader = TranscriptReader(
        path,
        session_id=session_id,
        start_offset=checkpoint.byte_offset if resume else 0,
        start_line=checkpoint.line_count if resume else 0,
        keep_raw=store.config.store_raw,
    )
    messages = list(reader)
    stats = reader.stats
    result.parse_errors += stats.errors
    if not resume and not messages:
        if stats.errors and not stats.skipped:
            raise ParseFileError(f"no valid records in {path} ({stats.first_error})")
        if store.get_session(session_id) is None:
            # Nothing to record yet; an empty transcript gets a row once it has messages.
            result.files_skipped += 1
            return

    with store.write_batch(f"collect {path}") as conn:
        row = conn.execute(
            "SELECT project_id FROM sessions WHERE session_id = ?", (session_id,)
        ).fetchone()
        if row is not None:
            project_id = int(row["project_id"])
            if reader.cwd or reader.model:
                store._upsert_session_row(
                    conn, session_id, project_id, reader.cwd, model=reader.model
                )
        else:
            project_path = reader.cwd or str(path.parent)
            project_id = store._upsert_project_row(
                conn, project_name_for(project_path), project_path, source
            )
            store._upsert_session_row(
                conn,
                session_id,
                project_id,
                reader.cwd,
                model=reader.model,
                channel=CHANNEL_CODE,
            )
        if row is not None and not resume and messages:
            known = store._existing_uuids(conn, session_id, [m.uuid for m in messages])
            messages = [m for m in messages if m.uuid not in known]
        inserted = store._insert_message_rows(conn, session_id, messages)
        timestamps = [m.timestamp for m in messages]
        advance_checkpoint(
            conn,
            session_id,
            last_timestamp=max(timestamps) if timestamps else None,
            byte_offset=reader.end_offset,
            line_count=reader.line_count,
            path=str(path),
            file_state=state,
            reset_offset=reset,
        )

    project_ids.add(project_id)
    result.sessions_scanned += 1
    result.messages_inserted += len(inserted)
    result.new_message_ids.extend(inserted)
    if inserted:
        store.events.publish(
            SessionEvent(
                kind=EVENT_NEW_MESSAGES,
                session_id=session_id,
                path=str(path),
                count=len(inserted),
                message_ids=list(inserted),
            )
        )


def _collect_one(
    store: SessionStore,
    path: Path,
    source: str,
    result: CollectResult,
    project_ids: set[int],
) -> None:
    try:
        _collect_file(store, path, source, result, project_ids)
    except CoordinationError:
        raise
    except Exception as exc:
        logger.warning("failed to collect %s: %s", path, exc)
        result.errors.append(f"{path}: {exc}")


def _finish(store: SessionStore, result: CollectResult, project_ids: set[int]) -> CollectResult:
    result.projects_scanned = len(project_ids)
    logger.info(
        "collected %s messages from %s sessions (%s skipped, %s errors)",
        result.messages_inserted,
        result.sessions_scanned,
        result.files_skipped,
        result.error_count,
    )
    store.events.publish(SessionEvent(kind=EVENT_COLLECT_FINISHED, data=result.as_dict()))
    return result


def collect(store: SessionStore, sources: list[TranscriptSource] | None = None) -> CollectResult:
    """Ingest every discovered transcript, one committed transaction per file.

    Per-file failures are recorded in the result and the sweep moves on; only a
    CoordinationError (no right to write) stops it.
    """

    store.lease.ensure_write_entitlement()
    sources = sources if sources is not None else default_sources(store.config)
    result = CollectResult()
    project_ids: set[int] = set()
    for source in sources:
        for path in source.discover():
            _collect_one(store, path, source.name, result, project_ids)
    return _finish(store, result, project_ids)


def collect_by_path(
    store: SessionStore, path: Path | str, *, source: str | None = None
) -> CollectResult:
    store.lease.ensure_write_entitlement()
    target = Path(path).expanduser()
    source_name = source or source_for_path(target, default_sources(store.config))
    result = CollectResult()
    project_ids: set[int] = set()
    _collect_one(store, target, source_name, result, project_ids)
    return _finish(store, result, project_ids)
