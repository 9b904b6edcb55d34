from __future__ import annotations

import logging
import os
import socket
import sqlite3
import threading
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Literal
from uuid import uuid4

from .db import connect, now_ms
from .errors import CoordinationError, database_errors

logger = logging.getLogger(__name__)

ROLE_WRITER = "writer"
ROLE_READER = "reader"

HEALTH_ALIVE = "alive"
HEALTH_TIMEOUT = "timeout"
HEALTH_RELEASED = "released"

WriterHealth = Literal["alive", "timeout", "released"]

DEFAULT_WRITER_TYPE = "collector"


def new_writer_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


@dataclass
class WriterInfo:
    writer_id: str
    writer_type: str
    pid: int | None
    hostname: str | None
    registered_at: int
    heartbeat: int

    def age_ms(self, now: int) -> int:
        return now - self.heartbeat


class LeaseManager:
    """Arbitrates the singleton writer lease stored in `writer_registry`.

    Every claim is a single conditional statement, so the check against the
    last heartbeat and the write of the new holder happen at one instant under
    SQLite's write lock. Nothing here waits for the lease: callers get an
    answer or a CoordinationError and choose their own retry policy.

    `role` is this handle's view: None until coordination is first used,
    `writer` while it believes it holds the lease, `reader` after a refused
    claim, a detected takeover or a release.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        writer_id: str | None = None,
        timeout_ms: int = 30_000,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.conn = conn
        self.writer_id = writer_id or new_writer_id()
        self.timeout_ms = timeout_ms
        self._clock = clock
        self.role: str | None = None
        self.writer_type: str | None = None

    @property
    def is_writer(self) -> bool:
        return self.role == ROLE_WRITER

    def current_writer(self) -> WriterInfo | None:
        with database_errors("read writer lease"):
            row = self.conn.execute(
                """
                SELECT writer_id, writer_type, pid, hostname, registered_at, heartbeat
                FROM writer_registry
                WHERE id = 1
                """
            ).fetchone()
        if row is None:
            return None
        return WriterInfo(**dict(row))

    def _health_of(self, info: WriterInfo | None, now: int) -> WriterHealth:
        if info is None:
            return HEALTH_RELEASED
        if info.age_ms(now) < self.timeout_ms:
            return HEALTH_ALIVE
        return HEALTH_TIMEOUT

    def check_health(self) -> WriterHealth:
        return self._health_of(self.current_writer(), self._clock())

    def _claim(self, writer_type: str, *, allow_self: bool) -> bool:
        now = self._clock()
        condition = "? - writer_registry.heartbeat >= ?"
        if allow_self:
            condition = f"writer_registry.writer_id = excluded.writer_id OR {condition}"
        with database_errors("claim writer lease"):
            rows = self.conn.execute(
                f"""
                INSERT INTO writer_registry(
                    id, writer_id, writer_type, pid, hostname, registered_at, heartbeat
                )
                VALUES (1, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    writer_type = excluded.writer_type,
                    pid = excluded.pid,
                    hostname = excluded.hostname,
                    registered_at = CASE
                        WHEN writer_registry.writer_id = excluded.writer_id
                        THEN writer_registry.registered_at
                        ELSE excluded.registered_at
                    END,
                    writer_id = excluded.writer_id,
                    heartbeat = excluded.heartbeat
                WHERE {condition}
                RETURNING writer_id
                """,
                (
                    self.writer_id,
                    writer_type,
                    os.getpid(),
                    socket.gethostname(),
                    now,
                    now,
                    now,
                    self.timeout_ms,
                ),
            ).fetchall()
        return bool(rows)

    def register(self, role_hint: str | None = None) -> str:
        writer_type = role_hint or self.writer_type or DEFAULT_WRITER_TYPE
        if self._claim(writer_type, allow_self=True):
            if self.role != ROLE_WRITER:
                logger.info("registered as writer %s (%s)", self.writer_id, writer_type)
            self.role = ROLE_WRITER
            self.writer_type = writer_type
            return ROLE_WRITER
        self.role = ROLE_READER
        holder = self.current_writer()
        if holder is None:
            raise CoordinationError("writer lease contended; retry")
        raise CoordinationError(
            f"writer lease held by {holder.writer_id} ({holder.writer_type}, pid {holder.pid})"
        )

    def heartbeat(self) -> None:
        with database_errors("refresh writer lease"):
            cur = self.conn.execute(
                "UPDATE writer_registry SET heartbeat = ? WHERE id = 1 AND writer_id = ?",
                (self._clock(), self.writer_id),
            )
        if cur.rowcount == 0:
            if self.role == ROLE_WRITER:
                logger.warning("writer lease lost by %s", self.writer_id)
            self.role = ROLE_READER
            raise CoordinationError("writer lease not held; it was released or taken over")
        logger.debug("writer lease refreshed by %s", self.writer_id)

    def release(self) -> bool:
        with database_errors("release writer lease"):
            cur = self.conn.execute(
                "DELETE FROM writer_registry WHERE id = 1 AND writer_id = ?",
                (self.writer_id,),
            )
        released = cur.rowcount > 0
        if released:
            logger.info("released writer lease %s", self.writer_id)
        if self.role is not None:
            self.role = ROLE_READER
        return released

    def try_takeover(self, role_hint: str | None = None) -> bool:
        writer_type = role_hint or self.writer_type or DEFAULT_WRITER_TYPE
        previous = self.current_writer()
        if not self._claim(writer_type, allow_self=False):
            if self.role is None:
                self.role = ROLE_READER
            return False
        if previous is not None and previous.writer_id != self.writer_id:
            logger.info("took over writer lease from %s as %s", previous.writer_id, self.writer_id)
        else:
            logger.info("claimed released writer lease as %s", self.writer_id)
        self.role = ROLE_WRITER
        self.writer_type = writer_type
        return True

    def mark_lost(self, exc: BaseException | None = None) -> None:
        if self.role == ROLE_WRITER:
            logger.warning("writer lease lost by %s: %s", self.writer_id, exc or "unknown reason")
            self.role = ROLE_READER

    def ensure_write_entitlement(self) -> None:
        """Raise CoordinationError unless this handle may write right now.

        Call inside a write transaction opened with BEGIN IMMEDIATE so no
        takeover can commit between this check and the caller's commit.
        """

        holder = self.current_writer()
        now = self._clock()
        if self.role == ROLE_WRITER:
            if holder is None or holder.writer_id != self.writer_id:
                self.role = ROLE_READER
                raise CoordinationError("writer lease lost; write rejected")
            if self._health_of(holder, now) != HEALTH_ALIVE:
                raise CoordinationError("writer lease expired; heartbeat before writing")
            return
        if self.role == ROLE_READER:
            raise CoordinationError("handle is a reader; register or take over before writing")
        if holder is not None and self._health_of(holder, now) == HEALTH_ALIVE:
            raise CoordinationError(f"writer lease held by {holder.writer_id}; write rejected")


class HeartbeatKeeper:
    """Refreshes a writer lease from a background thread until stopped.

    Uses its own connection to the database file; `on_lost` is called once if
    the lease turns out to belong to someone else, and the thread then exits.
    """

    def __init__(
        self,
        db_path: Path | str,
        writer_id: str,
        *,
        interval_ms: int = 10_000,
        timeout_ms: int = 30_000,
        busy_timeout_ms: int = 5000,
        on_lost: Callable[[CoordinationError], None] | None = None,
    ) -> None:
        self.db_path = db_path
        self.writer_id = writer_id
        self.interval_ms = interval_ms
        self.timeout_ms = timeout_ms
        self.busy_timeout_ms = busy_timeout_ms
        self.on_lost = on_lost
        self.lost: CoordinationError | None = None
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self.lost = None
        self._thread = threading.Thread(
            target=self._run, name="sessiondb-heartbeat", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        thread = self._thread
        self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def _run(self) -> None:
        conn = connect(self.db_path, busy_timeout_ms=self.busy_timeout_ms)
        lease = LeaseManager(conn, writer_id=self.writer_id, timeout_ms=self.timeout_ms)
        lease.role = ROLE_WRITER
        try:
            while not self._stop.wait(self.interval_ms / 1000.0):
                try:
                    lease.heartbeat()
                except CoordinationError as exc:
                    self.lost = exc
                    if self.on_lost is not None:
                        self.on_lost(exc)
                    return
                except Exception as exc:
                    # Storage errors are retried on the next tick.
                    logger.exception("writer heartbeat failed", exc_info=exc)
                    continue
        finally:
            conn.close()
