from __future__ import annotations

import os
import sqlite3
from dataclasses import dataclass

from .db import now_ms
from .errors import SessionDbRuntimeError


@dataclass
class Checkpoint:
    session_id: str
    path: str | None
    last_timestamp: int
    byte_offset: int
    line_count: int
    file_size: int | None
    file_mtime_ms: int | None
    file_inode: int | None
    updated_at: int


@dataclass
class FileState:
    size: int
    mtime_ms: int
    inode: int

    @classmethod
    def from_stat(cls, st: os.stat_result) -> FileState:
        return cls(size=st.st_size, mtime_ms=int(st.st_mtime * 1000), inode=st.st_ino)


def get_checkpoint(conn: sqlite3.Connection, session_id: str) -> Checkpoint | None:
    row = conn.execute(
        """
        SELECT session_id, path, last_timestamp, byte_offset, line_count,
               file_size, file_mtime_ms, file_inode, updated_at
        FROM scan_checkpoints
        WHERE session_id = ?
        """,
        (session_id,),
    ).fetchone()
    if row is None:
        return None
    return Checkpoint(**dict(row))


def advance_checkpoint(
    conn: sqlite3.Connection,
    session_id: str,
    *,
    last_timestamp: int | None = None,
    byte_offset: int | None = None,
    line_count: int | None = None,
    path: str | None = None,
    file_state: FileState | None = None,
    reset_offset: bool = False,
) -> Checkpoint:
    """Move a session's checkpoint forward and return the stored value.

    Values behind the stored ones are clamped, never written. `reset_offset`
    restarts the byte/line cursor after the file was replaced or truncated;
    `last_timestamp` stays monotonic even then.
    """

    now = now_ms()
    ts = last_timestamp or 0
    offset = byte_offset or 0
    lines = line_count or 0
    size = file_state.size if file_state else None
    mtime = file_state.mtime_ms if file_state else None
    inode = file_state.inode if file_state else None
    if reset_offset:
        cursor_sql = "byte_offset = excluded.byte_offset, line_count = excluded.line_count"
    else:
        cursor_sql = (
            "byte_offset = MAX(scan_checkpoints.byte_offset, excluded.byte_offset), "
            "line_count = MAX(scan_checkpoints.line_count, excluded.line_count)"
        )
    conn.execute(
        f"""
        INSERT INTO scan_checkpoints(
            session_id, path, last_timestamp, byte_offset, line_count,
            file_size, file_mtime_ms, file_inode, updated_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(session_id) DO UPDATE SET
            path = COALESCE(excluded.path, scan_checkpoints.path),
            last_timestamp = MAX(scan_checkpoints.last_timestamp, excluded.last_timestamp),
            {cursor_sql},
            file_size = COALESCE(excluded.file_size, scan_checkpoints.file_size),
            file_mtime_ms = COALESCE(excluded.file_mtime_ms, scan_checkpoints.file_mtime_ms),
            file_inode = COALESCE(excluded.file_inode, scan_checkpoints.file_inode),
            updated_at = excluded.updated_at
        """,
        (session_id, path, ts, offset, lines, size, mtime, inode, now),
    )
    checkpoint = get_checkpoint(conn, session_id)
    if checkpoint is None:
        raise SessionDbRuntimeError(f"checkpoint for {session_id} vanished after write")
    return checkpoint


def file_unchanged(checkpoint: Checkpoint | None, state: FileState) -> bool:
    if checkpoint is None:
        return False
    return (
        checkpoint.file_inode == state.inode
        and checkpoint.file_size == state.size
        and checkpoint.file_mtime_ms == state.mtime_ms
        and checkpoint.byte_offset >= state.size
    )


def needs_reset(checkpoint: Checkpoint | None, state: FileState) -> bool:
    """True when the file no longer extends the bytes the checkpoint covers."""

    if checkpoint is None or checkpoint.byte_offset == 0:
        return False
    if checkpoint.file_inode is not None and checkpoint.file_inode != state.inode:
        return True
    return state.size < checkpoint.byte_offset
