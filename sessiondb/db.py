from __future__ import annotations

import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

DEFAULT_DB_PATH = Path.home() / ".sessiondb" / "sessions.sqlite"


def now_ms() -> int:
    return int(time.time() * 1000)


def connect(
    db_path: Path | str,
    check_same_thread: bool = True,
    busy_timeout_ms: int = 5000,
) -> sqlite3.Connection:
    path = Path(db_path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    # Autocommit mode: single statements commit on their own and multi-statement
    # writes go through `write_transaction`.
    conn = sqlite3.connect(
        path,
        check_same_thread=check_same_thread,
        isolation_level=None,
        timeout=busy_timeout_ms / 1000.0,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        conn.execute("PRAGMA journal_mode = WAL")
    except sqlite3.OperationalError:
        conn.execute("PRAGMA journal_mode = DELETE")
    conn.execute("PRAGMA synchronous = NORMAL")
    conn.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)}")
    return conn


def initialize_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS projects (
            id INTEGER PRIMARY KEY,
            name TEXT NOT NULL,
            path TEXT NOT NULL,
            source TEXT NOT NULL DEFAULT 'claude',
            created_at INTEGER NOT NULL,
            updated_at INTEGER NOT NULL,
            UNIQUE(path, source)
        );

        CREATE TABLE IF NOT EXISTS sessions (
            id INTEGER PRIMARY KEY,
            session_id TEXT NOT NULL UNIQUE,
            project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
            message_count INTEGER NOT NULL DEFAULT 0,
            last_message_at INTEGER,
            cwd TEXT,
            created_at INTEGER NOT NULL,
            updated_at INTEGER NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_sessions_project ON sessions(project_id);

        CREATE TABLE IF NOT EXISTS messages (
            id INTEGER PRIMARY KEY,
            session_id TEXT NOT NULL REFERENCES sessions(session_id) ON DELETE CASCADE,
            uuid TEXT NOT NULL,
            role TEXT NOT NULL,
            content TEXT NOT NULL DEFAULT '',
            timestamp INTEGER NOT NULL,
            sequence INTEGER NOT NULL,
            raw TEXT,
            created_at INTEGER NOT NULL,
            UNIQUE(session_id, uuid)
        );
        CREATE INDEX IF NOT EXISTS idx_messages_session_seq ON messages(session_id, sequence);
        CREATE INDEX IF NOT EXISTS idx_messages_timestamp ON messages(timestamp);

        CREATE VIRTUAL TABLE IF NOT EXISTS messages_fts USING fts5(
            content,
            content='messages',
            content_rowid='id',
            tokenize='unicode61'
        );

        CREATE TRIGGER IF NOT EXISTS messages_ai AFTER INSERT ON messages BEGIN
            INSERT INTO messages_fts(rowid, content) VALUES (new.id, new.content);
        END;

        CREATE TRIGGER IF NOT EXISTS messages_ad AFTER DELETE ON messages BEGIN
            INSERT INTO messages_fts(messages_fts, rowid, content)
            VALUES ('delete', old.id, old.content);
        END;

        CREATE TRIGGER IF NOT EXISTS messages_au AFTER UPDATE ON messages BEGIN
            INSERT INTO messages_fts(messages_fts, rowid, content)
            VALUES ('delete', old.id, old.content);
            INSERT INTO messages_fts(rowid, content) VALUES (new.id, new.content);
        END;

        CREATE TABLE IF NOT EXISTS scan_checkpoints (
            session_id TEXT PRIMARY KEY REFERENCES sessions(session_id) ON DELETE CASCADE,
            path TEXT,
            last_timestamp INTEGER NOT NULL DEFAULT 0,
            byte_offset INTEGER NOT NULL DEFAULT 0,
            line_count INTEGER NOT NULL DEFAULT 0,
            file_size INTEGER,
            file_mtime_ms INTEGER,
            file_inode INTEGER,
            updated_at INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS writer_registry (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            writer_id TEXT NOT NULL,
            writer_type TEXT NOT NULL,
            pid INTEGER,
            hostname TEXT,
            registered_at INTEGER NOT NULL,
            heartbeat INTEGER NOT NULL
        );
        """
    )
    _ensure_column(conn, "sessions", "model", "TEXT")
    _ensure_column(conn, "sessions", "channel", "TEXT")
    _ensure_column(conn, "messages", "model", "TEXT")
    _ensure_column(conn, "messages", "tool_name", "TEXT")
    _ensure_column(conn, "messages", "tool_args", "TEXT")
    _ensure_column(conn, "messages", "tool_call_id", "TEXT")


def _ensure_column(conn: sqlite3.Connection, table: str, column: str, column_type: str) -> None:
    existing = {row["name"] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}
    if column in existing:
        return
    conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {column_type}")


@contextmanager
def write_transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block inside BEGIN IMMEDIATE; commit on success, roll back on any error.

    IMMEDIATE takes SQLite's write lock up front, so checks made at the start of
    the block still hold when the block commits.
    """

    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        # SQLite may already have rolled back on its own (e.g. SQLITE_FULL).
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")
