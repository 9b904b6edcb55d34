from __future__ import annotations

from .errors import (
    CoordinationError,
    DatabaseError,
    InvalidInputError,
    ParseFileError,
    PermissionDeniedError,
    SessionDbError,
)
from .ingest.parser import parse_jsonl
from .store import SessionStore, connect

__all__ = [
    "CoordinationError",
    "DatabaseError",
    "InvalidInputError",
    "ParseFileError",
    "PermissionDeniedError",
    "SessionDbError",
    "SessionStore",
    "connect",
    "parse_jsonl",
]
