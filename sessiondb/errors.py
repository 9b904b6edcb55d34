from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager

ERROR_NULL_POINTER = "null_pointer"
ERROR_INVALID_UTF8 = "invalid_utf8"
ERROR_DATABASE = "database"
ERROR_COORDINATION = "coordination"
ERROR_PERMISSION_DENIED = "permission_denied"
ERROR_CONNECTION_FAILED = "connection_failed"
ERROR_NOT_CONNECTED = "not_connected"
ERROR_REQUEST_FAILED = "request_failed"
ERROR_AGENT_NOT_FOUND = "agent_not_found"
ERROR_RUNTIME = "runtime"
ERROR_UNKNOWN = "unknown"

ERROR_KINDS = (
    ERROR_NULL_POINTER,
    ERROR_INVALID_UTF8,
    ERROR_DATABASE,
    ERROR_COORDINATION,
    ERROR_PERMISSION_DENIED,
    ERROR_CONNECTION_FAILED,
    ERROR_NOT_CONNECTED,
    ERROR_REQUEST_FAILED,
    ERROR_AGENT_NOT_FOUND,
    ERROR_RUNTIME,
    ERROR_UNKNOWN,
)


class SessionDbError(Exception):
    """Base error; `kind` names the failure class, `message` the diagnostic text."""

    kind = ERROR_UNKNOWN

    def __init__(self, message: str = "", *, kind: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind

    def __str__(self) -> str:
        if self.message:
            return f"{self.kind}: {self.message}"
        return self.kind


class InvalidInputError(SessionDbError, ValueError):
    kind = ERROR_INVALID_UTF8


class DatabaseError(SessionDbError):
    kind = ERROR_DATABASE


class CoordinationError(SessionDbError):
    kind = ERROR_COORDINATION


class PermissionDeniedError(SessionDbError):
    kind = ERROR_PERMISSION_DENIED


class SessionDbRuntimeError(SessionDbError):
    kind = ERROR_RUNTIME


class ParseFileError(SessionDbRuntimeError):
    pass


def error_kind(exc: BaseException) -> str:
    if isinstance(exc, SessionDbError):
        return exc.kind
    if isinstance(exc, sqlite3.Error):
        return ERROR_DATABASE
    if isinstance(exc, PermissionError):
        return ERROR_PERMISSION_DENIED
    if isinstance(exc, UnicodeError):
        return ERROR_INVALID_UTF8
    return ERROR_UNKNOWN


@contextmanager
def database_errors(action: str) -> Iterator[None]:
    """Re-raise sqlite3 failures as DatabaseError, leaving our own errors alone."""

    try:
        yield
    except sqlite3.Error as exc:
        raise DatabaseError(f"{action}: {exc}") from exc


def require_text(value: object, name: str) -> str:
    if value is None:
        raise InvalidInputError(f"{name} is required", kind=ERROR_NULL_POINTER)
    if isinstance(value, bytes):
        try:
            return value.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise InvalidInputError(f"{name} is not valid UTF-8") from exc
    if not isinstance(value, str):
        raise InvalidInputError(f"{name} must be text, got {type(value).__name__}")
    try:
        value.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise InvalidInputError(f"{name} is not valid UTF-8") from exc
    return value
