from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any


@dataclass
class Project:
    id: int
    name: str
    path: str
    source: str
    created_at: int
    updated_at: int
    session_count: int = 0


@dataclass
class Session:
    id: int
    session_id: str
    project_id: int
    message_count: int
    last_message_at: int | None
    cwd: str | None
    model: str | None
    channel: str | None
    created_at: int
    updated_at: int


@dataclass
class Message:
    id: int
    session_id: str
    uuid: str
    role: str
    content: str
    timestamp: int
    sequence: int
    raw: str | None
    model: str | None
    tool_name: str | None
    tool_args: str | None
    tool_call_id: str | None
    created_at: int


@dataclass
class SearchResult:
    message_id: int
    session_id: str
    project_id: int
    project_name: str
    role: str
    content: str
    snippet: str
    score: float
    timestamp: int


@dataclass
class Stats:
    projects: int
    sessions: int
    messages: int

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)
