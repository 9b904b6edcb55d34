from __future__ import annotations

from ._store import SessionStore, connect
from .search import (
    ORDER_SCORE,
    ORDER_TIME_ASC,
    ORDER_TIME_DESC,
    SEARCH_ORDERS,
    escape_fts5_query,
)
from .types import Message, Project, SearchResult, Session, Stats

__all__ = [
    "Message",
    "ORDER_SCORE",
    "ORDER_TIME_ASC",
    "ORDER_TIME_DESC",
    "Project",
    "SEARCH_ORDERS",
    "SearchResult",
    "Session",
    "SessionStore",
    "connect",
    "Stats",
    "escape_fts5_query",
]
