from __future__ import annotations

from .parser import (
    MESSAGE_ROLES,
    ParsedMessage,
    ParseStats,
    SessionDescription,
    TranscriptReader,
    iter_messages,
    parse_jsonl,
)
from .sources import SOURCE_CLAUDE, SOURCE_CODEX, TranscriptSource, default_sources

__all__ = [
    "MESSAGE_ROLES",
    "ParseStats",
    "ParsedMessage",
    "SOURCE_CLAUDE",
    "SOURCE_CODEX",
    "SessionDescription",
    "TranscriptReader",
    "TranscriptSource",
    "default_sources",
    "iter_messages",
    "parse_jsonl",
]
