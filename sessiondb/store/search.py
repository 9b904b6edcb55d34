from __future__ import annotations

from typing import TYPE_CHECKING, Any, Literal

from ..errors import ERROR_RUNTIME, InvalidInputError, database_errors, require_text
from .types import SearchResult

if TYPE_CHECKING:
    from ._store import SessionStore

ORDER_SCORE = "score"
ORDER_TIME_DESC = "time_desc"
ORDER_TIME_ASC = "time_asc"

SEARCH_ORDERS = (ORDER_SCORE, ORDER_TIME_DESC, ORDER_TIME_ASC)

SearchOrder = Literal["score", "time_desc", "time_asc"]

_ORDER_ALIASES = {
    "0": ORDER_SCORE,
    "1": ORDER_TIME_DESC,
    "2": ORDER_TIME_ASC,
    "rank": ORDER_SCORE,
    "relevance": ORDER_SCORE,
    "timedesc": ORDER_TIME_DESC,
    "newest": ORDER_TIME_DESC,
    "timeasc": ORDER_TIME_ASC,
    "oldest": ORDER_TIME_ASC,
}

# bm25() is lower-is-better; timestamp DESC breaks relevance ties.
_ORDER_SQL = {
    ORDER_SCORE: "bm25_rank ASC, messages.timestamp DESC, messages.id DESC",
    ORDER_TIME_DESC: "messages.timestamp DESC, messages.id DESC",
    ORDER_TIME_ASC: "messages.timestamp ASC, messages.id ASC",
}

SNIPPET_TOKENS = 64


def escape_fts5_query(query: str) -> str:
    """Quote every whitespace-separated token so FTS5 syntax is never interpreted.

    Tokens are OR-ed together; a blank query gives an empty string.
    """

    tokens = query.split()
    return " OR ".join('"' + token.replace('"', '""') + '"' for token in tokens)


def normalize_order(value: object) -> str:
    if value is None:
        return ORDER_SCORE
    key = str(value).strip().lower().replace("-", "_")
    if key in SEARCH_ORDERS:
        return key
    key = _ORDER_ALIASES.get(key.replace("_", ""), _ORDER_ALIASES.get(key, ""))
    if not key:
        raise InvalidInputError(f"unknown search order {value!r}", kind=ERROR_RUNTIME)
    return key


def search_fts(
    store: SessionStore,
    query: str,
    limit: int = 20,
    *,
    project_id: int | None = None,
    order_by: SearchOrder | str = ORDER_SCORE,
    start_ts: int | None = None,
    end_ts: int | None = None,
) -> list[SearchResult]:
    text = require_text(query, "query")
    order = normalize_order(order_by)
    match = escape_fts5_query(text)
    if not match or limit <= 0:
        return []
    params: list[Any] = [match]
    where_clauses = ["messages_fts MATCH ?"]
    if project_id is not None:
        where_clauses.append("sessions.project_id = ?")
        params.append(project_id)
    if start_ts is not None:
        where_clauses.append("messages.timestamp >= ?")
        params.append(start_ts)
    if end_ts is not None:
        where_clauses.append("messages.timestamp <= ?")
        params.append(end_ts)
    where = " AND ".join(where_clauses)
    sql = f"""
        SELECT messages.id AS message_id,
               messages.session_id,
               sessions.project_id,
               projects.name AS project_name,
               messages.role,
               messages.content,
               messages.timestamp,
               snippet(messages_fts, 0, '<mark>', '</mark>', '...', {SNIPPET_TOKENS}) AS snippet,
               bm25(messages_fts) AS bm25_rank
        FROM messages_fts
        JOIN messages ON messages.id = messages_fts.rowid
        JOIN sessions ON sessions.session_id = messages.session_id
        JOIN projects ON projects.id = sessions.project_id
        WHERE {where}
        ORDER BY {_ORDER_SQL[order]}
        LIMIT ?
    """
    params.append(limit)
    with database_errors("search messages"):
        rows = store.conn.execute(sql, params).fetchall()
    return [
        SearchResult(
            message_id=row["message_id"],
            session_id=row["session_id"],
            project_id=row["project_id"],
            project_name=row["project_name"],
            role=row["role"],
            content=row["content"],
            snippet=row["snippet"] or "",
            score=-float(row["bm25_rank"]),
            timestamp=row["timestamp"],
        )
        for row in rows
    ]
