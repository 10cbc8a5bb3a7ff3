"""
Repository pattern for data access.

Read-only queries over the OpenCode session/message store.
"""

import sqlite3
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from loguru import logger

from .db import get_connection
from .models import DbStats, MessageRecord, SessionRecord
from .paths import get_db_path_candidates, pick_first_existing
from .schema import decode_message_row, payload_role

SESSION_ID_PREFIX = "ses_"
INVALID_SESSION_ID_PATH = "(invalid session ID format)"
STORE_UNAVAILABLE_PATH = "(store unavailable)"


class SessionNotFoundError(LookupError):
    """Raised when a session-scoped lookup cannot find its session.

    Covers a malformed session id, an unreachable store, or a missing
    session row. checked_path records where the lookup gave up.
    """
    def __init__(self, session_id: str, checked_path: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id
        self.checked_path = checked_path


def is_valid_session_id(session_id: str) -> bool:
    return isinstance(session_id, str) and session_id.startswith(SESSION_ID_PREFIX)


class MessageRepository:
    """Repository for reading assistant messages and session metadata.

    Every query opens its own read-only connection and closes it before
    returning, on success and on error.
    """

    def __init__(self, candidates: Optional[Sequence[Path]] = None):
        """Initialize the repository with candidate database paths.

        Args:
            candidates: Database paths in priority order; defaults to the
                platform candidates for opencode.db
        """
        if candidates is None:
            candidates = get_db_path_candidates()
        self.candidates = [Path(c) for c in candidates]

    def locate_store(self) -> Optional[Path]:
        """Return the first candidate path that exists, or None if unavailable."""
        path = pick_first_existing(self.candidates)
        if path is None:
            logger.debug(f"No message store found among {len(self.candidates)} candidate(s)")
        else:
            logger.debug(f"Using message store {path}")
        return path

    def get_stats(self) -> DbStats:
        """Count sessions, messages and assistant messages.

        Uses json_extract when the SQLite build supports it, otherwise decodes
        every payload in Python. Both paths count the same rows.
        """
        db_path = self.locate_store()
        if db_path is None:
            return DbStats(db_path=None, session_count=0, message_count=0, assistant_message_count=0)

        conn = get_connection(db_path)
        try:
            session_count = _count(conn, 'SELECT count(*) FROM "session"')
            message_count = _count(conn, 'SELECT count(*) FROM "message"')

            if _has_json_extract(conn):
                assistant_count = _count(conn, """
                    SELECT count(*) FROM "message"
                    WHERE CASE WHEN json_valid(data)
                               THEN json_extract(data, '$.role') END = 'assistant'
                """)
            else:
                assistant_count = 0
                for row in conn.execute('SELECT data FROM "message"'):
                    if payload_role(row["data"]) == "assistant":
                        assistant_count += 1

            return DbStats(
                db_path=db_path,
                session_count=session_count,
                message_count=message_count,
                assistant_message_count=assistant_count
            )
        finally:
            conn.close()

    def iter_assistant_messages(
        self,
        since_ms: Optional[int] = None,
        until_ms: Optional[int] = None
    ) -> List[MessageRecord]:
        """Get assistant messages created within an inclusive time range.

        Args:
            since_ms: Optional lower bound on creation time (inclusive)
            until_ms: Optional upper bound on creation time (inclusive)

        Returns:
            Messages ordered by creation time then id; empty when no store
            is available
        """
        db_path = self.locate_store()
        if db_path is None:
            return []

        conn = get_connection(db_path)
        try:
            return _fetch_assistant_messages(conn, since_ms=since_ms, until_ms=until_ms)
        finally:
            conn.close()

    def iter_assistant_messages_for_session(
        self,
        session_id: str,
        since_ms: Optional[int] = None,
        until_ms: Optional[int] = None
    ) -> List[MessageRecord]:
        """Get assistant messages for a single session.

        Args:
            session_id: Session identifier (must start with "ses_")
            since_ms: Optional lower bound on creation time (inclusive)
            until_ms: Optional upper bound on creation time (inclusive)

        Returns:
            Messages ordered by creation time then id

        Raises:
            SessionNotFoundError: If the id is malformed, the store is
                unavailable, or the session does not exist
        """
        if not is_valid_session_id(session_id):
            raise SessionNotFoundError(session_id, INVALID_SESSION_ID_PATH)

        db_path = self.locate_store()
        if db_path is None:
            raise SessionNotFoundError(session_id, STORE_UNAVAILABLE_PATH)

        conn = get_connection(db_path)
        try:
            exists = conn.execute(
                'SELECT 1 FROM "session" WHERE id = ? LIMIT 1', (session_id,)
            ).fetchone()
            if exists is None:
                raise SessionNotFoundError(session_id, str(db_path))

            return _fetch_assistant_messages(
                conn, session_id=session_id, since_ms=since_ms, until_ms=until_ms
            )
        finally:
            conn.close()

    def read_sessions_index(self) -> Dict[str, SessionRecord]:
        """Get all sessions keyed by id, ordered by creation time then id."""
        db_path = self.locate_store()
        if db_path is None:
            return {}

        conn = get_connection(db_path)
        try:
            cursor = conn.execute("""
                SELECT id, title, parent_id, time_created, time_updated
                FROM "session"
                ORDER BY time_created ASC, id ASC
            """)
            index = {}
            for row in cursor:
                if not is_valid_session_id(row["id"]):
                    continue
                title = row["title"]
                index[row["id"]] = SessionRecord(
                    id=row["id"],
                    title=title if isinstance(title, str) and title.strip() else None,
                    parent_id=row["parent_id"] if isinstance(row["parent_id"], str) else None,
                    created_at_ms=_int_or_none(row["time_created"]),
                    updated_at_ms=_int_or_none(row["time_updated"]),
                )
            return index
        finally:
            conn.close()


def build_message_query(
    session_id: Optional[str] = None,
    since_ms: Optional[int] = None,
    until_ms: Optional[int] = None
) -> Tuple[str, List]:
    """Build the message SELECT with optional session and time filters."""
    query = 'SELECT id, session_id, time_created, data FROM "message"'
    params = []
    conditions = []

    if session_id:
        conditions.append("session_id = ?")
        params.append(session_id)
    if since_ms is not None:
        conditions.append("time_created >= ?")
        params.append(since_ms)
    if until_ms is not None:
        conditions.append("time_created <= ?")
        params.append(until_ms)

    if conditions:
        query += " WHERE " + " AND ".join(conditions)

    query += " ORDER BY time_created ASC, id ASC"
    return query, params


def _fetch_assistant_messages(
    conn: sqlite3.Connection,
    session_id: Optional[str] = None,
    since_ms: Optional[int] = None,
    until_ms: Optional[int] = None
) -> List[MessageRecord]:
    query, params = build_message_query(session_id=session_id, since_ms=since_ms, until_ms=until_ms)
    messages = []
    for row in conn.execute(query, params):
        message = decode_message_row(row)
        if message is None:
            continue
        if message.role.lower() != "assistant":
            continue
        messages.append(message)
    return messages


def _has_json_extract(conn: sqlite3.Connection) -> bool:
    try:
        row = conn.execute(
            """SELECT json_extract('{"role":"assistant"}', '$.role'), json_valid('{}')"""
        ).fetchone()
    except sqlite3.OperationalError:
        return False
    return row is not None and row[0] == "assistant" and row[1] == 1


def _count(conn: sqlite3.Connection, query: str) -> int:
    row = conn.execute(query).fetchone()
    value = row[0] if row is not None else None
    return value if isinstance(value, int) else 0


def _int_or_none(value) -> Optional[int]:
    return value if isinstance(value, int) else None
