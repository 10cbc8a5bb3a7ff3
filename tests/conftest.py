"""
Shared fixtures.

Builds throwaway OpenCode-style stores (session + message tables) in a
temporary directory. Only the tests write to them.
"""

import json
import sqlite3

import pytest

from opencode_quota.storage.repository import MessageRepository


def create_store(db_path, sessions=(), messages=()):
    """Create an OpenCode-shaped SQLite store.

    Args:
        db_path: Where to create the database
        sessions: Iterable of dicts with id, title, parent_id, time_created
        messages: Iterable of dicts with id, session_id, time_created and
            either data (raw string) or payload (dict, JSON-encoded here)
    """
    conn = sqlite3.connect(str(db_path))
    try:
        conn.execute("""
            CREATE TABLE session (
                id TEXT PRIMARY KEY,
                title TEXT,
                parent_id TEXT,
                time_created INTEGER NOT NULL,
                time_updated INTEGER NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE message (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL,
                time_created INTEGER NOT NULL,
                time_updated INTEGER NOT NULL,
                data TEXT NOT NULL
            )
        """)
        for s in sessions:
            conn.execute(
                "INSERT INTO session VALUES (?, ?, ?, ?, ?)",
                (s["id"], s.get("title"), s.get("parent_id"),
                 s.get("time_created", 0), s.get("time_updated", s.get("time_created", 0)))
            )
        for m in messages:
            data = m["data"] if "data" in m else json.dumps(m["payload"])
            conn.execute(
                "INSERT INTO message VALUES (?, ?, ?, ?, ?)",
                (m["id"], m["session_id"], m["time_created"], m["time_created"], data)
            )
        conn.commit()
    finally:
        conn.close()
    return db_path


def assistant(msg_id, session_id, created, provider="anthropic", model="claude-sonnet-4",
              input=0, output=0, reasoning=0, cache_read=0, cache_write=0, **extra):
    """Build a message row dict with an assistant payload."""
    payload = {
        "role": "assistant",
        "providerID": provider,
        "modelID": model,
        "tokens": {
            "input": input,
            "output": output,
            "reasoning": reasoning,
            "cache": {"read": cache_read, "write": cache_write},
        },
        "time": {"created": created, "completed": created + 500},
    }
    payload.update(extra)
    return {"id": msg_id, "session_id": session_id, "time_created": created, "payload": payload}


def user(msg_id, session_id, created):
    return {
        "id": msg_id,
        "session_id": session_id,
        "time_created": created,
        "payload": {"role": "user", "time": {"created": created}},
    }


@pytest.fixture
def store_factory(tmp_path):
    """Create a store in tmp_path and return a repository pointed at it."""
    def factory(sessions=(), messages=(), name="opencode.db"):
        db_path = create_store(tmp_path / name, sessions=sessions, messages=messages)
        return MessageRepository([tmp_path / "missing" / "opencode.db", db_path])
    return factory
