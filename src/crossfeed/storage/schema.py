"""Database schema definition and initialization."""

from __future__ import annotations

import logging

from crossfeed.storage.connection import get_connection

logger = logging.getLogger(__name__)

_SCHEMA_SQL = """\
-- Continuation cursor per (source kind, channel) pair
CREATE TABLE IF NOT EXISTS adapter_state (
    adapter_name    TEXT NOT NULL,          -- source kind
    channel         TEXT NOT NULL,
    state_data      TEXT NOT NULL,          -- JSON object
    updated_at      TEXT NOT NULL,
    PRIMARY KEY (adapter_name, channel)
);

-- Last known version of every message, keyed by identity
CREATE TABLE IF NOT EXISTS messages (
    kind            TEXT NOT NULL CHECK (kind IN (
                        'telegram', 'discord', 'github', 'jira'
                    )),
    native_id       TEXT NOT NULL,
    channel         TEXT NOT NULL,
    timestamp       TEXT NOT NULL,
    edit_version    TEXT NOT NULL,
    deleted         INTEGER NOT NULL DEFAULT 0,
    payload         TEXT NOT NULL,          -- JSON object
    stored_at       TEXT NOT NULL,
    PRIMARY KEY (kind, native_id)
);

CREATE INDEX IF NOT EXISTS idx_messages_timestamp ON messages(timestamp);
CREATE INDEX IF NOT EXISTS idx_messages_channel ON messages(kind, channel);
"""


def init_db(database_path: str) -> None:
    """Create all tables and indexes if they do not already exist."""
    with get_connection(database_path) as conn:
        conn.executescript(_SCHEMA_SQL)
    logger.info("Database initialized at %s", database_path)
