"""SQLite connection management."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from typing import Generator


@contextmanager
def get_connection(
    database_path: str, timeout: float = 10.0
) -> Generator[sqlite3.Connection, None, None]:
    """Open a short-lived SQLite connection in WAL mode.

    Poll jobs on different worker threads each open their own connection;
    WAL lets the TUI or web view read while a poller writes. Commits on
    clean exit, rolls back on exception, and always closes.
    """
    conn = sqlite3.connect(database_path, timeout=timeout)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    except BaseException:
        conn.rollback()
        raise
    finally:
        conn.close()
