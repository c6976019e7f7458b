"""Storage layer: SQLite access, schema, and the persistence contract."""

from crossfeed.storage.connection import get_connection
from crossfeed.storage.persistence import Persistence, SqlitePersistence
from crossfeed.storage.schema import init_db

__all__ = ["Persistence", "SqlitePersistence", "get_connection", "init_db"]
