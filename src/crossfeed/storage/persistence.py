"""Persistence contract for cursors and cached messages, and its SQLite backend."""

from __future__ import annotations

import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Iterable

from crossfeed.errors import CacheCorruption, PersistenceError
from crossfeed.models import (
    Attachment,
    AttachmentKind,
    Author,
    Cursor,
    Identity,
    Message,
    SourceKind,
)
from crossfeed.storage.connection import get_connection
from crossfeed.storage.schema import init_db

logger = logging.getLogger(__name__)


class Persistence(ABC):
    """Where cursors and the message cache survive restarts."""

    @abstractmethod
    def load_cursors(self) -> dict[tuple[SourceKind, str], Cursor]:
        """Return every stored cursor keyed by (kind, channel)."""

    @abstractmethod
    def save_cursor(self, kind: SourceKind, channel: str, cursor: Cursor) -> None:
        """Store the cursor for one pair. Raises PersistenceError."""

    @abstractmethod
    def load_cache(self) -> dict[Identity, Message]:
        """Return every cached message. Raises CacheCorruption."""

    @abstractmethod
    def save_cache_entry(self, identity: Identity, message: Message) -> None:
        """Store one message. Raises PersistenceError."""

    def save_cache_entries(self, messages: Iterable[Message]) -> None:
        for message in messages:
            self.save_cache_entry(message.identity, message)


# --- message (de)serialization ---


def _dt(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_dt(value: str | None) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def message_to_dict(message: Message) -> dict:
    return {
        "kind": message.kind.value,
        "native_id": message.identity.native_id,
        "channel": message.channel,
        "author": {"name": message.author.name, "native_id": message.author.native_id},
        "timestamp": _dt(message.timestamp),
        "content": message.content,
        "edit_version": message.edit_version,
        "deleted": message.deleted,
        "thread_parent": str(message.thread_parent) if message.thread_parent else None,
        "title": message.title,
        "url": message.url,
        "edited_at": _dt(message.edited_at),
        "attachments": [
            {"filename": a.filename, "url": a.url, "kind": a.kind.value, "size": a.size}
            for a in message.attachments
        ],
    }


def message_from_dict(data: dict) -> Message:
    """Rebuild a Message. Raises KeyError, TypeError or ValueError on bad data."""
    if not isinstance(data, dict):
        raise ValueError(f"cached message is not an object: {type(data).__name__}")
    author = data.get("author") or {}
    if not isinstance(author, dict):
        raise ValueError("cached message author is not an object")
    timestamp = _parse_dt(data["timestamp"])
    if timestamp is None:
        raise ValueError("cached message has no timestamp")
    for field in ("content", "edit_version"):
        if not isinstance(data[field], str):
            raise ValueError(f"cached message {field} is not a string")
    parent = data.get("thread_parent")
    return Message(
        identity=Identity(SourceKind(data["kind"]), data["native_id"]),
        channel=data["channel"],
        author=Author(name=author.get("name") or "Unknown", native_id=author.get("native_id")),
        timestamp=timestamp,
        content=data["content"],
        edit_version=data["edit_version"],
        deleted=bool(data.get("deleted", False)),
        thread_parent=Identity.parse(parent) if parent else None,
        title=data.get("title"),
        url=data.get("url"),
        edited_at=_parse_dt(data.get("edited_at")),
        attachments=tuple(
            Attachment(
                filename=a["filename"],
                url=a["url"],
                kind=AttachmentKind(a.get("kind", "other")),
                size=a.get("size"),
            )
            for a in data.get("attachments", [])
        ),
    )


class SqlitePersistence(Persistence):
    """Persistence on the ``adapter_state`` and ``messages`` tables."""

    def __init__(self, database_path: str) -> None:
        self._database_path = database_path
        init_db(database_path)

    def load_cursors(self) -> dict[tuple[SourceKind, str], Cursor]:
        try:
            with get_connection(self._database_path) as conn:
                rows = conn.execute(
                    "SELECT adapter_name, channel, state_data FROM adapter_state"
                ).fetchall()
        except sqlite3.Error as exc:
            logger.warning("Stored cursors unreadable, starting from scratch: %s", exc)
            return {}

        cursors: dict[tuple[SourceKind, str], Cursor] = {}
        for row in rows:
            try:
                kind = SourceKind(row["adapter_name"])
                data = json.loads(row["state_data"])
                cursors[(kind, row["channel"])] = Cursor(
                    token=data.get("token"),
                    last_success=_parse_dt(data.get("last_success")),
                    position=data.get("position"),
                )
            except (ValueError, TypeError, AttributeError):
                logger.warning(
                    "Ignoring unreadable cursor for %s/%s", row["adapter_name"], row["channel"]
                )
        return cursors

    def save_cursor(self, kind: SourceKind, channel: str, cursor: Cursor) -> None:
        state_data = json.dumps({
            "token": cursor.token,
            "last_success": _dt(cursor.last_success),
            "position": cursor.position,
        })
        now = datetime.now(timezone.utc).isoformat()
        try:
            with get_connection(self._database_path) as conn:
                conn.execute(
                    "INSERT INTO adapter_state (adapter_name, channel, state_data, updated_at) "
                    "VALUES (?, ?, ?, ?) "
                    "ON CONFLICT(adapter_name, channel) DO UPDATE SET "
                    "state_data = excluded.state_data, updated_at = excluded.updated_at",
                    (kind.value, channel, state_data, now),
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to save cursor for {kind.value}/{channel}: {exc}") from exc

    def load_cache(self) -> dict[Identity, Message]:
        try:
            with get_connection(self._database_path) as conn:
                rows = conn.execute("SELECT kind, native_id, payload FROM messages").fetchall()
        except sqlite3.Error as exc:
            raise CacheCorruption(f"Message cache unreadable: {exc}") from exc

        messages: dict[Identity, Message] = {}
        skipped = 0
        for row in rows:
            try:
                message = message_from_dict(json.loads(row["payload"]))
            except (KeyError, TypeError, ValueError, AttributeError):
                skipped += 1
                continue
            messages[message.identity] = message
        if skipped:
            logger.warning("Skipped %d undecodable cached message(s)", skipped)
        return messages

    def save_cache_entry(self, identity: Identity, message: Message) -> None:
        self.save_cache_entries([message])

    def save_cache_entries(self, messages: Iterable[Message]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        rows = [
            (
                m.kind.value,
                m.identity.native_id,
                m.channel,
                _dt(m.timestamp),
                m.edit_version,
                int(m.deleted),
                json.dumps(message_to_dict(m)),
                now,
            )
            for m in messages
        ]
        if not rows:
            return
        try:
            with get_connection(self._database_path) as conn:
                conn.executemany(
                    "INSERT INTO messages "
                    "(kind, native_id, channel, timestamp, edit_version, deleted, payload, stored_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?) "
                    "ON CONFLICT(kind, native_id) DO UPDATE SET "
                    "channel = excluded.channel, timestamp = excluded.timestamp, "
                    "edit_version = excluded.edit_version, deleted = excluded.deleted, "
                    "payload = excluded.payload, stored_at = excluded.stored_at",
                    rows,
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to write {len(rows)} cached message(s): {exc}") from exc
