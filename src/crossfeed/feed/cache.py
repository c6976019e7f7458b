"""Identity-keyed message cache with optional write-through persistence."""

from __future__ import annotations

import logging
from typing import Iterable, Iterator

from crossfeed.errors import CacheCorruption, PersistenceError
from crossfeed.models import Identity, Message
from crossfeed.storage.persistence import Persistence

logger = logging.getLogger(__name__)


class CacheStore:
    """Last known version of every message, keyed by identity.

    Mutation happens only from the merge engine while it holds its lock;
    ``persist`` is called after the lock is released.
    """

    def __init__(self, persistence: Persistence | None = None) -> None:
        self._persistence = persistence
        self._entries: dict[Identity, Message] = {}
        self.load_failed = False

    @property
    def persistent(self) -> bool:
        return self._persistence is not None

    def load(self) -> list[Message]:
        """Fill the cache from persistence and return what was loaded.

        An unreadable cache is logged and treated as empty; ``load_failed``
        tells the scheduler to discard stored cursors and re-fetch history.
        """
        if self._persistence is None:
            return []
        try:
            loaded = self._persistence.load_cache()
        except CacheCorruption as exc:
            logger.error("Message cache corrupt, starting empty: %s", exc)
            self.load_failed = True
            return []
        self._entries.update(loaded)
        logger.info("Loaded %d cached message(s)", len(loaded))
        return list(loaded.values())

    def get(self, identity: Identity) -> Message | None:
        return self._entries.get(identity)

    def upsert(self, message: Message) -> None:
        self._entries[message.identity] = message

    def persist(self, messages: Iterable[Message]) -> bool:
        """Write messages through to persistence. False if the write failed."""
        messages = list(messages)
        if self._persistence is None or not messages:
            return True
        try:
            self._persistence.save_cache_entries(messages)
        except PersistenceError as exc:
            logger.error("Cache write-through failed for %d message(s): %s", len(messages), exc)
            return False
        return True

    def __contains__(self, identity: object) -> bool:
        return identity in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._entries.values()))
