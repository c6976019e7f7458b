"""Merge engine: folds normalized batches into one ordered, deduplicated feed."""

from __future__ import annotations

import bisect
import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Iterable, Iterator

from crossfeed.errors import IntegrationConflict
from crossfeed.feed.cache import CacheStore
from crossfeed.feed.snapshot import FeedSnapshot, SnapshotPublisher
from crossfeed.ingestion.dedup import compute_content_hash
from crossfeed.models import Identity, Message, SourceKind, SourceStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IntegrationResult:
    """Outcome of one ``integrate`` call."""

    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    unchanged: int = 0
    version: int = 0
    changed: tuple[Message, ...] = ()

    @property
    def has_changes(self) -> bool:
        return bool(self.changed)


def _fingerprint(message: Message) -> str:
    return compute_content_hash(message.channel, message.content, message.title)


def _conflicts(existing: Message, incoming: Message) -> str | None:
    """Describe why two copies of one identity cannot both be true, if they can't."""
    if existing.deleted or incoming.deleted:
        return None
    if existing.channel != incoming.channel:
        return f"channel {existing.channel!r} vs {incoming.channel!r}"
    if existing.edit_version == incoming.edit_version and _fingerprint(existing) != _fingerprint(
        incoming
    ):
        return f"different content at edit_version {incoming.edit_version!r}"
    return None


class MergeEngine:
    """Single writer of the feed.

    Every integration runs under one lock, and only CPU work happens inside
    it. Readers never take the lock: they get immutable snapshots from the
    publisher.

    Merge rules per incoming message:

    - unknown identity: inserted (as a tombstone if it arrives deleted)
    - known, same edit_version: no-op
    - known, new edit_version: content replaced, original timestamp kept
    - arrives deleted: becomes a tombstone; tombstones never come back
    """

    def __init__(
        self,
        cache: CacheStore | None = None,
        publisher: SnapshotPublisher | None = None,
    ) -> None:
        self._cache = cache if cache is not None else CacheStore()
        self._publisher = publisher if publisher is not None else SnapshotPublisher()
        self._lock = threading.Lock()
        self._order: list[tuple[datetime, str, str]] = []
        self._statuses: dict[str, SourceStatus] = {}
        self._messages: tuple[Message, ...] = ()
        self._version = self._publisher.current().version

    @property
    def cache(self) -> CacheStore:
        return self._cache

    @property
    def publisher(self) -> SnapshotPublisher:
        return self._publisher

    def restore(self, messages: Iterable[Message] | None = None) -> FeedSnapshot:
        """Seed the feed at startup.

        With no argument, seeds from whatever the cache already holds.
        Restored messages are not written back to persistence.
        """
        with self._lock:
            for message in messages or ():
                self._cache.upsert(message)
            self._order = sorted(m.sort_key for m in self._cache)
            if self._order:
                self._publish_locked(feed_changed=True)
        logger.info("Restored %d message(s) into the feed", len(self._order))
        return self._publisher.current()

    def integrate(self, batch: Iterable[Message]) -> IntegrationResult:
        """Merge a batch, publish a new snapshot if anything changed.

        Raises IntegrationConflict, before applying anything from the batch,
        when two copies of one identity disagree without an edit to explain
        it. The caller persists ``result.changed`` afterwards, outside the lock.
        """
        batch = list(batch)
        with self._lock:
            self._check_conflicts(batch)
            return self._apply(batch)

    def update_status(self, status: SourceStatus) -> None:
        """Record a pair's status, republishing when the visible state changed."""
        with self._lock:
            previous = self._statuses.get(status.pair)
            self._statuses[status.pair] = status
            if previous is None or previous.display_key != status.display_key:
                self._publish_locked(feed_changed=False)

    def current_snapshot(self) -> FeedSnapshot:
        return self._publisher.current()

    def subscribe(self, after_version: int | None = None) -> Iterator[FeedSnapshot]:
        return self._publisher.subscribe(after_version)

    def close(self) -> None:
        self._publisher.close()

    # --- internals (lock held) ---

    def _check_conflicts(self, batch: list[Message]) -> None:
        seen: dict[Identity, Message] = {}
        for incoming in batch:
            for existing in (seen.get(incoming.identity), self._cache.get(incoming.identity)):
                if existing is None:
                    continue
                reason = _conflicts(existing, incoming)
                if reason is not None:
                    raise IntegrationConflict(f"Conflicting copies of {incoming.identity}: {reason}")
            seen[incoming.identity] = incoming

    def _apply(self, batch: list[Message]) -> IntegrationResult:
        inserted = updated = deleted = unchanged = 0
        changed: dict[Identity, Message] = {}

        for incoming in batch:
            current = self._cache.get(incoming.identity)
            if current is None:
                stored = incoming.tombstoned() if incoming.deleted else incoming
                bisect.insort(self._order, stored.sort_key)
                inserted += 1
            elif current.deleted:
                unchanged += 1
                continue
            elif incoming.deleted:
                stored = replace(current.tombstoned(), edit_version=incoming.edit_version)
                deleted += 1
            elif current.edit_version == incoming.edit_version:
                unchanged += 1
                continue
            else:
                stored = replace(incoming, timestamp=current.timestamp)
                updated += 1
            self._cache.upsert(stored)
            changed[stored.identity] = stored

        if changed:
            self._publish_locked(feed_changed=True)
            logger.debug(
                "Integrated batch: +%d ~%d -%d =%d (version %d)",
                inserted, updated, deleted, unchanged, self._version,
            )
        return IntegrationResult(
            inserted=inserted,
            updated=updated,
            deleted=deleted,
            unchanged=unchanged,
            version=self._version,
            changed=tuple(changed.values()),
        )

    def _publish_locked(self, feed_changed: bool) -> None:
        if feed_changed:
            self._messages = tuple(
                self._cache.get(Identity(SourceKind(kind), native_id))
                for _, kind, native_id in self._order
            )
        self._version += 1
        self._publisher.publish(
            FeedSnapshot(
                version=self._version,
                messages=self._messages,
                sources=MappingProxyType(dict(self._statuses)),
                published_at=datetime.now(timezone.utc),
            )
        )
