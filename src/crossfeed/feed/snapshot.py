"""Immutable, versioned feed snapshots and their publisher."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from functools import cached_property
from types import MappingProxyType
from typing import Iterator, Mapping

from crossfeed.models import Identity, Message, SourceStatus


@dataclass(frozen=True)
class FeedSnapshot:
    """Point-in-time view of the merged feed, oldest message first."""

    version: int = 0
    messages: tuple[Message, ...] = ()
    sources: Mapping[str, SourceStatus] = field(default_factory=lambda: MappingProxyType({}))
    published_at: datetime | None = None

    def __len__(self) -> int:
        return len(self.messages)

    @cached_property
    def _positions(self) -> dict[Identity, int]:
        return {m.identity: i for i, m in enumerate(self.messages)}

    def get(self, identity: Identity) -> Message | None:
        pos = self._positions.get(identity)
        return self.messages[pos] if pos is not None else None

    def index_of(self, identity: Identity) -> int | None:
        return self._positions.get(identity)

    def latest(self, limit: int | None = None) -> tuple[Message, ...]:
        """Newest ``limit`` messages, newest first."""
        newest_first = self.messages[::-1]
        return newest_first if limit is None else newest_first[:limit]

    def degraded(self) -> list[SourceStatus]:
        return [s for _, s in sorted(self.sources.items()) if s.degraded]


class SnapshotPublisher:
    """Hands out the latest snapshot without blocking the writer.

    Publishing swaps a single reference, so a reader holding version N keeps
    a fully consistent view while N+1 is built and published.
    """

    def __init__(self, initial: FeedSnapshot | None = None) -> None:
        self._current = initial or FeedSnapshot()
        self._cond = threading.Condition()
        self._closed = False

    def current(self) -> FeedSnapshot:
        return self._current

    def publish(self, snapshot: FeedSnapshot) -> None:
        with self._cond:
            if snapshot.version <= self._current.version:
                raise ValueError(
                    f"Snapshot version {snapshot.version} does not advance "
                    f"past {self._current.version}"
                )
            self._current = snapshot
            self._cond.notify_all()

    def subscribe(self, after_version: int | None = None) -> Iterator[FeedSnapshot]:
        """Yield each newer snapshot as it is published.

        Starts after ``after_version`` (default: the version current at call
        time). A slow reader skips straight to the latest snapshot. The
        iterator only ends when the publisher is closed.
        """
        start = self._current.version if after_version is None else after_version
        return self._follow(start)

    def _follow(self, last: int) -> Iterator[FeedSnapshot]:
        while True:
            with self._cond:
                self._cond.wait_for(lambda: self._closed or self._current.version > last)
                if self._current.version <= last:
                    return
                snapshot = self._current
            last = snapshot.version
            yield snapshot

    def close(self) -> None:
        """Wake and end every subscription."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()
