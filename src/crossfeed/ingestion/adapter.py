"""Source adapter interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from crossfeed.config import SourceSettings
from crossfeed.models import Cursor, Message, SourceKind


@dataclass(frozen=True)
class FetchResult:
    """One page of raw backend records plus the cursor that follows it."""

    items: list[dict] = field(default_factory=list)
    cursor: Cursor = field(default_factory=Cursor)
    has_more: bool = False


class SourceAdapter(ABC):
    """Abstract base class for source adapters.

    Every adapter knows how to fetch one page of raw records for a channel
    and how to translate a raw record into a Message. Adapters never touch
    the feed or the cache; the only state they carry forward is the cursor
    the scheduler hands back on the next call.
    """

    def __init__(self, timeout: float = 30.0) -> None:
        self._timeout = timeout

    @property
    @abstractmethod
    def kind(self) -> SourceKind:
        """Backend kind served by this adapter."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable adapter name."""

    @abstractmethod
    def configure(self, settings: SourceSettings) -> None:
        """Accept credentials and backend-specific options.

        Raises ValueError when required credentials are missing.
        """

    def pair_channels(self, settings: SourceSettings) -> list[str]:
        """Channels the scheduler polls, one poll loop per channel."""
        return sorted(settings.channels)

    @abstractmethod
    def fetch(self, channel: str, cursor: Cursor) -> FetchResult:
        """Fetch the next page of raw records after ``cursor``.

        Paginates forward only. Raises AuthError, RateLimited,
        TransientFetchError or PermanentFetchError.
        """

    @abstractmethod
    def normalize(self, channel: str, raw: dict) -> Message:
        """Translate one raw record. Raises MalformedRecord."""
