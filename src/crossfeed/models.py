"""Unified message model shared by adapters, the merge engine, and readers."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum

TOMBSTONE_MARKER = "[message removed]"


class SourceKind(str, Enum):
    """Backend kinds the aggregator can poll."""

    TELEGRAM = "telegram"
    DISCORD = "discord"
    GITHUB = "github"
    JIRA = "jira"


class AttachmentKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    OTHER = "other"


@dataclass(frozen=True)
class Identity:
    """Composite message key: (source kind, source-native id).

    Unique across all sources because the kind is part of the key. Adapters
    qualify native ids that are only unique within a chat or repository.
    """

    kind: SourceKind
    native_id: str

    @property
    def sort_key(self) -> tuple[str, str]:
        return (self.kind.value, self.native_id)

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.native_id}"

    @classmethod
    def parse(cls, value: str) -> Identity:
        """Inverse of ``str(identity)``. Raises ValueError on bad input."""
        kind, sep, native_id = value.partition(":")
        if not sep or not native_id:
            raise ValueError(f"Invalid identity '{value}'")
        return cls(SourceKind(kind), native_id)


@dataclass(frozen=True)
class Author:
    name: str
    native_id: str | None = None


@dataclass(frozen=True)
class Attachment:
    filename: str
    url: str
    kind: AttachmentKind = AttachmentKind.OTHER
    size: int | None = None


@dataclass(frozen=True)
class Message:
    """Canonical representation of one chat message or tracker issue."""

    identity: Identity
    channel: str
    author: Author
    timestamp: datetime
    content: str
    edit_version: str
    deleted: bool = False
    thread_parent: Identity | None = None
    title: str | None = None
    url: str | None = None
    edited_at: datetime | None = None
    attachments: tuple[Attachment, ...] = field(default_factory=tuple)

    @property
    def kind(self) -> SourceKind:
        return self.identity.kind

    @property
    def sort_key(self) -> tuple[datetime, str, str]:
        """Feed ordering key: timestamp first, identity breaks ties."""
        return (self.timestamp, *self.identity.sort_key)

    def tombstoned(self) -> Message:
        """Return a copy marked deleted with its content replaced."""
        return replace(
            self,
            content=TOMBSTONE_MARKER,
            deleted=True,
            attachments=(),
        )


@dataclass(frozen=True)
class Cursor:
    """Continuation state for one (source kind, channel) pair.

    ``token`` is the backend watermark. ``position`` is a page marker within
    the results at that watermark, set only while a backend is still paging.
    """

    token: str | None = None
    last_success: datetime | None = None
    position: str | None = None


def pair_key(kind: SourceKind, channel: str) -> str:
    """Stable string key for a (source kind, channel) pair."""
    return f"{kind.value}/{channel}"


class PairState(str, Enum):
    PENDING = "pending"
    OK = "ok"
    BACKOFF = "backoff"
    RATE_LIMITED = "rate_limited"
    SUSPENDED = "suspended"


@dataclass(frozen=True)
class SourceStatus:
    """Operator-visible health of one poll loop."""

    kind: SourceKind
    channel: str
    state: PairState = PairState.PENDING
    consecutive_failures: int = 0
    last_error: str | None = None
    last_success: datetime | None = None
    malformed_count: int = 0
    next_poll_at: datetime | None = None

    @property
    def pair(self) -> str:
        return pair_key(self.kind, self.channel)

    @property
    def degraded(self) -> bool:
        return self.state in (PairState.BACKOFF, PairState.RATE_LIMITED, PairState.SUSPENDED)

    @property
    def display_key(self) -> tuple:
        """Fields whose change is worth a new snapshot; timing fields are not."""
        return (self.state, self.consecutive_failures, self.last_error, self.malformed_count)
