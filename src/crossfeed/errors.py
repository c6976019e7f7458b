"""Exception taxonomy for ingestion, caching, and merging."""

from __future__ import annotations


class CrossfeedError(Exception):
    """Base class for all aggregator errors."""


class FetchError(CrossfeedError):
    """A source adapter could not fetch a page."""


class TransientFetchError(FetchError):
    """Network hiccup, timeout, or server error. Retried with backoff."""


class RateLimited(FetchError):
    """The backend asked us to slow down."""

    def __init__(self, message: str, retry_after: float = 0.0) -> None:
        super().__init__(message)
        self.retry_after = max(0.0, retry_after)


class AuthError(FetchError):
    """Credentials rejected or permission denied. The pair is suspended."""


class PermanentFetchError(FetchError):
    """Request can never succeed as configured (unknown channel, bad query)."""


class MalformedRecord(CrossfeedError):
    """A single raw record could not be normalized."""


class CacheCorruption(CrossfeedError):
    """The persisted message cache could not be read."""


class IntegrationConflict(CrossfeedError):
    """Two different messages claimed the same identity and edit version.

    Signals a broken identity-uniqueness invariant in an adapter. Fatal to
    the ingestion pipeline.
    """


class PipelineHalted(CrossfeedError):
    """The poll scheduler stopped because of a fatal integration failure."""


class PersistenceError(CrossfeedError):
    """The persistence collaborator failed to write state."""
