"""The merged feed: cache, merge engine, and snapshot publication."""

from crossfeed.feed.cache import CacheStore
from crossfeed.feed.engine import IntegrationResult, MergeEngine
from crossfeed.feed.snapshot import FeedSnapshot, SnapshotPublisher

__all__ = ["CacheStore", "FeedSnapshot", "IntegrationResult", "MergeEngine", "SnapshotPublisher"]
