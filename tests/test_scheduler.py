"""Tests for crossfeed.scheduler: backoff, pair polling, and the poll scheduler."""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import pytest

from crossfeed.config import Config, SourceSettings
from crossfeed.errors import (
    AuthError,
    CacheCorruption,
    IntegrationConflict,
    MalformedRecord,
    PermanentFetchError,
    PersistenceError,
    PipelineHalted,
    RateLimited,
    TransientFetchError,
)
from crossfeed.feed.cache import CacheStore
from crossfeed.feed.engine import MergeEngine
from crossfeed.ingestion.adapter import FetchResult, SourceAdapter
from crossfeed.models import Author, Cursor, Identity, Message, PairState, SourceKind
from crossfeed.scheduler import ExponentialBackoff, PairPoller, PollScheduler, build_scheduler
from crossfeed.storage.persistence import Persistence


class ScriptedAdapter(SourceAdapter):
    """Returns (or raises) the scripted outcomes in order, then empty pages."""

    def __init__(self, outcomes=(), kind=SourceKind.GITHUB):
        super().__init__()
        self._kind = kind
        self.outcomes = list(outcomes)
        self.calls = []

    @property
    def kind(self):
        return self._kind

    @property
    def name(self):
        return "scripted"

    def configure(self, settings):
        pass

    def fetch(self, channel, cursor):
        self.calls.append(cursor)
        if not self.outcomes:
            return FetchResult(cursor=cursor)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def normalize(self, channel, raw):
        if "id" not in raw:
            raise MalformedRecord("record has no id")
        return Message(
            identity=Identity(self._kind, f"{channel}#{raw['id']}"),
            channel=channel,
            author=Author("bot"),
            timestamp=datetime.fromtimestamp(raw["ts"], tz=timezone.utc),
            content=raw.get("text", "hello"),
            edit_version=raw.get("v", "1"),
        )


class RecordingPersistence(Persistence):
    def __init__(self):
        self.cursors = {}
        self.cache = {}
        self.log = []
        self.fail_cache = False
        self.fail_cursor = False
        self.corrupt = False

    def load_cursors(self):
        return dict(self.cursors)

    def save_cursor(self, kind, channel, cursor):
        if self.fail_cursor:
            raise PersistenceError("cursor table locked")
        self.log.append(("cursor", cursor.token))
        self.cursors[(kind, channel)] = cursor

    def load_cache(self):
        if self.corrupt:
            raise CacheCorruption("garbage")
        return dict(self.cache)

    def save_cache_entry(self, identity, message):
        if self.fail_cache:
            raise PersistenceError("disk full")
        self.log.append(("cache", identity.native_id))
        self.cache[identity] = message


def _page(*records, token=None, has_more=False):
    return FetchResult(items=list(records), cursor=Cursor(token=token), has_more=has_more)


def _rec(n, ts=None, **extra):
    return {"id": n, "ts": ts if ts is not None else 1000 + n, **extra}


def _poller(adapter, engine=None, persistence=None, **kwargs):
    kwargs.setdefault("poll_interval", 60.0)
    kwargs.setdefault("backoff", ExponentialBackoff(base_delay=5, max_delay=40, jitter_range=0))
    return PairPoller(
        adapter, "acme/app", engine or MergeEngine(), persistence=persistence, **kwargs
    )


def _ids(engine):
    return [m.identity.native_id for m in engine.current_snapshot().messages]


class TestExponentialBackoff:
    def test_growth_and_cap(self):
        backoff = ExponentialBackoff(base_delay=5, max_delay=40, jitter_range=0)
        assert [backoff.next_delay() for _ in range(6)] == [5, 10, 20, 40, 40, 40]
        assert backoff.attempt == 6

    def test_reset(self):
        backoff = ExponentialBackoff(base_delay=5, jitter_range=0)
        backoff.next_delay()
        backoff.next_delay()
        backoff.reset()
        assert backoff.next_delay() == 5

    def test_jitter_bounds(self):
        backoff = ExponentialBackoff(base_delay=10, jitter_range=0.2)
        for _ in range(50):
            backoff.reset()
            assert 8.0 <= backoff.next_delay() <= 12.0

    def test_floor_overrides_cap(self):
        backoff = ExponentialBackoff(base_delay=5, max_delay=40, jitter_range=0)
        assert backoff.next_delay(minimum=300) == 300
        assert backoff.next_delay(minimum=1) == 10


class TestPairPoller:
    def test_successful_poll(self):
        engine = MergeEngine()
        adapter = ScriptedAdapter([_page(_rec(1), _rec(2), token="t1")])
        poller = _poller(adapter, engine)

        delay = poller.poll_once()

        assert delay == 60.0
        assert poller.cursor.token == "t1"
        assert _ids(engine) == ["acme/app#1", "acme/app#2"]
        assert poller.status.state == PairState.OK
        assert poller.status.last_success is not None
        assert engine.current_snapshot().sources["github/acme/app"].state == PairState.OK

    def test_cursor_handed_back(self):
        adapter = ScriptedAdapter([_page(token="t1"), _page(token="t2")])
        poller = _poller(adapter, cursor=Cursor("t0"))
        poller.poll_once()
        poller.poll_once()
        assert [c.token for c in adapter.calls] == ["t0", "t1"]

    def test_transient_failures_back_off(self):
        boom = TransientFetchError("502")
        adapter = ScriptedAdapter([boom, boom, _page(token="t1"), boom])
        poller = _poller(adapter, cursor=Cursor("t0"))

        assert poller.poll_once() == 5
        assert poller.poll_once() == 10
        assert poller.status.state == PairState.BACKOFF
        assert poller.status.consecutive_failures == 2
        assert poller.status.last_error == "502"
        assert poller.cursor.token == "t0"

        assert poller.poll_once() == 60.0
        assert poller.status.consecutive_failures == 0
        assert poller.poll_once() == 5

    def test_rate_limit_uses_larger_delay(self):
        adapter = ScriptedAdapter([
            RateLimited("slow down", retry_after=120),
            RateLimited("slow down", retry_after=1),
        ])
        poller = _poller(adapter)

        assert poller.poll_once() == 120
        assert poller.status.state == PairState.RATE_LIMITED
        assert poller.poll_once() == 10

    @pytest.mark.parametrize("error", [AuthError("401"), PermanentFetchError("404")])
    def test_auth_and_permanent_errors_suspend(self, error):
        engine = MergeEngine()
        adapter = ScriptedAdapter([error, _page(_rec(1), token="t1")])
        poller = _poller(adapter, engine)

        assert poller.poll_once() is None
        assert poller.suspended
        assert poller.status.next_poll_at is None
        assert poller.poll_once() is None
        assert len(adapter.calls) == 1
        assert [s.pair for s in engine.current_snapshot().degraded()] == ["github/acme/app"]

    def test_unexpected_error_backs_off(self):
        poller = _poller(ScriptedAdapter([RuntimeError("bug")]))
        assert poller.poll_once() == 5
        assert poller.status.state == PairState.BACKOFF
        assert poller.status.last_error == "bug"

    def test_malformed_records_skipped_and_counted(self):
        engine = MergeEngine()
        adapter = ScriptedAdapter([
            _page(_rec(1), {"ts": 5}, {"id": 3}, token="t1"),
            _page({"text": "no id"}, token="t2"),
        ])
        poller = _poller(adapter, engine)

        poller.poll_once()
        assert _ids(engine) == ["acme/app#1"]
        assert poller.status.malformed_count == 2

        poller.poll_once()
        assert poller.status.malformed_count == 3
        assert poller.status.state == PairState.OK

    def test_full_page_polls_again_immediately(self):
        adapter = ScriptedAdapter([
            _page(_rec(1), token="t1", has_more=True),
            _page(_rec(2), token="t1", has_more=True),
        ])
        poller = _poller(adapter)
        assert poller.poll_once() == 0.0
        # Cursor did not move: fall back to the normal interval.
        assert poller.poll_once() == 60.0

    def test_page_position_counts_as_progress(self):
        adapter = ScriptedAdapter([
            FetchResult(items=[_rec(1)], cursor=Cursor("t1", position="2"), has_more=True),
            FetchResult(items=[_rec(2)], cursor=Cursor("t1", position="3"), has_more=True),
            FetchResult(items=[_rec(3)], cursor=Cursor("t1", position="3"), has_more=True),
        ])
        poller = _poller(adapter, cursor=Cursor("t1"))

        assert poller.poll_once() == 0.0
        assert poller.poll_once() == 0.0
        assert poller.cursor.position == "3"
        assert poller.poll_once() == 60.0
        assert adapter.calls[1].position == "2"

    def test_fetch_timeout_is_transient(self):
        release = threading.Event()

        class SlowAdapter(ScriptedAdapter):
            def fetch(self, channel, cursor):
                release.wait(5)
                return FetchResult(cursor=cursor)

        executor = ThreadPoolExecutor(max_workers=1)
        try:
            poller = _poller(SlowAdapter(), fetch_timeout=0.05, fetch_executor=executor)
            assert poller.poll_once() == 5
            assert poller.status.state == PairState.BACKOFF
            assert "exceeded" in poller.status.last_error
        finally:
            release.set()
            executor.shutdown(wait=True)

    def test_conflict_propagates(self):
        adapter = ScriptedAdapter([
            _page(_rec(1, text="first"), token="t1"),
            _page(_rec(1, text="second"), token="t2"),
        ])
        poller = _poller(adapter)
        poller.poll_once()
        with pytest.raises(IntegrationConflict):
            poller.poll_once()
        assert poller.cursor.token == "t1"

    def test_pairs_are_isolated(self):
        engine = MergeEngine()
        broken = PairPoller(
            ScriptedAdapter([AuthError("401")], kind=SourceKind.JIRA), "OPS", engine,
        )
        healthy = _poller(ScriptedAdapter([_page(_rec(1), token="t1")]), engine)

        broken.poll_once()
        healthy.poll_once()

        snapshot = engine.current_snapshot()
        assert _ids(engine) == ["acme/app#1"]
        assert snapshot.sources["jira/OPS"].state == PairState.SUSPENDED
        assert snapshot.sources["github/acme/app"].state == PairState.OK


class TestPollerPersistence:
    def test_cache_written_before_cursor(self):
        persistence = RecordingPersistence()
        engine = MergeEngine(CacheStore(persistence))
        poller = _poller(ScriptedAdapter([_page(_rec(1), token="t1")]), engine, persistence)

        poller.poll_once()

        assert persistence.log == [("cache", "acme/app#1"), ("cursor", "t1")]

    def test_failed_cache_write_keeps_cursor_and_retries(self):
        persistence = RecordingPersistence()
        persistence.fail_cache = True
        engine = MergeEngine(CacheStore(persistence))
        page = _page(_rec(1), token="t1")
        adapter = ScriptedAdapter([page, page])
        poller = _poller(adapter, engine, persistence, cursor=Cursor("t0"))

        assert poller.poll_once() == 5
        assert poller.cursor.token == "t0"
        assert poller.status.state == PairState.BACKOFF
        assert persistence.cursors == {}

        persistence.fail_cache = False
        assert poller.poll_once() == 60.0

        # The replayed page changes nothing, yet the earlier entry is written.
        assert Identity(SourceKind.GITHUB, "acme/app#1") in persistence.cache
        assert persistence.cursors[(SourceKind.GITHUB, "acme/app")].token == "t1"

    def test_failed_cursor_write_is_not_fatal(self):
        persistence = RecordingPersistence()
        persistence.fail_cursor = True
        engine = MergeEngine(CacheStore(persistence))
        poller = _poller(ScriptedAdapter([_page(_rec(1), token="t1")]), engine, persistence)

        assert poller.poll_once() == 60.0
        assert poller.cursor.token == "t1"
        assert poller.status.state == PairState.OK

    def test_restart_replay_changes_nothing(self):
        persistence = RecordingPersistence()
        page = _page(_rec(1), _rec(2), token="t1")
        engine = MergeEngine(CacheStore(persistence))
        _poller(ScriptedAdapter([page]), engine, persistence).poll_once()

        # Restart with a stale cursor: the same page comes back.
        cache = CacheStore(persistence)
        restarted = MergeEngine(cache)
        restarted.restore(cache.load())
        version = restarted.current_snapshot().version
        poller = _poller(ScriptedAdapter([page]), restarted, persistence)
        poller.poll_once()

        assert _ids(restarted) == ["acme/app#1", "acme/app#2"]
        snapshot = restarted.current_snapshot()
        # Only the status change was published.
        assert snapshot.version == version + 1
        assert snapshot.messages == engine.current_snapshot().messages


class TestPollScheduler:
    def test_conflict_halts(self):
        adapter = ScriptedAdapter([
            _page(_rec(1, text="first"), token="t1"),
            _page(_rec(1, text="second"), token="t2"),
        ])
        engine = MergeEngine()
        poller = _poller(adapter, engine)
        scheduler = PollScheduler(engine, [poller])

        scheduler._run(poller.pair)
        assert not scheduler.halted
        scheduler._run(poller.pair)

        assert scheduler.halted
        with pytest.raises(PipelineHalted):
            scheduler.wait(timeout=0)
        # Once halted, no further polls run.
        scheduler._run(poller.pair)
        assert len(adapter.calls) == 2

    def test_runs_pollers_until_stopped(self):
        engine = MergeEngine()
        pollers = [
            _poller(ScriptedAdapter([_page(_rec(1), token="t1")]), engine),
            PairPoller(
                ScriptedAdapter([_page({"id": 7, "ts": 500}, token="9")], kind=SourceKind.JIRA),
                "OPS", engine,
            ),
        ]
        scheduler = PollScheduler(engine, pollers, max_workers=2)
        scheduler.start()
        try:
            deadline = time.monotonic() + 5
            while len(engine.current_snapshot()) < 2 and time.monotonic() < deadline:
                time.sleep(0.01)
        finally:
            scheduler.stop()

        assert _ids(engine) == ["OPS#7", "acme/app#1"]
        assert scheduler.pairs == ["github/acme/app", "jira/OPS"]
        assert scheduler.wait(timeout=0) is True

    def test_statuses_sorted_by_pair(self):
        engine = MergeEngine()
        pollers = [
            PairPoller(ScriptedAdapter(kind=SourceKind.JIRA), "OPS", engine),
            _poller(ScriptedAdapter(), engine),
        ]
        scheduler = PollScheduler(engine, pollers)
        assert [s.pair for s in scheduler.statuses()] == ["github/acme/app", "jira/OPS"]


class TestBuildScheduler:
    def _settings(self):
        return SourceSettings(kind=SourceKind.GITHUB, poll_interval=30, channels=frozenset({"a/b", "c/d"}))

    def test_one_poller_per_channel_with_cursors(self):
        persistence = RecordingPersistence()
        persistence.cursors[(SourceKind.GITHUB, "a/b")] = Cursor("saved")
        engine = MergeEngine(CacheStore(persistence))
        engine.cache.load()

        scheduler = build_scheduler(engine, [(ScriptedAdapter(), self._settings())], Config(), persistence)
        try:
            assert scheduler.pairs == ["github/a/b", "github/c/d"]
            assert scheduler.poller("github/a/b").cursor.token == "saved"
            assert scheduler.poller("github/c/d").cursor.token is None
            assert scheduler.poller("github/c/d").poll_interval == 30
        finally:
            scheduler.stop()

    def test_hung_pairs_do_not_starve_healthy_pair(self):
        release = threading.Event()

        class HangingAdapter(ScriptedAdapter):
            def fetch(self, channel, cursor):
                release.wait(10)
                return FetchResult(cursor=cursor)

        engine = MergeEngine()
        sources = [
            (
                HangingAdapter(kind=SourceKind.JIRA),
                SourceSettings(kind=SourceKind.JIRA, channels=frozenset({"A", "B"})),
            ),
            (
                ScriptedAdapter([_page(_rec(1), token="t1")], kind=SourceKind.TELEGRAM),
                SourceSettings(kind=SourceKind.TELEGRAM, channels=frozenset({"updates"})),
            ),
        ]
        config = Config(max_workers=2, fetch_timeout_seconds=0.2)
        scheduler = build_scheduler(engine, sources, config)
        scheduler.start()
        try:
            def settled():
                states = {s.pair: s.state for s in scheduler.statuses()}
                return states == {
                    "jira/A": PairState.BACKOFF,
                    "jira/B": PairState.BACKOFF,
                    "telegram/updates": PairState.OK,
                }

            deadline = time.monotonic() + 5
            while not settled() and time.monotonic() < deadline:
                time.sleep(0.01)
            assert settled()
            assert _ids(engine) == ["updates#1"]
            assert scheduler.poller("telegram/updates").status.last_error is None
        finally:
            release.set()
            scheduler.stop()

    def test_cursors_ignored_after_cache_corruption(self):
        persistence = RecordingPersistence()
        persistence.corrupt = True
        persistence.cursors[(SourceKind.GITHUB, "a/b")] = Cursor("saved")
        engine = MergeEngine(CacheStore(persistence))
        engine.cache.load()

        scheduler = build_scheduler(engine, [(ScriptedAdapter(), self._settings())], Config(), persistence)
        try:
            assert scheduler.poller("github/a/b").cursor.token is None
        finally:
            scheduler.stop()
