"""Poll scheduler: one independent poll loop per (source kind, channel) pair."""

from __future__ import annotations

import logging
import random
import threading
from concurrent.futures import Executor, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from apscheduler.executors.pool import ThreadPoolExecutor as JobThreadPool
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from crossfeed.config import Config, SourceSettings
from crossfeed.errors import (
    AuthError,
    IntegrationConflict,
    MalformedRecord,
    PermanentFetchError,
    PersistenceError,
    PipelineHalted,
    RateLimited,
    TransientFetchError,
)
from crossfeed.feed.engine import MergeEngine
from crossfeed.ingestion.adapter import FetchResult, SourceAdapter
from crossfeed.models import Cursor, Identity, Message, PairState, SourceKind, SourceStatus
from crossfeed.storage.persistence import Persistence

logger = logging.getLogger(__name__)


class ExponentialBackoff:
    """
    Exponential backoff with jitter and an optional floor.

    Computes delays as: max(min(base * multiplier^attempt, max_delay) + jitter, minimum).
    The floor carries a backend's Retry-After and is not capped by max_delay.
    Call reset() after a successful poll to zero the attempt counter.
    """

    def __init__(
        self,
        base_delay: float = 5.0,
        max_delay: float = 900.0,
        multiplier: float = 2.0,
        jitter_range: float = 0.2,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self.jitter_range = jitter_range
        self._attempt = 0

    @property
    def attempt(self) -> int:
        """Current attempt count."""
        return self._attempt

    def next_delay(self, minimum: float = 0.0) -> float:
        """Calculate and return the next backoff delay, incrementing the attempt counter."""
        delay = min(
            self.base_delay * (self.multiplier ** self._attempt),
            self.max_delay,
        )
        # Random jitter of +/- jitter_range fraction of the delay
        jitter = delay * random.uniform(-self.jitter_range, self.jitter_range)
        delay = max(0.0, delay + jitter, minimum)
        self._attempt += 1
        return delay

    def reset(self) -> None:
        """Reset the attempt counter after a successful operation."""
        self._attempt = 0


class PairPoller:
    """Owns the cursor, backoff and status of one (kind, channel) pair.

    ``poll_once`` is never run concurrently for one pair, so batches from a
    pair reach the merge engine in fetch order.
    """

    def __init__(
        self,
        adapter: SourceAdapter,
        channel: str,
        engine: MergeEngine,
        *,
        poll_interval: float = 60.0,
        fetch_timeout: float = 30.0,
        backoff: ExponentialBackoff | None = None,
        persistence: Persistence | None = None,
        cursor: Cursor | None = None,
        fetch_executor: Executor | None = None,
    ) -> None:
        self._adapter = adapter
        self._channel = channel
        self._engine = engine
        self._poll_interval = poll_interval
        self._fetch_timeout = fetch_timeout
        self._backoff = backoff or ExponentialBackoff()
        self._persistence = persistence
        self._cursor = cursor or Cursor()
        self._fetch_executor = fetch_executor
        self._status = SourceStatus(kind=adapter.kind, channel=channel)
        # Changed entries whose cache write failed; retried on the next poll.
        self._unpersisted: set[Identity] = set()

    @property
    def kind(self) -> SourceKind:
        return self._adapter.kind

    @property
    def channel(self) -> str:
        return self._channel

    @property
    def pair(self) -> str:
        return self._status.pair

    @property
    def poll_interval(self) -> float:
        return self._poll_interval

    @property
    def cursor(self) -> Cursor:
        return self._cursor

    @property
    def status(self) -> SourceStatus:
        return self._status

    @property
    def suspended(self) -> bool:
        return self._status.state == PairState.SUSPENDED

    def poll_once(self) -> float | None:
        """Fetch, normalize, integrate, persist, advance the cursor.

        Returns the delay in seconds before the next poll, or None once the
        pair is suspended. IntegrationConflict propagates to the caller.
        """
        if self.suspended:
            return None

        try:
            result = self._fetch()
        except RateLimited as exc:
            delay = self._backoff.next_delay(minimum=exc.retry_after)
            self._record_failure(PairState.RATE_LIMITED, exc, delay)
            return delay
        except TransientFetchError as exc:
            delay = self._backoff.next_delay()
            self._record_failure(PairState.BACKOFF, exc, delay)
            return delay
        except (AuthError, PermanentFetchError) as exc:
            logger.error("Suspending %s: %s", self.pair, exc)
            self._set_status(
                state=PairState.SUSPENDED,
                consecutive_failures=self._status.consecutive_failures + 1,
                last_error=str(exc),
                next_poll_at=None,
            )
            return None
        except Exception as exc:
            logger.exception("Unexpected fetch failure for %s", self.pair)
            delay = self._backoff.next_delay()
            self._record_failure(PairState.BACKOFF, exc, delay)
            return delay

        batch, malformed = self._normalize(result)
        integration = self._engine.integrate(batch)

        pending = self._unpersisted | {m.identity for m in integration.changed}
        to_write = [m for m in (self._engine.cache.get(i) for i in pending) if m is not None]
        if not self._engine.cache.persist(to_write):
            self._unpersisted = pending
            delay = self._backoff.next_delay()
            self._record_failure(
                PairState.BACKOFF, PersistenceError("cache write failed"), delay, malformed
            )
            return delay
        self._unpersisted = set()

        advanced = (result.cursor.token, result.cursor.position) != (
            self._cursor.token, self._cursor.position
        )
        self._save_cursor(result.cursor)
        self._cursor = result.cursor
        self._backoff.reset()

        if integration.has_changes:
            logger.info(
                "%s: %d new, %d updated, %d deleted (feed version %d)",
                self.pair, integration.inserted, integration.updated,
                integration.deleted, integration.version,
            )

        # A full page means more history is waiting; keep going unless the
        # cursor did not move at all.
        delay = 0.0 if result.has_more and advanced else self._poll_interval
        now = datetime.now(timezone.utc)
        self._set_status(
            state=PairState.OK,
            consecutive_failures=0,
            last_error=None,
            last_success=now,
            malformed_count=self._status.malformed_count + malformed,
            next_poll_at=now + timedelta(seconds=delay),
        )
        return delay

    def _fetch(self) -> FetchResult:
        if self._fetch_executor is None:
            return self._adapter.fetch(self._channel, self._cursor)
        future = self._fetch_executor.submit(self._adapter.fetch, self._channel, self._cursor)
        try:
            return future.result(timeout=self._fetch_timeout)
        except FutureTimeout:
            future.cancel()
            raise TransientFetchError(
                f"{self.pair}: fetch exceeded {self._fetch_timeout:g}s"
            ) from None

    def close(self) -> None:
        """Release the fetch thread; a hung fetch is abandoned, not joined."""
        if self._fetch_executor is not None:
            self._fetch_executor.shutdown(wait=False, cancel_futures=True)

    def _normalize(self, result: FetchResult) -> tuple[list[Message], int]:
        batch: list[Message] = []
        malformed = 0
        for raw in result.items:
            try:
                batch.append(self._adapter.normalize(self._channel, raw))
            except MalformedRecord as exc:
                malformed += 1
                logger.warning("Skipping malformed record from %s: %s", self.pair, exc)
            except (KeyError, TypeError, AttributeError, ValueError) as exc:
                malformed += 1
                logger.warning(
                    "Skipping unreadable record from %s: %s: %s",
                    self.pair, type(exc).__name__, exc,
                )
        return batch, malformed

    def _save_cursor(self, cursor: Cursor) -> None:
        if self._persistence is None:
            return
        try:
            self._persistence.save_cursor(self.kind, self._channel, cursor)
        except PersistenceError as exc:
            # Cache entries are already durable; a stale cursor only costs a replay.
            logger.warning("Could not persist cursor for %s: %s", self.pair, exc)

    def _record_failure(
        self, state: PairState, exc: Exception, delay: float, malformed: int = 0
    ) -> None:
        failures = self._status.consecutive_failures + 1
        logger.warning(
            "%s failed (%s, attempt %d), next poll in %.1fs: %s",
            self.pair, state.value, failures, delay, exc,
        )
        self._set_status(
            state=state,
            consecutive_failures=failures,
            last_error=str(exc) or type(exc).__name__,
            malformed_count=self._status.malformed_count + malformed,
            next_poll_at=datetime.now(timezone.utc) + timedelta(seconds=delay),
        )

    def _set_status(self, **changes) -> None:
        self._status = replace(self._status, **changes)
        self._engine.update_status(self._status)


class PollScheduler:
    """Runs every PairPoller as an APScheduler job on a thread pool.

    Each job is rescheduled after it runs using the delay its poller
    returned, and paused for good once its pair is suspended. An
    IntegrationConflict from any pair halts everything.
    """

    def __init__(
        self,
        engine: MergeEngine,
        pollers: list[PairPoller],
        max_workers: int = 8,
    ) -> None:
        self._engine = engine
        self._pollers = {p.pair: p for p in pollers}
        self._scheduler = BackgroundScheduler(
            executors={"default": JobThreadPool(max_workers)},
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": None},
            timezone=timezone.utc,
        )
        self._done = threading.Event()
        self._fatal: IntegrationConflict | None = None

    @property
    def pairs(self) -> list[str]:
        return sorted(self._pollers)

    def poller(self, pair: str) -> PairPoller:
        return self._pollers[pair]

    @property
    def halted(self) -> bool:
        """True after a fatal integration conflict stopped ingestion."""
        return self._fatal is not None

    def start(self) -> None:
        now = datetime.now(timezone.utc)
        for pair in self.pairs:
            poller = self._pollers[pair]
            self._engine.update_status(poller.status)
            self._scheduler.add_job(
                self._run,
                trigger=IntervalTrigger(seconds=poller.poll_interval),
                args=[pair],
                id=pair,
                name=f"Poll {pair}",
                next_run_time=now,
            )
        self._scheduler.start()
        logger.info("Poll scheduler started with %d pair(s)", len(self._pollers))

    def _run(self, pair: str) -> None:
        if self._done.is_set():
            return
        poller = self._pollers[pair]
        try:
            delay = poller.poll_once()
        except IntegrationConflict as exc:
            logger.critical("Integration conflict from %s, halting ingestion: %s", pair, exc)
            self._fatal = exc
            self._done.set()
            if self._scheduler.running:
                self._scheduler.pause()
            return

        if self._done.is_set():
            return
        try:
            if delay is None:
                self._scheduler.pause_job(pair)
            else:
                self._scheduler.modify_job(
                    pair, next_run_time=datetime.now(timezone.utc) + timedelta(seconds=delay)
                )
        except JobLookupError:
            logger.debug("Job %s gone before it could be rescheduled", pair)

    def poll_now(self, pair: str | None = None) -> None:
        """Bring the next poll of one pair (or every active pair) forward to now."""
        now = datetime.now(timezone.utc)
        for key in [pair] if pair else self.pairs:
            poller = self._pollers.get(key)
            if poller is None or poller.suspended or self._done.is_set():
                continue
            try:
                self._scheduler.modify_job(key, next_run_time=now)
            except JobLookupError:
                logger.debug("No job for %s", key)

    def statuses(self) -> list[SourceStatus]:
        return [self._pollers[p].status for p in self.pairs]

    def wait(self, timeout: float | None = None) -> bool:
        """Block until stopped or halted. Raises PipelineHalted after a conflict."""
        stopped = self._done.wait(timeout)
        if self._fatal is not None:
            raise PipelineHalted(f"Ingestion halted: {self._fatal}") from self._fatal
        return stopped

    def stop(self) -> None:
        """Stop scheduling and wait for in-flight polls to finish."""
        self._done.set()
        if self._scheduler.running:
            self._scheduler.shutdown(wait=True)
        for poller in self._pollers.values():
            poller.close()
        logger.info("Poll scheduler stopped")


def build_scheduler(
    engine: MergeEngine,
    sources: list[tuple[SourceAdapter, SourceSettings]],
    config: Config,
    persistence: Persistence | None = None,
) -> PollScheduler:
    """Create one PairPoller per pair, restoring persisted cursors.

    Cursors are discarded when the cache failed to load, so history is
    re-fetched instead of skipped.
    """
    cursors: dict[tuple[SourceKind, str], Cursor] = {}
    if persistence is not None:
        if engine.cache.load_failed:
            logger.warning("Cache was unreadable; ignoring stored cursors and re-fetching")
        else:
            cursors = persistence.load_cursors()

    pollers: list[PairPoller] = []
    for adapter, settings in sources:
        for channel in adapter.pair_channels(settings):
            pollers.append(
                PairPoller(
                    adapter,
                    channel,
                    engine,
                    poll_interval=settings.poll_interval,
                    fetch_timeout=config.fetch_timeout_seconds,
                    backoff=ExponentialBackoff(
                        base_delay=config.backoff_base_seconds,
                        max_delay=config.backoff_max_seconds,
                        jitter_range=config.backoff_jitter,
                    ),
                    persistence=persistence,
                    cursor=cursors.get((adapter.kind, channel)),
                    # One fetch thread per pair: a hung backend only blocks itself.
                    fetch_executor=ThreadPoolExecutor(
                        max_workers=1,
                        thread_name_prefix=f"crossfeed-fetch-{adapter.kind.value}",
                    ),
                )
            )
    return PollScheduler(engine, pollers, max_workers=config.max_workers)
