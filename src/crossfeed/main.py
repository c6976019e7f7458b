"""Application entry point: runs the poll scheduler with the TUI or the web view."""

from __future__ import annotations

import json
import logging
import sqlite3
import sys
from contextlib import asynccontextmanager

import uvicorn

from crossfeed.config import Config, SourceSettings, load_config, load_sources
from crossfeed.errors import PipelineHalted
from crossfeed.feed import CacheStore, MergeEngine
from crossfeed.ingestion.adapter import SourceAdapter
from crossfeed.ingestion.registry import get_adapter_class
from crossfeed.scheduler import PollScheduler, build_scheduler
from crossfeed.storage.persistence import Persistence, SqlitePersistence
from crossfeed.tui import run_tui, selection_style
from crossfeed.web.app import create_app

logger = logging.getLogger("crossfeed")


def _setup_logging(log_level: str, log_format: str, log_file: str = "") -> None:
    """Configure root logger based on config.

    The TUI owns the terminal, so logs go to ``log_file`` when one is set.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    if log_format == "json":
        formatter = logging.Formatter(
            json.dumps(
                {
                    "time": "%(asctime)s",
                    "level": "%(levelname)s",
                    "logger": "%(name)s",
                    "thread": "%(threadName)s",
                    "message": "%(message)s",
                }
            )
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s (%(threadName)s): %(message)s"
        )

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(level)
    root.addHandler(handler)
    # APScheduler logs every job execution at INFO.
    logging.getLogger("apscheduler").setLevel(max(level, logging.WARNING))
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))


def build_adapters(
    sources: list[SourceSettings], fetch_timeout: float
) -> list[tuple[SourceAdapter, SourceSettings]]:
    """Instantiate and configure one adapter per enabled source.

    Misconfigured sources are logged and skipped so the rest still run.
    """
    adapters: list[tuple[SourceAdapter, SourceSettings]] = []
    for settings in sources:
        cls = get_adapter_class(settings.kind)
        if cls is None:
            logger.warning("No adapter registered for source kind '%s'", settings.kind.value)
            continue
        adapter = cls(timeout=fetch_timeout)
        try:
            adapter.configure(settings)
        except ValueError as exc:
            logger.error("Skipping %s source: %s", settings.kind.value, exc)
            continue
        adapters.append((adapter, settings))
    return adapters


def _open_persistence(config: Config) -> Persistence | None:
    if not config.database_path:
        logger.info("DATABASE_PATH not set; feed and cursors are kept in memory only")
        return None
    try:
        return SqlitePersistence(config.database_path)
    except sqlite3.Error as exc:
        logger.error(
            "Database %s unusable, continuing in memory: %s", config.database_path, exc
        )
        return None


def build_pipeline(config: Config) -> tuple[MergeEngine, PollScheduler]:
    """Restore cached state and wire adapters, engine and scheduler together."""
    persistence = _open_persistence(config)
    cache = CacheStore(persistence)
    cache.load()
    engine = MergeEngine(cache)
    engine.restore()

    sources = load_sources(config)
    adapters = build_adapters(sources, config.fetch_timeout_seconds)
    if not adapters:
        logger.warning("No sources configured; the feed will only show cached messages")

    scheduler = build_scheduler(engine, adapters, config, persistence)
    return engine, scheduler


def _run_web(config: Config, engine: MergeEngine, scheduler: PollScheduler) -> None:
    @asynccontextmanager
    async def lifespan(app):
        logger.info("Scheduler starting")
        scheduler.start()
        yield
        logger.info("Scheduler shutting down")
        scheduler.stop()
        engine.close()

    app = create_app(engine, scheduler, feed_limit=config.feed_limit, lifespan=lifespan)
    uvicorn.run(app, host=config.web_host, port=config.web_port, log_config=None)


def _run_tui(config: Config, engine: MergeEngine, scheduler: PollScheduler) -> None:
    scheduler.start()
    try:
        run_tui(
            engine,
            scheduler,
            limit=config.feed_limit,
            selected_style=selection_style(config.selected_fg_color, config.selected_bg_color),
        )
    finally:
        scheduler.stop()
        engine.close()


def main() -> None:
    """Load config, set up logging, restore state, and start polling."""
    config = load_config()
    _setup_logging(config.log_level, config.log_format, config.log_file)

    logger.info(
        "crossfeed starting (ui=%s, db=%s)",
        config.ui_mode,
        config.database_path or "memory",
    )

    engine, scheduler = build_pipeline(config)
    try:
        if config.ui_mode == "web":
            _run_web(config, engine, scheduler)
        else:
            _run_tui(config, engine, scheduler)
    except PipelineHalted as exc:
        logger.critical("%s", exc)
        sys.exit(2)
    except KeyboardInterrupt:
        logger.info("Interrupted")
    # Surface a halt that happened while the web view was serving.
    try:
        scheduler.wait(timeout=0)
    except PipelineHalted as exc:
        logger.critical("%s", exc)
        sys.exit(2)


if __name__ == "__main__":
    main()
