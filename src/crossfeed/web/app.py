"""FastAPI application factory for the crossfeed JSON view."""

from __future__ import annotations

from fastapi import FastAPI

from crossfeed.feed.engine import MergeEngine
from crossfeed.scheduler import PollScheduler
from crossfeed.web.routes import health_router, router


def create_app(
    engine: MergeEngine,
    scheduler: PollScheduler | None = None,
    feed_limit: int = 100,
    lifespan=None,
) -> FastAPI:
    """Build and return a FastAPI application reading from ``engine``."""
    app = FastAPI(title="crossfeed", docs_url="/api/docs", lifespan=lifespan)
    app.state.engine = engine
    app.state.scheduler = scheduler
    app.state.feed_limit = feed_limit
    app.include_router(health_router)
    app.include_router(router, prefix="/api/v1")
    return app
