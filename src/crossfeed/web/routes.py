"""API route handlers for the crossfeed JSON view."""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from crossfeed.feed.snapshot import FeedSnapshot
from crossfeed.models import Identity, Message, PairState, SourceKind, SourceStatus
from crossfeed.web.models import (
    AttachmentOut,
    AuthorOut,
    FeedResponse,
    MessageOut,
    SourceListResponse,
    SourceStatusOut,
)

logger = logging.getLogger(__name__)

router = APIRouter()
health_router = APIRouter()


def _snapshot(request: Request) -> FeedSnapshot:
    return request.app.state.engine.current_snapshot()


def _message_out(message: Message) -> MessageOut:
    return MessageOut(
        identity=str(message.identity),
        kind=message.kind.value,
        native_id=message.identity.native_id,
        channel=message.channel,
        author=AuthorOut(name=message.author.name, native_id=message.author.native_id),
        timestamp=message.timestamp,
        content=message.content,
        edit_version=message.edit_version,
        deleted=message.deleted,
        thread_parent=str(message.thread_parent) if message.thread_parent else None,
        title=message.title,
        url=message.url,
        edited_at=message.edited_at,
        attachments=[
            AttachmentOut(filename=a.filename, url=a.url, kind=a.kind.value, size=a.size)
            for a in message.attachments
        ],
    )


def _status_out(status: SourceStatus) -> SourceStatusOut:
    return SourceStatusOut(
        pair=status.pair,
        kind=status.kind.value,
        channel=status.channel,
        state=status.state.value,
        consecutive_failures=status.consecutive_failures,
        last_error=status.last_error,
        last_success=status.last_success,
        malformed_count=status.malformed_count,
        next_poll_at=status.next_poll_at,
    )


@health_router.get("/health")
def health(request: Request) -> JSONResponse:
    """Report feed version and source health; 503 when no source can make progress."""
    snapshot = _snapshot(request)
    scheduler = request.app.state.scheduler
    statuses = list(snapshot.sources.values())
    suspended = sum(1 for s in statuses if s.state == PairState.SUSPENDED)
    degraded = len(snapshot.degraded())
    body = {
        "status": "healthy" if degraded == 0 else "degraded",
        "feed_version": snapshot.version,
        "messages": len(snapshot),
        "degraded_sources": degraded,
    }
    if scheduler is not None and scheduler.halted:
        logger.warning("Health check failed: ingestion halted")
        body["status"] = "unhealthy"
        return JSONResponse(body, status_code=503)
    if statuses and suspended == len(statuses):
        logger.warning("Health check failed: all %d source(s) suspended", suspended)
        body["status"] = "unhealthy"
        return JSONResponse(body, status_code=503)
    return JSONResponse(body)


@router.get("/feed", response_model=FeedResponse)
def feed(
    request: Request,
    kind: SourceKind | None = None,
    channel: str | None = None,
    include_deleted: bool = True,
    limit: int | None = Query(None, ge=1, le=1000),
) -> FeedResponse:
    """Newest messages first."""
    snapshot = _snapshot(request)
    limit = limit or request.app.state.feed_limit

    selected = [
        m
        for m in snapshot.latest()
        if (kind is None or m.kind == kind)
        and (channel is None or m.channel == channel)
        and (include_deleted or not m.deleted)
    ]
    return FeedResponse(
        version=snapshot.version,
        published_at=snapshot.published_at,
        total=len(selected),
        messages=[_message_out(m) for m in selected[:limit]],
    )


@router.get("/messages/{kind}/{native_id:path}", response_model=MessageOut)
def message_by_identity(request: Request, kind: SourceKind, native_id: str) -> MessageOut:
    message = _snapshot(request).get(Identity(kind, native_id))
    if message is None:
        raise HTTPException(status_code=404, detail="Message not found")
    return _message_out(message)


@router.get("/sources", response_model=SourceListResponse)
def sources(request: Request) -> SourceListResponse:
    snapshot = _snapshot(request)
    statuses = [s for _, s in sorted(snapshot.sources.items())]
    return SourceListResponse(
        sources=[_status_out(s) for s in statuses],
        degraded=len(snapshot.degraded()),
    )


@router.post("/refresh", status_code=202)
def refresh(request: Request) -> dict:
    """Poll every active source now."""
    scheduler = request.app.state.scheduler
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Scheduler not running")
    scheduler.poll_now()
    return {"status": "accepted"}
