"""Pydantic v2 response models for the crossfeed JSON view."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------
class AuthorOut(BaseModel):
    name: str
    native_id: str | None = None


class AttachmentOut(BaseModel):
    filename: str
    url: str
    kind: str
    size: int | None = None


class MessageOut(BaseModel):
    identity: str
    kind: str
    native_id: str
    channel: str
    author: AuthorOut
    timestamp: datetime
    content: str
    edit_version: str
    deleted: bool
    thread_parent: str | None = None
    title: str | None = None
    url: str | None = None
    edited_at: datetime | None = None
    attachments: list[AttachmentOut] = []


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------
class SourceStatusOut(BaseModel):
    pair: str
    kind: str
    channel: str
    state: str
    consecutive_failures: int
    last_error: str | None = None
    last_success: datetime | None = None
    malformed_count: int
    next_poll_at: datetime | None = None


class SourceListResponse(BaseModel):
    sources: list[SourceStatusOut]
    degraded: int


# ---------------------------------------------------------------------------
# Feed
# ---------------------------------------------------------------------------
class FeedResponse(BaseModel):
    version: int
    published_at: datetime | None
    total: int
    messages: list[MessageOut]
