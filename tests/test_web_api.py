"""Integration tests for the crossfeed web API endpoints."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from crossfeed.feed.engine import MergeEngine
from crossfeed.models import (
    Attachment,
    AttachmentKind,
    Author,
    Identity,
    Message,
    PairState,
    SourceKind,
    SourceStatus,
)
from crossfeed.scheduler import PollScheduler
from crossfeed.web.app import create_app


# --- Seed helpers ---


def _message(kind, native_id, ts, channel="main", **overrides):
    fields = {
        "identity": Identity(kind, native_id),
        "channel": channel,
        "author": Author("Ada", native_id="1"),
        "timestamp": datetime.fromtimestamp(ts, tz=timezone.utc),
        "content": f"Content for {native_id}.",
        "edit_version": "1",
    }
    fields.update(overrides)
    return Message(**fields)


def _seed(engine):
    engine.integrate([
        _message(SourceKind.GITHUB, "acme/app#1", 100, channel="acme/app", title="#1 Broken build"),
        _message(
            SourceKind.TELEGRAM, "-100:7", 150, channel="-100",
            attachments=(Attachment("chart.png", "tg://file/1", AttachmentKind.IMAGE, 2048),),
        ),
        _message(SourceKind.DISCORD, "900", 200, channel="555").tombstoned(),
        _message(SourceKind.JIRA, "OPS-4", 300, channel="OPS"),
    ])


@pytest.fixture()
def engine():
    engine = MergeEngine()
    _seed(engine)
    return engine


@pytest.fixture()
def scheduler():
    scheduler = MagicMock(spec=PollScheduler)
    scheduler.halted = False
    return scheduler


@pytest.fixture()
def client(engine, scheduler):
    return TestClient(create_app(engine, scheduler, feed_limit=3))


# --- Health ---


class TestHealth:
    def test_healthy(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert data["messages"] == 4
        assert data["feed_version"] == 1

    def test_degraded_source(self, engine, client):
        engine.update_status(SourceStatus(SourceKind.JIRA, "OPS", state=PairState.BACKOFF))
        engine.update_status(SourceStatus(SourceKind.GITHUB, "acme/app", state=PairState.OK))
        data = client.get("/health").json()
        assert data["status"] == "degraded"
        assert data["degraded_sources"] == 1

    def test_all_sources_suspended(self, engine, client):
        engine.update_status(SourceStatus(SourceKind.JIRA, "OPS", state=PairState.SUSPENDED))
        resp = client.get("/health")
        assert resp.status_code == 503
        assert resp.json()["status"] == "unhealthy"

    def test_halted_pipeline(self, scheduler, client):
        scheduler.halted = True
        assert client.get("/health").status_code == 503

    def test_health_not_under_api_prefix(self, client):
        assert client.get("/health").status_code == 200
        assert client.get("/api/v1/health").status_code == 404


# --- Feed ---


class TestFeed:
    def test_newest_first_with_default_limit(self, client):
        data = client.get("/api/v1/feed").json()
        assert data["version"] == 1
        assert data["total"] == 4
        assert [m["identity"] for m in data["messages"]] == [
            "jira:OPS-4", "discord:900", "telegram:-100:7",
        ]

    def test_limit(self, client):
        data = client.get("/api/v1/feed", params={"limit": 1}).json()
        assert len(data["messages"]) == 1

    def test_limit_out_of_range(self, client):
        assert client.get("/api/v1/feed", params={"limit": 0}).status_code == 422
        assert client.get("/api/v1/feed", params={"limit": 5000}).status_code == 422

    def test_filter_by_kind(self, client):
        data = client.get("/api/v1/feed", params={"kind": "github"}).json()
        assert data["total"] == 1
        message = data["messages"][0]
        assert message["title"] == "#1 Broken build"
        assert message["author"] == {"name": "Ada", "native_id": "1"}

    def test_unknown_kind_rejected(self, client):
        assert client.get("/api/v1/feed", params={"kind": "slack"}).status_code == 422

    def test_filter_by_channel(self, client):
        data = client.get("/api/v1/feed", params={"channel": "-100"}).json()
        assert [m["native_id"] for m in data["messages"]] == ["-100:7"]
        assert data["messages"][0]["attachments"][0]["kind"] == "image"

    def test_exclude_deleted(self, client):
        data = client.get("/api/v1/feed", params={"include_deleted": "false", "limit": 10}).json()
        assert "discord:900" not in [m["identity"] for m in data["messages"]]
        assert data["total"] == 3

    def test_tombstone_shown(self, client):
        data = client.get("/api/v1/feed", params={"kind": "discord"}).json()
        assert data["messages"][0]["deleted"] is True
        assert data["messages"][0]["content"] == "[message removed]"

    def test_empty_feed(self, scheduler):
        client = TestClient(create_app(MergeEngine(), scheduler))
        data = client.get("/api/v1/feed").json()
        assert data == {"version": 0, "published_at": None, "total": 0, "messages": []}


# --- Messages ---


class TestMessageDetail:
    def test_found(self, client):
        resp = client.get("/api/v1/messages/github/acme/app%231")
        assert resp.status_code == 200
        assert resp.json()["native_id"] == "acme/app#1"

    def test_not_found(self, client):
        resp = client.get("/api/v1/messages/jira/OPS-999")
        assert resp.status_code == 404
        assert resp.json()["detail"] == "Message not found"


# --- Sources and refresh ---


class TestSources:
    def test_lists_statuses_sorted(self, engine, client):
        engine.update_status(SourceStatus(SourceKind.JIRA, "OPS", state=PairState.RATE_LIMITED,
                                          consecutive_failures=2, last_error="429"))
        engine.update_status(SourceStatus(SourceKind.GITHUB, "acme/app", state=PairState.OK))

        data = client.get("/api/v1/sources").json()

        assert [s["pair"] for s in data["sources"]] == ["github/acme/app", "jira/OPS"]
        assert data["sources"][1]["state"] == "rate_limited"
        assert data["sources"][1]["last_error"] == "429"
        assert data["degraded"] == 1

    def test_refresh_triggers_poll(self, scheduler, client):
        resp = client.post("/api/v1/refresh")
        assert resp.status_code == 202
        scheduler.poll_now.assert_called_once_with()

    def test_refresh_without_scheduler(self, engine):
        client = TestClient(create_app(engine))
        assert client.post("/api/v1/refresh").status_code == 503
