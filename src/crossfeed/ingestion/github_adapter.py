"""GitHub source adapter: follows issue and pull request activity per repository."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

import httpx

from crossfeed.config import SourceSettings
from crossfeed.errors import MalformedRecord, RateLimited, TransientFetchError
from crossfeed.ingestion.adapter import FetchResult, SourceAdapter
from crossfeed.ingestion.http import (
    USER_AGENT,
    check_response,
    decode_json,
    parse_retry_after,
    transport_errors,
)
from crossfeed.ingestion.normalize import build_message, try_parse_timestamp
from crossfeed.models import Cursor, Message, SourceKind

logger = logging.getLogger(__name__)

_GITHUB_ISSUES_URL = "https://api.github.com/repos/{repo}/issues"
_DEFAULT_PAGE_SIZE = 100


class GitHubAdapter(SourceAdapter):
    """Adapter for GitHub repository issues and pull requests."""

    def __init__(self, timeout: float = 30.0) -> None:
        super().__init__(timeout)
        self._token = ""
        self._page_size = _DEFAULT_PAGE_SIZE

    @property
    def kind(self) -> SourceKind:
        return SourceKind.GITHUB

    @property
    def name(self) -> str:
        return "github"

    def configure(self, settings: SourceSettings) -> None:
        # Public repositories can be read anonymously, at a much lower rate limit.
        self._token = settings.credentials.get("token", "")
        self._page_size = min(100, int(settings.options.get("page_size", _DEFAULT_PAGE_SIZE)))

    def fetch(self, channel: str, cursor: Cursor) -> FetchResult:
        headers: dict[str, str] = {
            "Accept": "application/vnd.github+json",
            "User-Agent": USER_AGENT,
        }
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        params: dict[str, object] = {
            "state": "all",
            "sort": "updated",
            "direction": "asc",
            "per_page": self._page_size,
        }
        if cursor.token is not None:
            params["since"] = cursor.token
        page = int(cursor.position) if cursor.position and cursor.position.isdigit() else 1
        if page > 1:
            params["page"] = page

        with transport_errors(self.name):
            resp = httpx.get(
                _GITHUB_ISSUES_URL.format(repo=channel),
                params=params,
                headers=headers,
                timeout=self._timeout,
            )

        _raise_for_rate_limit(resp)
        check_response(resp, self.name)

        data = decode_json(resp, self.name)
        if not isinstance(data, list):
            raise TransientFetchError(f"github: unexpected payload for {channel}")

        # `since` is inclusive, so the boundary issue comes back on the next poll.
        newest_token = cursor.token
        newest_at = try_parse_timestamp(cursor.token)
        items: list[dict] = []
        for issue in data:
            if not isinstance(issue, dict):
                continue
            items.append(issue)
            updated = try_parse_timestamp(issue.get("updated_at"))
            if updated is not None and (newest_at is None or updated > newest_at):
                newest_at = updated
                newest_token = issue["updated_at"]

        remaining = resp.headers.get("X-RateLimit-Remaining")
        if remaining is not None and remaining.isdigit() and int(remaining) <= 1:
            logger.warning("GitHub API rate limit nearly exhausted (%s remaining)", remaining)

        logger.info("Fetched %d issue(s) from GitHub %s", len(items), channel)
        now = datetime.now(timezone.utc)
        full = len(data) >= self._page_size
        if full and cursor.token is not None and newest_token == cursor.token:
            # A whole page at the watermark: `since` cannot move past it, so page on.
            return FetchResult(
                items=items,
                cursor=Cursor(token=cursor.token, last_success=now, position=str(page + 1)),
                has_more=True,
            )
        return FetchResult(
            items=items,
            cursor=Cursor(token=newest_token, last_success=now),
            has_more=full,
        )

    def normalize(self, channel: str, raw: dict) -> Message:
        number = raw.get("number")
        if not isinstance(number, int):
            raise MalformedRecord(f"Invalid github record: number {number!r}")

        user = raw.get("user") or {}
        label = "PR" if raw.get("pull_request") else "Issue"
        state = raw.get("state") or "unknown"
        title = raw.get("title") or ""
        body = raw.get("body") or ""
        content = f"{label} {state}: {title}"
        if body.strip():
            content = f"{content}\n\n{body}"

        return build_message(
            kind=SourceKind.GITHUB,
            native_id=f"{channel}#{number}",
            channel=channel,
            author_name=user.get("login"),
            author_id=user.get("id"),
            timestamp=raw.get("created_at"),
            content=content,
            edit_version=raw.get("updated_at"),
            title=f"#{number} {title}".strip(),
            url=raw.get("html_url"),
            edited_at=raw.get("updated_at"),
        )


def _raise_for_rate_limit(resp: httpx.Response) -> None:
    """GitHub reports exhausted quotas as 403 or 429 with rate limit headers."""
    if resp.status_code not in (403, 429):
        return
    retry_after = resp.headers.get("Retry-After")
    if retry_after is not None:
        raise RateLimited(
            "github: secondary rate limit",
            retry_after=parse_retry_after(retry_after),
        )
    if resp.headers.get("X-RateLimit-Remaining") == "0":
        reset = resp.headers.get("X-RateLimit-Reset", "")
        delay = 60.0
        if reset.isdigit():
            delay = max(0.0, int(reset) - datetime.now(timezone.utc).timestamp())
        raise RateLimited("github: primary rate limit exhausted", retry_after=delay)
