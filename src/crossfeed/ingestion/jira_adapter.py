"""Jira source adapter: follows issue updates per project via JQL search."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import httpx

from crossfeed.config import SourceSettings
from crossfeed.errors import MalformedRecord, TransientFetchError
from crossfeed.ingestion.adapter import FetchResult, SourceAdapter
from crossfeed.ingestion.dedup import compute_content_hash
from crossfeed.ingestion.http import (
    USER_AGENT,
    check_response,
    decode_json,
    transport_errors,
)
from crossfeed.ingestion.normalize import build_message, parse_timestamp, try_parse_timestamp
from crossfeed.models import Cursor, Identity, Message, SourceKind

logger = logging.getLogger(__name__)

_SEARCH_PATH = "/rest/api/3/search/jql"
_FIELDS = "summary,status,assignee,reporter,created,updated,description,parent"
_PAGE_SIZE = 100
_BLOCK_NODES = frozenset({
    "paragraph", "heading", "blockquote", "codeBlock",
    "panel", "rule", "tableRow", "mediaSingle",
})


class JiraAdapter(SourceAdapter):
    """Adapter for Jira Cloud projects."""

    def __init__(self, timeout: float = 30.0) -> None:
        super().__init__(timeout)
        self._base_url = ""
        self._email = ""
        self._api_token = ""
        self._tz = ZoneInfo("UTC")

    @property
    def kind(self) -> SourceKind:
        return SourceKind.JIRA

    @property
    def name(self) -> str:
        return "jira"

    def configure(self, settings: SourceSettings) -> None:
        self._base_url = str(settings.options.get("base_url", "")).rstrip("/")
        self._email = settings.credentials.get("email", "")
        self._api_token = settings.credentials.get("api_token", "")
        missing = [
            name for name, value in (
                ("base_url", self._base_url),
                ("credentials.email", self._email),
                ("credentials.api_token", self._api_token),
            ) if not value
        ]
        if missing:
            raise ValueError(f"jira source requires: {', '.join(missing)}")
        # JQL dates are interpreted in the API user's profile time zone.
        self._tz = ZoneInfo(settings.options.get("timezone", "UTC"))

    def _jql(self, project: str, cursor: Cursor) -> str:
        jql = f'project = "{project}"'
        if cursor.token is not None:
            since = parse_timestamp(cursor.token).astimezone(self._tz)
            jql += f' AND updated >= "{since.strftime("%Y/%m/%d %H:%M")}"'
        return jql + " ORDER BY updated ASC"

    def _search(self, channel: str, cursor: Cursor, page_token: str | None) -> httpx.Response:
        params = {
            "jql": self._jql(channel, cursor),
            "maxResults": _PAGE_SIZE,
            "fields": _FIELDS,
        }
        if page_token:
            params["nextPageToken"] = page_token
        with transport_errors(self.name):
            return httpx.get(
                f"{self._base_url}{_SEARCH_PATH}",
                params=params,
                auth=(self._email, self._api_token),
                headers={"Accept": "application/json", "User-Agent": USER_AGENT},
                timeout=self._timeout,
            )

    def fetch(self, channel: str, cursor: Cursor) -> FetchResult:
        """Fetch one page of issues updated since the cursor watermark.

        The watermark stays put while Jira hands out page tokens, so the JQL
        is identical for every page of one pass; it moves to the newest
        ``updated`` value only after the last page.
        """
        resp = self._search(channel, cursor, cursor.position)
        if cursor.position and resp.status_code == 400:
            logger.warning("Jira rejected stored page token for %s; restarting pass", channel)
            cursor = Cursor(token=cursor.token, last_success=cursor.last_success)
            resp = self._search(channel, cursor, None)
        check_response(resp, self.name)

        data = decode_json(resp, self.name)
        if not isinstance(data, dict) or not isinstance(data.get("issues", []), list):
            raise TransientFetchError(f"jira: unexpected payload for project {channel}")

        newest_token = cursor.token
        newest_at = try_parse_timestamp(cursor.token)
        items: list[dict] = []
        for issue in data.get("issues", []):
            if not isinstance(issue, dict):
                continue
            items.append(issue)
            updated_raw = (issue.get("fields") or {}).get("updated")
            updated = try_parse_timestamp(updated_raw)
            if updated is not None and (newest_at is None or updated > newest_at):
                newest_at = updated
                newest_token = updated_raw

        logger.info("Fetched %d issue(s) from Jira project %s", len(items), channel)
        now = datetime.now(timezone.utc)
        page_token = data.get("nextPageToken")
        if page_token and not data.get("isLast", False):
            return FetchResult(
                items=items,
                cursor=Cursor(token=cursor.token, last_success=now, position=page_token),
                has_more=True,
            )
        return FetchResult(
            items=items,
            cursor=Cursor(token=newest_token, last_success=now),
            has_more=False,
        )

    def normalize(self, channel: str, raw: dict) -> Message:
        key = raw.get("key")
        fields = raw.get("fields")
        if not key or not isinstance(fields, dict):
            raise MalformedRecord(f"Invalid jira record: key {key!r}")

        person = fields.get("reporter") or fields.get("assignee") or {}
        status = (fields.get("status") or {}).get("name") or "Unknown"
        summary = fields.get("summary") or ""
        description = flatten_adf(fields.get("description"))
        content = f"{key}: {summary} (Status: {status})"
        if description:
            content = f"{content}\n\n{description}"

        parent = None
        parent_key = (fields.get("parent") or {}).get("key")
        if parent_key:
            parent = Identity(SourceKind.JIRA, parent_key)

        # Status names are denormalized: renaming one does not touch `updated`.
        title = f"{key} {summary}".strip()
        updated = fields.get("updated")
        edit_version = None
        if updated:
            edit_version = f"{updated}:{compute_content_hash(content, title)[:12]}"

        return build_message(
            kind=SourceKind.JIRA,
            native_id=key,
            channel=channel,
            author_name=person.get("displayName") or "Unassigned",
            author_id=person.get("accountId"),
            timestamp=fields.get("created"),
            content=content,
            edit_version=edit_version,
            thread_parent=parent,
            title=title,
            url=f"{self._base_url}/browse/{key}" if self._base_url else None,
            edited_at=fields.get("updated"),
        )


def flatten_adf(node: object) -> str:
    """Flatten an Atlassian Document Format tree to plain text.

    Plain strings (older API versions) pass through unchanged.
    """
    if node is None:
        return ""
    if isinstance(node, str):
        return node.strip()
    if not isinstance(node, dict):
        return ""

    parts: list[str] = []
    _walk_adf(node, parts)
    text = "".join(parts)
    lines = [line.rstrip() for line in text.split("\n")]
    return "\n".join(lines).strip()


def _walk_adf(node: dict, out: list[str]) -> None:
    node_type = node.get("type")
    attrs = node.get("attrs") or {}
    if node_type == "text":
        out.append(node.get("text", ""))
        return
    if node_type == "hardBreak":
        out.append("\n")
        return
    if node_type == "mention":
        out.append(attrs.get("text") or "@user")
        return
    if node_type == "emoji":
        out.append(attrs.get("text") or attrs.get("shortName", ""))
        return
    if node_type == "inlineCard":
        out.append(attrs.get("url", ""))
        return
    if node_type == "listItem":
        out.append("- ")

    for child in node.get("content") or []:
        if isinstance(child, dict):
            _walk_adf(child, out)

    if node_type in _BLOCK_NODES:
        out.append("\n")
