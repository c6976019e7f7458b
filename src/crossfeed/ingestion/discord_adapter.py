"""Discord source adapter: reads channel history via the REST API."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone

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
from crossfeed.ingestion.normalize import build_message, make_attachment
from crossfeed.models import Cursor, Identity, Message, SourceKind

logger = logging.getLogger(__name__)

_API_BASE = "https://discord.com/api/v10"
_DISCORD_EPOCH_MS = 1420070400000
_PAGE_LIMIT = 100
_RECENT_WINDOW = 50

_USER_MENTION = re.compile(r"<@!?(\d+)>")
_CHANNEL_MENTION = re.compile(r"<#(\d+)>")
_ROLE_MENTION = re.compile(r"<@&(\d+)>")
_CUSTOM_EMOJI = re.compile(r"<a?:(\w+):\d+>")


def snowflake_time(snowflake: str | int) -> datetime:
    """Creation time encoded in a Discord snowflake id."""
    ms = (int(snowflake) >> 22) + _DISCORD_EPOCH_MS
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


class DiscordAdapter(SourceAdapter):
    """Adapter for Discord text channels."""

    def __init__(self, timeout: float = 30.0) -> None:
        super().__init__(timeout)
        self._token = ""
        self._recent_window = _RECENT_WINDOW
        # Ids seen in the last recent-window read, per channel.
        self._recent_ids: dict[str, set[str]] = {}

    @property
    def kind(self) -> SourceKind:
        return SourceKind.DISCORD

    @property
    def name(self) -> str:
        return "discord"

    def configure(self, settings: SourceSettings) -> None:
        self._token = settings.credentials.get("token", "")
        if not self._token:
            raise ValueError("discord source requires credentials.token")
        window = int(settings.options.get("recent_window", _RECENT_WINDOW))
        self._recent_window = max(0, min(_PAGE_LIMIT, window))

    def _get_messages(self, channel: str, params: dict[str, object]) -> list:
        with transport_errors(self.name):
            resp = httpx.get(
                f"{_API_BASE}/channels/{channel}/messages",
                params=params,
                headers={"Authorization": self._token, "User-Agent": USER_AGENT},
                timeout=self._timeout,
            )

        retry_after = None
        if resp.status_code == 429:
            try:
                retry_after = float(resp.json()["retry_after"])
            except (ValueError, KeyError, TypeError):
                retry_after = None
        check_response(resp, self.name, retry_after=retry_after)

        data = decode_json(resp, self.name)
        if not isinstance(data, list):
            raise TransientFetchError(f"discord: unexpected payload for channel {channel}")
        return [msg for msg in data if isinstance(msg, dict)]

    def fetch(self, channel: str, cursor: Cursor) -> FetchResult:
        """Fetch messages after the cursor, then re-read the latest window.

        Messages before the cursor are never returned by ``after=``, so once
        the channel is caught up the newest ``recent_window`` messages are
        fetched again to pick up edits and deletions; replays are no-ops.
        """
        params: dict[str, object] = {"limit": _PAGE_LIMIT}
        if cursor.token is not None:
            params["after"] = cursor.token
        data = self._get_messages(channel, params)
        has_more = len(data) >= _PAGE_LIMIT

        records = list(data)
        if cursor.token is not None and not has_more and self._recent_window:
            recent = self._get_messages(channel, {"limit": self._recent_window})
            records.extend(self._vanished(channel, recent))
            records.extend(recent)

        newest = int(cursor.token) if cursor.token is not None else None
        seen: set[str] = set()
        items: list[dict] = []
        for msg in records:
            msg_id = msg.get("id")
            if msg_id in seen:
                continue
            seen.add(msg_id)
            items.append(msg)
            if isinstance(msg_id, str) and msg_id.isdigit() and not msg.get("deleted"):
                newest = max(newest or 0, int(msg_id))

            # An explicitly null referenced_message means the parent was deleted.
            reference = msg.get("message_reference") or {}
            if "referenced_message" in msg and msg["referenced_message"] is None:
                parent_id = reference.get("message_id")
                if parent_id:
                    items.append({"id": parent_id, "channel_id": channel, "deleted": True})

        logger.info("Fetched %d record(s) from Discord channel %s", len(items), channel)
        return FetchResult(
            items=items,
            cursor=Cursor(
                token=str(newest) if newest is not None else None,
                last_success=datetime.now(timezone.utc),
            ),
            has_more=has_more,
        )

    def _vanished(self, channel: str, recent: list[dict]) -> list[dict]:
        """Deletion stubs for messages that dropped out of the middle of the window."""
        ids = {m["id"] for m in recent if isinstance(m.get("id"), str) and m["id"].isdigit()}
        previous = self._recent_ids.get(channel, set())
        self._recent_ids[channel] = ids
        if not ids:
            return []
        # Everything at or above the oldest id in the window is in the window.
        floor = min(int(i) for i in ids)
        return [
            {"id": msg_id, "channel_id": channel, "deleted": True}
            for msg_id in sorted(previous - ids, key=int)
            if int(msg_id) >= floor
        ]

    def normalize(self, channel: str, raw: dict) -> Message:
        msg_id = raw.get("id")
        channel_id = raw.get("channel_id") or channel

        if raw.get("deleted"):
            if not isinstance(msg_id, str) or not msg_id.isdigit():
                raise MalformedRecord(f"Invalid discord deletion record: id {msg_id!r}")
            return build_message(
                kind=SourceKind.DISCORD,
                native_id=msg_id,
                channel=channel_id,
                author_name=None,
                timestamp=snowflake_time(msg_id).isoformat(),
                content=None,
                edit_version="deleted",
                deleted=True,
            )

        author = raw.get("author") or {}
        parent = None
        reference = raw.get("message_reference") or {}
        if reference.get("message_id"):
            parent = Identity(SourceKind.DISCORD, str(reference["message_id"]))

        url = None
        if raw.get("guild_id") and msg_id:
            url = f"https://discord.com/channels/{raw['guild_id']}/{channel_id}/{msg_id}"

        attachments = [
            make_attachment(a.get("filename"), a.get("url"), a.get("content_type"), a.get("size"))
            for a in raw.get("attachments") or []
            if isinstance(a, dict)
        ]

        edited = raw.get("edited_timestamp")
        content = _flatten_content(raw)
        # Link embeds are attached after posting without touching
        # edited_timestamp, so the content hash is part of the version.
        return build_message(
            kind=SourceKind.DISCORD,
            native_id=msg_id,
            channel=channel_id,
            author_name=author.get("global_name") or author.get("username"),
            author_id=author.get("id"),
            timestamp=raw.get("timestamp"),
            content=content,
            edit_version=f"{edited or '0'}:{compute_content_hash(content)[:12]}",
            thread_parent=parent,
            url=url,
            edited_at=edited,
            attachments=attachments,
        )


def _flatten_content(raw: dict) -> str:
    """Render mention markup as readable names and append embed text."""
    content = raw.get("content") or ""
    users = {
        str(m.get("id")): m.get("global_name") or m.get("username") or str(m.get("id"))
        for m in raw.get("mentions") or []
        if isinstance(m, dict)
    }
    content = _USER_MENTION.sub(lambda m: f"@{users.get(m.group(1), m.group(1))}", content)
    content = _ROLE_MENTION.sub(lambda m: f"@role:{m.group(1)}", content)
    content = _CHANNEL_MENTION.sub(lambda m: f"#{m.group(1)}", content)
    content = _CUSTOM_EMOJI.sub(lambda m: f":{m.group(1)}:", content)

    parts = [content] if content else []
    for embed in raw.get("embeds") or []:
        if not isinstance(embed, dict):
            continue
        text = "\n".join(p for p in (embed.get("title"), embed.get("description")) if p)
        if text:
            parts.append(f"[embed] {text}")
    return "\n\n".join(parts)
