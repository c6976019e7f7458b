"""Telegram source adapter: reads the bot update stream via the Bot API."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

import httpx

from crossfeed.config import SourceSettings
from crossfeed.errors import PermanentFetchError
from crossfeed.ingestion.adapter import FetchResult, SourceAdapter
from crossfeed.ingestion.dedup import compute_content_hash
from crossfeed.ingestion.http import check_response, decode_json, transport_errors
from crossfeed.ingestion.normalize import build_message, make_attachment
from crossfeed.models import Cursor, Identity, Message, SourceKind

logger = logging.getLogger(__name__)

_API_URL = "https://api.telegram.org/bot{token}/{method}"
_UPDATE_KINDS = ("message", "edited_message", "channel_post", "edited_channel_post")
_PAGE_LIMIT = 100
UPDATES_CHANNEL = "updates"


class TelegramAdapter(SourceAdapter):
    """Adapter for Telegram chats a bot is a member of.

    The Bot API has one update stream per bot rather than per chat, so the
    adapter polls a single pair and filters by the configured chat ids.
    """

    def __init__(self, timeout: float = 30.0) -> None:
        super().__init__(timeout)
        self._token = ""
        self._allowed_chats: frozenset[str] = frozenset()

    @property
    def kind(self) -> SourceKind:
        return SourceKind.TELEGRAM

    @property
    def name(self) -> str:
        return "telegram"

    def configure(self, settings: SourceSettings) -> None:
        self._token = settings.credentials.get("bot_token", "")
        if not self._token:
            raise ValueError("telegram source requires credentials.bot_token")
        self._allowed_chats = settings.channels

    def pair_channels(self, settings: SourceSettings) -> list[str]:
        return [UPDATES_CHANNEL]

    def fetch(self, channel: str, cursor: Cursor) -> FetchResult:
        params: dict[str, object] = {
            "timeout": 0,
            "limit": _PAGE_LIMIT,
            "allowed_updates": json.dumps(list(_UPDATE_KINDS)),
        }
        if cursor.token is not None:
            params["offset"] = int(cursor.token)

        url = _API_URL.format(token=self._token, method="getUpdates")
        with transport_errors(self.name):
            resp = httpx.get(url, params=params, timeout=self._timeout)

        retry_after = None
        if resp.status_code == 429:
            try:
                retry_after = float(resp.json()["parameters"]["retry_after"])
            except (ValueError, KeyError, TypeError):
                retry_after = None
        check_response(resp, self.name, retry_after=retry_after)

        data = decode_json(resp, self.name)
        if not isinstance(data, dict) or not data.get("ok"):
            description = data.get("description") if isinstance(data, dict) else None
            raise PermanentFetchError(f"telegram: getUpdates failed: {description or 'unknown error'}")

        next_offset = int(cursor.token) if cursor.token is not None else None
        items: list[dict] = []
        for update in data.get("result", []):
            update_id = update.get("update_id")
            if isinstance(update_id, int):
                next_offset = max(next_offset or 0, update_id + 1)

            message = next((update[k] for k in _UPDATE_KINDS if k in update), None)
            if not isinstance(message, dict):
                continue
            chat_id = str((message.get("chat") or {}).get("id", ""))
            if self._allowed_chats and chat_id not in self._allowed_chats:
                continue
            items.append(message)

        logger.info("Fetched %d message(s) from Telegram", len(items))
        return FetchResult(
            items=items,
            cursor=Cursor(
                token=str(next_offset) if next_offset is not None else None,
                last_success=datetime.now(timezone.utc),
            ),
            has_more=len(data.get("result", [])) >= _PAGE_LIMIT,
        )

    def normalize(self, channel: str, raw: dict) -> Message:
        chat = raw.get("chat") or {}
        chat_id = chat.get("id")
        message_id = raw.get("message_id")
        native_id = f"{chat_id}:{message_id}" if chat_id is not None and message_id is not None else None

        sender = raw.get("from") or raw.get("sender_chat") or {}
        full_name = " ".join(
            p for p in (sender.get("first_name"), sender.get("last_name")) if p
        )
        author_name = full_name or sender.get("title") or sender.get("username")

        parent = None
        reply = raw.get("reply_to_message")
        if isinstance(reply, dict) and reply.get("message_id") is not None:
            parent = Identity(SourceKind.TELEGRAM, f"{chat_id}:{reply['message_id']}")

        url = None
        if chat.get("username") and message_id is not None:
            url = f"https://t.me/{chat['username']}/{message_id}"

        edit_date = raw.get("edit_date")
        content = raw.get("text") or raw.get("caption")
        title = chat.get("title") or chat.get("username")
        # A chat rename changes the title without a new edit_date.
        fingerprint = compute_content_hash(content, title)[:12]
        return build_message(
            kind=SourceKind.TELEGRAM,
            native_id=native_id,
            channel=chat_id,
            author_name=author_name,
            author_id=sender.get("id"),
            timestamp=raw.get("date"),
            content=content,
            edit_version=f"{edit_date or 0}:{fingerprint}",
            thread_parent=parent,
            title=title,
            url=url,
            edited_at=edit_date,
            attachments=_attachments(raw),
        )


def _attachments(raw: dict) -> list:
    """Describe media attached to a message; files are referenced by id."""
    found = []
    photos = raw.get("photo")
    if isinstance(photos, list) and photos:
        largest = max(photos, key=lambda p: p.get("file_size") or 0)
        found.append(make_attachment(
            "photo.jpg", _file_ref(largest), "image/jpeg", largest.get("file_size"),
        ))
    for key, default_type in (
        ("document", None),
        ("video", "video/mp4"),
        ("audio", "audio/mpeg"),
        ("voice", "audio/ogg"),
    ):
        media = raw.get(key)
        if isinstance(media, dict):
            found.append(make_attachment(
                media.get("file_name") or key,
                _file_ref(media),
                media.get("mime_type") or default_type,
                media.get("file_size"),
            ))
    return found


def _file_ref(media: dict) -> str | None:
    file_id = media.get("file_id")
    return f"tg://file/{file_id}" if file_id else None
