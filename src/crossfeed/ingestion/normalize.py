"""Normalization contract: validate backend fields and build Messages."""

from __future__ import annotations

import re
from datetime import datetime, timezone

from crossfeed.errors import MalformedRecord
from crossfeed.models import (
    Attachment,
    AttachmentKind,
    Author,
    Identity,
    Message,
    SourceKind,
)

_OFFSET_NO_COLON = re.compile(r"([+-]\d{2})(\d{2})$")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")

_EXTENSION_KINDS = {
    AttachmentKind.IMAGE: {"jpg", "jpeg", "png", "gif", "webp", "bmp", "svg"},
    AttachmentKind.VIDEO: {"mp4", "avi", "mov", "mkv", "webm"},
    AttachmentKind.AUDIO: {"mp3", "wav", "ogg", "oga", "flac", "m4a"},
    AttachmentKind.DOCUMENT: {"pdf", "doc", "docx", "txt", "md", "csv", "xls", "xlsx"},
}


def parse_timestamp(value: object) -> datetime:
    """Parse a backend timestamp into an aware UTC datetime.

    Accepts ISO 8601 strings (``Z`` suffix, ``+00:00`` or ``+0000`` offsets,
    naive values treated as UTC) and Unix epoch seconds. Raises
    MalformedRecord on anything else.
    """
    if isinstance(value, bool):
        raise MalformedRecord(f"Invalid timestamp {value!r}")
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            raise MalformedRecord(f"Invalid epoch timestamp {value!r}") from None
    if not isinstance(value, str) or not value.strip():
        raise MalformedRecord(f"Invalid timestamp {value!r}")

    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = _OFFSET_NO_COLON.sub(r"\1:\2", text)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise MalformedRecord(f"Timestamp '{value}' is not valid ISO 8601") from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def try_parse_timestamp(value: object) -> datetime | None:
    """Like parse_timestamp, but returns None for missing or bad values."""
    if value is None:
        return None
    try:
        return parse_timestamp(value)
    except MalformedRecord:
        return None


def flatten_text(text: str | None) -> str:
    """Reduce backend text to plain, printable text."""
    if not text:
        return ""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _CONTROL_CHARS.sub("", text)
    return text.strip()


def classify_attachment(filename: str, content_type: str | None = None) -> AttachmentKind:
    """Classify an attachment by MIME type, falling back to file extension."""
    if content_type:
        major = content_type.split("/", 1)[0].lower()
        if major == "image":
            return AttachmentKind.IMAGE
        if major == "video":
            return AttachmentKind.VIDEO
        if major == "audio":
            return AttachmentKind.AUDIO
        if major in ("text", "application"):
            return AttachmentKind.DOCUMENT
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    for kind, extensions in _EXTENSION_KINDS.items():
        if ext in extensions:
            return kind
    return AttachmentKind.OTHER


def make_attachment(
    filename: str | None,
    url: str | None,
    content_type: str | None = None,
    size: object = None,
) -> Attachment | None:
    """Build an Attachment, or None when the backend gave no usable URL."""
    if not url:
        return None
    name = filename or "attachment"
    return Attachment(
        filename=name,
        url=url,
        kind=classify_attachment(name, content_type),
        size=size if isinstance(size, int) and not isinstance(size, bool) else None,
    )


def _validate(native_id: object, channel: object, edit_version: object) -> list[str]:
    errors: list[str] = []
    if native_id is None or not str(native_id).strip():
        errors.append("native id is required and must be non-empty")
    if channel is None or not str(channel).strip():
        errors.append("channel is required and must be non-empty")
    if edit_version is None or not str(edit_version).strip():
        errors.append("edit_version is required and must be non-empty")
    return errors


def build_message(
    *,
    kind: SourceKind,
    native_id: object,
    channel: object,
    author_name: str | None,
    author_id: object = None,
    timestamp: object,
    content: str | None,
    edit_version: object,
    deleted: bool = False,
    thread_parent: Identity | None = None,
    title: str | None = None,
    url: str | None = None,
    edited_at: object = None,
    attachments: list[Attachment | None] | tuple = (),
) -> Message:
    """Validate normalized fields and produce a Message.

    Every adapter's ``normalize`` funnels through here so all backends obey
    the same contract. Raises MalformedRecord listing every problem found.
    """
    errors = _validate(native_id, channel, edit_version)
    if errors:
        raise MalformedRecord(f"Invalid {kind.value} record: {'; '.join(errors)}")

    message = Message(
        identity=Identity(kind, str(native_id)),
        channel=str(channel),
        author=Author(
            name=(author_name or "").strip() or "Unknown",
            native_id=str(author_id) if author_id is not None else None,
        ),
        timestamp=parse_timestamp(timestamp),
        content=flatten_text(content),
        edit_version=str(edit_version),
        thread_parent=thread_parent,
        title=flatten_text(title) or None,
        url=url or None,
        edited_at=parse_timestamp(edited_at) if edited_at is not None else None,
        attachments=tuple(a for a in attachments if a is not None),
    )
    return message.tombstoned() if deleted else message
