"""Content fingerprints for edit detection and conflict checks."""

from __future__ import annotations

import hashlib
import re
import unicodedata


def _normalize_text(text: str) -> str:
    """Normalize text for stable hashing.

    - Unicode NFC normalization
    - Unify line endings to ``\\n``
    - Strip trailing whitespace on every line and at both ends

    Case and inner whitespace are preserved: changing them is a real edit.
    """
    text = unicodedata.normalize("NFC", text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"[ \t]+\n", "\n", text)
    return text.strip()


def compute_content_hash(*parts: str | None) -> str:
    """Compute a SHA-256 hex digest over the normalized parts.

    Parts are joined with a null byte separator to avoid ambiguous
    concatenations; ``None`` hashes the same as an empty string.
    """
    combined = "\0".join(_normalize_text(p or "") for p in parts)
    return hashlib.sha256(combined.encode("utf-8")).hexdigest()
