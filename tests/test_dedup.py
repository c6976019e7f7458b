"""Tests for crossfeed.ingestion.dedup: content fingerprints."""

from __future__ import annotations

from crossfeed.ingestion.dedup import compute_content_hash, _normalize_text


class TestNormalizeText:
    def test_unicode_nfc_normalization(self):
        decomposed = "caf\u0065\u0301"  # e + combining acute
        precomposed = "caf\u00e9"
        assert _normalize_text(decomposed) == _normalize_text(precomposed)

    def test_unifies_line_endings(self):
        assert _normalize_text("a\r\nb\rc") == "a\nb\nc"

    def test_strips_trailing_whitespace_per_line(self):
        assert _normalize_text("a  \nb\t\n") == "a\nb"

    def test_preserves_case_and_inner_spaces(self):
        assert _normalize_text("Hello  World") == "Hello  World"


class TestComputeContentHash:
    def test_is_sha256_hex(self):
        digest = compute_content_hash("hello")
        assert len(digest) == 64
        int(digest, 16)

    def test_stable_across_whitespace_noise(self):
        assert compute_content_hash("hi \r\n") == compute_content_hash("hi")

    def test_case_change_is_an_edit(self):
        assert compute_content_hash("hello") != compute_content_hash("Hello")

    def test_parts_are_not_ambiguous(self):
        assert compute_content_hash("ab", "c") != compute_content_hash("a", "bc")

    def test_none_equals_empty(self):
        assert compute_content_hash(None, "x") == compute_content_hash("", "x")
