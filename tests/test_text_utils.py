"""Tests for text processing utilities."""

import pytest

from mailrules.utils.text import (
    collapse_whitespace,
    extract_domain,
    extract_email_address,
    normalize_sender,
    normalize_subject,
    prepare_body,
    smart_truncate,
    strip_quoted_replies,
)


class TestAddresses:
    @pytest.mark.parametrize(
        "value, expected",
        [
            ('"Writer" <Writer@Substack.com>', "writer@substack.com"),
            ("plain@example.com", "plain@example.com"),
            ("<bare@example.com>", "bare@example.com"),
            ("", ""),
        ],
    )
    def test_extract_email_address(self, value, expected):
        assert extract_email_address(value) == expected

    def test_extract_domain(self):
        assert extract_domain("Ann <ann@Acme.io>") == "acme.io"
        assert extract_domain("no address here") is None

    def test_normalize_sender_company_domain(self):
        assert normalize_sender("Bob <bob@acme.io>") == "acme.io"

    def test_normalize_sender_public_domain(self):
        assert normalize_sender("Bob <Bob@Gmail.com>") == "bob@gmail.com"


class TestNormalizeSubject:
    def test_strips_numbers(self):
        assert normalize_subject("Invoice INV-2024-001 is ready") == "invoice is ready"

    def test_collapses_whitespace(self):
        assert normalize_subject("  Order   #42  shipped ") == "order shipped"

    def test_empty(self):
        assert normalize_subject("") == ""


class TestStripQuotedReplies:
    def test_strips_on_wrote(self):
        text = "My reply\n\nOn Mon, Jan 1, 2024, Person wrote:\n> Original message"
        result = strip_quoted_replies(text)
        assert result.strip() == "My reply"

    def test_strips_quoted_lines(self):
        text = "Line 1\n> quoted\nLine 2"
        assert strip_quoted_replies(text) == "Line 1\nLine 2"

    def test_strips_original_message_separator(self):
        text = "Reply\n----- Original Message -----\nOld text"
        assert strip_quoted_replies(text) == "Reply"


class TestSmartTruncate:
    def test_short_text_unchanged(self):
        assert smart_truncate("Short text.", 100) == "Short text."

    def test_truncates_at_sentence(self):
        text = "First sentence. Second sentence goes on"
        assert smart_truncate(text, 25) == "First sentence."

    def test_truncates_at_word(self):
        text = "one two three four five six seven"
        result = smart_truncate(text, 20)
        assert result.endswith("...")
        assert len(result) <= 23
        assert not result[:-3].endswith(" ")


class TestPrepareBody:
    def test_collapses_blank_lines(self):
        text = "Hello\n\n\n\n\nWorld"
        assert prepare_body(text) == "Hello\n\nWorld"

    def test_removes_quotes_and_truncates(self):
        text = "Fresh content here.\n> old quoted\n" + "word " * 500
        result = prepare_body(text, max_chars=100)
        assert "old quoted" not in result
        assert len(result) <= 103

    def test_none_safe(self):
        assert prepare_body("") == ""


class TestCollapseWhitespace:
    def test_collapse(self):
        assert collapse_whitespace("  a \n\t b  ") == "a b"
