from __future__ import annotations

from datetime import datetime

from wabridge.formatting import (
    escape_html,
    format_header,
    number_from_address,
    parse_reply_address,
    preview,
    to_chat_address,
    truncate_text,
)


def test_escape_html_escapes_markup() -> None:
    assert escape_html('<a href="x">&</a>') == "&lt;a href=&quot;x&quot;&gt;&amp;&lt;/a&gt;"


def test_truncate_text_keeps_limit() -> None:
    text = "x" * 5000

    truncated = truncate_text(text, 4096)

    assert len(truncated) == 4096
    assert truncated.endswith("...")
    assert truncate_text("short", 4096) == "short"


def test_preview_marks_cut_text() -> None:
    assert preview("a" * 120) == "a" * 100 + "..."
    assert preview("hello") == "hello"


def test_header_carries_address_marker() -> None:
    header = format_header("Alice", "15551234567", datetime(2024, 3, 1, 9, 5, 7))

    assert header.startswith("<b>📩 WhatsApp Message</b>\n")
    assert "👤 Alice\n" in header
    assert "📱 15551234567\n" in header
    assert "🕐 2024-03-01 09:05:07\n" in header


def test_parse_reply_address_from_relayed_header() -> None:
    header = format_header("Alice", "15551234567", datetime(2024, 3, 1))

    assert parse_reply_address(header + "💬 hi") == "15551234567"


def test_parse_reply_address_strips_plus_sign() -> None:
    assert parse_reply_address("📱   +4915112345") == "4915112345"


def test_parse_reply_address_without_marker() -> None:
    assert parse_reply_address("no address here 15551234567") is None
    assert parse_reply_address("📱 not-a-number") is None
    assert parse_reply_address("") is None
    assert parse_reply_address(None) is None


def test_chat_address_helpers() -> None:
    assert to_chat_address("15551234567") == "15551234567@c.us"
    assert to_chat_address("123-456@g.us") == "123-456@g.us"
    assert number_from_address("15551234567@c.us") == "15551234567"
