"""Text helpers for relayed messages."""

from __future__ import annotations

import html
import re
from datetime import datetime

# Marker the relay header puts in front of the sender's number; replies are
# routed back by finding it in the replied-to message.
ADDRESS_MARKER = "📱"
_ADDRESS_RE = re.compile(rf"{ADDRESS_MARKER}\s*(\+?\d+)")

DEFAULT_CHAT_SUFFIX = "@c.us"


def escape_html(text: object = "") -> str:
    return html.escape(str(text), quote=True)


def truncate_text(text: str, max_length: int = 4096) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def preview(text: str, limit: int = 100) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


def format_header(name: str, number: str, received_at: datetime) -> str:
    """Header of a relayed inbound message. ``name`` must already be escaped."""
    return (
        "<b>📩 WhatsApp Message</b>\n"
        f"👤 {name}\n"
        f"{ADDRESS_MARKER} {number}\n"
        f"🕐 {received_at.strftime('%Y-%m-%d %H:%M:%S')}\n"
    )


def parse_reply_address(text: str | None) -> str | None:
    """Extract the numeric address from a relayed message, digits only."""
    if not text:
        return None
    match = _ADDRESS_RE.search(text)
    if not match:
        return None
    digits = re.sub(r"\D", "", match.group(1))
    return digits or None


def to_chat_address(number: str) -> str:
    return number if "@" in number else f"{number}{DEFAULT_CHAT_SUFFIX}"


def number_from_address(address: str) -> str:
    return address.split("@", 1)[0]
