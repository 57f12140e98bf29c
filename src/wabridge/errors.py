"""Bridge exception hierarchy."""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for all bridge errors."""


class ConfigError(BridgeError):
    """A required startup setting is missing or invalid."""


class SessionNotReadyError(BridgeError):
    """The source session cannot send because it is not in the ready state."""

    def __init__(self, state: str) -> None:
        super().__init__(f"WhatsApp not ready (state: {state})")
        self.state = state


class QueueClosedError(BridgeError):
    """The delivery queue no longer accepts items."""


class TelegramApiError(BridgeError):
    """The Telegram Bot API rejected a request."""

    def __init__(self, method: str, status_code: int, description: str = "") -> None:
        super().__init__(f"Telegram {method} failed ({status_code}): {description}")
        self.method = method
        self.status_code = status_code
        self.description = description

    @property
    def is_conflict(self) -> bool:
        """Another poller is consuming updates for the same bot token."""
        return self.status_code == 409
