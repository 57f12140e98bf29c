"""Source (WhatsApp) session abstractions."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Literal

import structlog

logger = structlog.get_logger()

SessionEventKind = Literal[
    "qr",
    "authenticated",
    "ready",
    "auth_failure",
    "disconnected",
    "message",
    "message_echo",
]


@dataclass
class SourceMessage:
    """A message observed on the source session.

    ``sender`` is the chat address the message came from; for messages sent
    from the linked phone (``from_me``) ``recipient`` is the address it went to.
    """

    id: str
    sender: str
    body: str = ""
    recipient: str = ""
    from_me: bool = False
    has_media: bool = False
    timestamp: datetime | None = None


@dataclass
class Contact:
    name: str | None = None
    number: str | None = None


@dataclass
class MediaPayload:
    data: bytes
    mimetype: str | None = None
    filename: str | None = None


@dataclass
class SessionEvent:
    """Lifecycle or message event emitted by a source session.

    ``payload`` carries the QR string for ``qr`` and the reason for
    ``auth_failure`` / ``disconnected``.
    """

    kind: SessionEventKind
    payload: str | None = None
    message: SourceMessage | None = None


SessionEventHandler = Callable[[SessionEvent], Awaitable[None]]


class SourceSession(ABC):
    """Interface implemented by source platform sessions.

    Implementations call :meth:`emit` for every lifecycle and message event.
    """

    def __init__(self) -> None:
        self._handlers: list[SessionEventHandler] = []

    def subscribe(self, handler: SessionEventHandler) -> None:
        self._handlers.append(handler)

    async def emit(self, event: SessionEvent) -> None:
        for handler in list(self._handlers):
            try:
                await handler(event)
            except Exception as e:
                logger.error("session.handler_failed", kind=event.kind, error=str(e))

    @abstractmethod
    async def initialize(self) -> None:
        ...

    @abstractmethod
    async def destroy(self) -> None:
        """Release the session: browser, sockets, listeners."""
        ...

    @abstractmethod
    async def send(self, address: str, text: str) -> None:
        ...

    @abstractmethod
    async def download_media(self, message: SourceMessage) -> MediaPayload | None:
        ...

    @abstractmethod
    async def get_contact(self, message: SourceMessage) -> Contact:
        ...


SessionFactory = Callable[[], SourceSession]
