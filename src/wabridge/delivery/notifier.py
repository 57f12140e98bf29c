"""Telegram-facing notifier: every outbound call goes through the delivery queue."""

from __future__ import annotations

import asyncio
from functools import partial

import structlog

from wabridge.config import DeliveryConfig, TelegramConfig
from wabridge.delivery.queue import DeliveryQueue, DeliveryResult
from wabridge.errors import QueueClosedError
from wabridge.formatting import truncate_text
from wabridge.telegram.client import TelegramClient

logger = structlog.get_logger()

# Bot API limit for photo/document captions
MAX_CAPTION_LENGTH = 1024

MEDIA_SEND_FAILED = "[Media attachment failed to send]"


def _resolved(result: DeliveryResult) -> asyncio.Future[DeliveryResult]:
    future: asyncio.Future[DeliveryResult] = asyncio.get_running_loop().create_future()
    future.set_result(result)
    return future


class TelegramNotifier:
    """Relays text and media to the configured chat with length and size checks.

    Methods return the queue future instead of awaiting it, so event handlers
    never block on delivery. Media that fails after all retries falls back to
    a text message carrying the caption.
    """

    def __init__(
        self,
        *,
        client: TelegramClient,
        queue: DeliveryQueue,
        telegram: TelegramConfig,
        delivery: DeliveryConfig,
    ) -> None:
        self.client = client
        self.queue = queue
        self.chat_id = telegram.chat_id
        self.max_message_length = delivery.max_message_length
        self.max_media_bytes = delivery.max_media_bytes
        self.direct_timeout_s = delivery.message_timeout_s

    def notify(self, text: str, *, label: str = "text") -> asyncio.Future[DeliveryResult]:
        truncated = truncate_text(text, self.max_message_length)
        return self._enqueue(
            partial(self.client.send_message, self.chat_id, truncated),
            label=label,
        )

    def send_photo(self, photo: bytes, *, caption: str = "") -> asyncio.Future[DeliveryResult]:
        if len(photo) > self.max_media_bytes:
            return self.notify(self._oversize_notice(caption, len(photo)), label="photo-oversize")
        future = self._enqueue(
            partial(
                self.client.send_photo,
                self.chat_id,
                photo,
                caption=truncate_text(caption, MAX_CAPTION_LENGTH) or None,
            ),
            label="photo",
        )
        future.add_done_callback(partial(self._fallback_to_text, caption))
        return future

    def send_document(
        self,
        document: bytes,
        *,
        filename: str = "media",
        mimetype: str | None = None,
        caption: str = "",
    ) -> asyncio.Future[DeliveryResult]:
        if len(document) > self.max_media_bytes:
            return self.notify(
                self._oversize_notice(caption, len(document)),
                label="document-oversize",
            )
        future = self._enqueue(
            partial(
                self.client.send_document,
                self.chat_id,
                document,
                filename=filename,
                mimetype=mimetype,
                caption=truncate_text(caption, MAX_CAPTION_LENGTH) or None,
            ),
            label="document",
        )
        future.add_done_callback(partial(self._fallback_to_text, caption))
        return future

    async def notify_direct(self, text: str) -> bool:
        """Send without the queue. For process-boundary handlers only; never raises."""
        try:
            await asyncio.wait_for(
                self.client.send_message(self.chat_id, truncate_text(text, self.max_message_length)),
                timeout=self.direct_timeout_s,
            )
            return True
        except Exception as exc:
            logger.error("notifier.direct_send_failed", error=str(exc))
            return False

    def _enqueue(self, action, *, label: str) -> asyncio.Future[DeliveryResult]:
        try:
            return self.queue.enqueue(action, label=label)
        except QueueClosedError:
            logger.warning("notifier.dropped", label=label, reason="queue_closed")
            return _resolved(DeliveryResult(delivered=False, error="queue closed"))

    def _fallback_to_text(self, caption: str, future: asyncio.Future[DeliveryResult]) -> None:
        if future.cancelled() or future.result().delivered:
            return
        logger.warning("notifier.media_fallback", error=future.result().error)
        text = f"{caption}\n\n{MEDIA_SEND_FAILED}" if caption else MEDIA_SEND_FAILED
        self.notify(text, label="media-fallback")

    def _oversize_notice(self, caption: str, size: int) -> str:
        size_mb = size / (1024 * 1024)
        limit_mb = self.max_media_bytes / (1024 * 1024)
        notice = f"⚠️ [Media too large to forward: {size_mb:.1f} MB, limit {limit_mb:.0f} MB]"
        logger.info("notifier.media_oversize", size=size, limit=self.max_media_bytes)
        return f"{caption}\n\n{notice}" if caption else notice
