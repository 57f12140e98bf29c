"""Bridge controller: wires the source session to the Telegram chat and back."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from datetime import datetime
from functools import partial
from typing import Any

import structlog

from wabridge.config import BridgeConfig
from wabridge.dedup import Deduplicator, dedup_key
from wabridge.delivery.notifier import TelegramNotifier
from wabridge.delivery.queue import DeliveryQueue, DeliveryResult
from wabridge.errors import SessionNotReadyError
from wabridge.formatting import (
    ADDRESS_MARKER,
    escape_html,
    format_header,
    number_from_address,
    parse_reply_address,
    preview,
    to_chat_address,
)
from wabridge.health import ActivityClock, HealthMonitor
from wabridge.qr import QR_CAPTION, QrRenderer
from wabridge.session.base import Contact, SessionEvent, SessionFactory, SourceMessage
from wabridge.session.reconnector import SessionReconnector
from wabridge.telegram.poller import OperatorMessage

logger = structlog.get_logger()


class BridgeController:
    """Owns dedup, the source-side queue, the reconnector and the health monitor.

    Source messages flow through the deduplicator into the notifier's queue.
    Operator replies flow through the source queue into the reconnector, which
    is the only holder of the session handle.
    """

    def __init__(
        self,
        config: BridgeConfig,
        *,
        notifier: TelegramNotifier,
        session_factory: SessionFactory,
        qr_renderer: QrRenderer | None = None,
        on_fatal: Callable[[], Awaitable[None]] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.notifier = notifier
        self.qr_renderer = qr_renderer or QrRenderer()
        self._on_fatal = on_fatal

        self.activity = ActivityClock(clock)
        self.dedup = Deduplicator(config.session.dedup_ttl_s, clock=clock)
        self.source_queue = DeliveryQueue.from_config(
            "whatsapp",
            config.delivery,
            clock=clock,
            sleep=sleep,
        )
        self.reconnector = SessionReconnector(
            session_factory,
            notify=notifier.notify,
            on_qr=self.handle_qr,
            on_message=self.handle_session_message,
            on_ready=self.activity.touch,
            on_fatal=self.handle_reconnect_exhausted,
            base_delay_s=config.session.reconnect_delay_s,
            max_delay_s=config.session.max_reconnect_delay_s,
            max_attempts=config.session.max_reconnect_attempts,
            sleep=sleep,
        )
        self.monitor = HealthMonitor(
            activity=self.activity,
            state=lambda: self.reconnector.state,
            notify=notifier.notify,
            interval_s=config.health_check_interval_s,
            clock=clock,
        )
        self._init_task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        # initialize() may wait on a QR scan, so it must not hold up startup
        self._init_task = asyncio.create_task(self.reconnector.initialize(), name="session-init")
        await self.monitor.start()
        logger.info("bridge.started")

    async def stop(self) -> None:
        await self.monitor.stop()
        if self._init_task and not self._init_task.done():
            self._init_task.cancel()
            try:
                await self._init_task
            except asyncio.CancelledError:
                pass
        await self.reconnector.stop()
        self.source_queue.close()
        await self.source_queue.drain()
        logger.info("bridge.stopped")

    async def handle_reconnect_exhausted(self) -> None:
        await self.monitor.stop()
        logger.critical("bridge.session_lost", attempts=self.reconnector.attempts)
        if self._on_fatal is not None:
            await self._on_fatal()

    def status(self) -> dict[str, Any]:
        return {
            "whatsapp_state": self.reconnector.state.value,
            "whatsapp_connected": self.reconnector.ready,
            "reconnect_attempts": self.reconnector.attempts,
            "max_reconnect_attempts": self.reconnector.max_attempts,
            "last_activity": self.activity.last_at.isoformat(),
            "health_warnings": self.monitor.warnings,
            "telegram_queue": {"pending": self.notifier.queue.pending, **self.notifier.queue.stats},
            "whatsapp_queue": {"pending": self.source_queue.pending, **self.source_queue.stats},
        }

    # -- source → destination ------------------------------------------------

    async def handle_session_message(self, event: SessionEvent) -> None:
        if event.message is None:
            return
        if event.kind == "message":
            await self.handle_inbound(event.message)
        else:
            await self.handle_outbound_echo(event.message)

    async def handle_inbound(self, message: SourceMessage) -> None:
        self.activity.touch()
        if self.dedup.should_suppress(dedup_key("in", message.id)):
            return

        try:
            contact = await self._lookup_contact(message)
            name = escape_html(contact.name or "Unknown")
            number = contact.number or number_from_address(message.sender)
            header = format_header(name, number, message.timestamp or datetime.now())
            body = escape_html(message.body or "[No text]")

            if message.has_media:
                await self._relay_media(message, header, body)
            else:
                self.notifier.notify(f"{header}💬 {body}", label="inbound")
                logger.info("bridge.message_relayed", message_id=message.id)
        except Exception as exc:
            logger.exception("bridge.message_error", message_id=message.id)
            self.notifier.notify(
                "⚠️ <b>Message Error</b>\n\n" + escape_html(str(exc) or type(exc).__name__)
            )

    async def handle_outbound_echo(self, message: SourceMessage) -> None:
        self.activity.touch()
        if self.dedup.should_suppress(dedup_key("out", message.id)):
            return
        if not self.config.session.relay_outgoing:
            return
        number = number_from_address(message.recipient or message.sender)
        body = escape_html(message.body or "[No text]")
        self.notifier.notify(
            f"<b>📤 WhatsApp Message Sent</b>\n{ADDRESS_MARKER} {number}\n💬 {body}",
            label="outbound-echo",
        )

    async def handle_qr(self, payload: str) -> None:
        try:
            png = await asyncio.to_thread(self.qr_renderer.render, payload)
        except Exception as exc:
            logger.error("bridge.qr_render_failed", error=str(exc))
            self.notifier.notify("❌ QR generation failed: " + escape_html(str(exc)))
            return
        self.notifier.send_photo(png, caption=QR_CAPTION)

    async def _lookup_contact(self, message: SourceMessage) -> Contact:
        try:
            return await asyncio.wait_for(
                self.reconnector.get_contact(message),
                timeout=self.config.session.contact_timeout_s,
            )
        except Exception as exc:
            logger.warning("bridge.contact_lookup_failed", error=str(exc) or type(exc).__name__)
            return Contact(name="Unknown", number=number_from_address(message.sender))

    async def _relay_media(self, message: SourceMessage, header: str, body: str) -> None:
        try:
            media = await asyncio.wait_for(
                self.reconnector.download_media(message),
                timeout=self.config.session.media_timeout_s,
            )
            if media is None or not media.data:
                raise ValueError("Media data empty")
        except Exception as exc:
            logger.warning(
                "bridge.media_download_failed",
                message_id=message.id,
                error=str(exc) or type(exc).__name__,
            )
            self.notifier.notify(
                f"{header}💬 {body}\n\n⚠️ [Media failed to download]",
                label="inbound-media-failed",
            )
            return

        caption = f"{header}💬 {body}\n📎 Media type: {media.mimetype or 'unknown'}"
        if media.mimetype and media.mimetype.startswith("image/"):
            self.notifier.send_photo(media.data, caption=caption)
        else:
            self.notifier.send_document(
                media.data,
                filename=media.filename or "media",
                mimetype=media.mimetype,
                caption=caption,
            )
        logger.info("bridge.media_relayed", message_id=message.id, mimetype=media.mimetype)

    # -- destination → source ------------------------------------------------

    async def handle_operator_message(
        self, message: OperatorMessage
    ) -> asyncio.Future[DeliveryResult] | None:
        """Route an operator reply back to the source session.

        Returns the delivery future when a send was queued, otherwise None.
        """
        if message.chat_id != self.config.telegram.chat_id:
            return None
        if message.reply_to_text is None:
            return None

        number = parse_reply_address(message.reply_to_text)
        if number is None:
            logger.info("bridge.reply_without_address", message_id=message.message_id)
            return None

        reply_text = message.text or "[No text]"
        if not self.reconnector.ready:
            error = SessionNotReadyError(self.reconnector.state.value)
            logger.warning("bridge.reply_rejected", reason=str(error))
            self.notifier.notify("❌ <b>Reply Failed</b>\n\n" + escape_html(str(error)))
            return None

        logger.info("bridge.reply_sending", number=number)
        self.notifier.notify("⏳ Sending reply...", label="reply-pending")
        future = self.source_queue.enqueue(
            partial(self.reconnector.send, to_chat_address(number), reply_text),
            label=f"reply:{number}",
        )
        future.add_done_callback(partial(self._on_reply_done, number, reply_text))
        return future

    def _on_reply_done(
        self, number: str, reply_text: str, future: asyncio.Future[DeliveryResult]
    ) -> None:
        if future.cancelled():
            return
        result = future.result()
        if result.delivered:
            self.activity.touch()
            logger.info("bridge.reply_sent", number=number, attempts=result.attempts)
            self.notifier.notify(
                "✅ <b>Reply Sent</b>\n\n"
                f"To: {number}\n"
                f"Message: {escape_html(preview(reply_text))}"
            )
        else:
            logger.error("bridge.reply_failed", number=number, error=result.error)
            self.notifier.notify(
                "❌ <b>Reply Failed</b>\n\n" + escape_html(result.error or "unknown error")
            )
