"""Telegram long polling for operator replies."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import structlog

from wabridge.config import TelegramConfig
from wabridge.errors import TelegramApiError
from wabridge.telegram.client import TelegramClient

logger = structlog.get_logger()


@dataclass
class OperatorMessage:
    """A message typed by the operator in the destination chat."""

    chat_id: str
    message_id: int | None
    text: str
    reply_to_text: str | None = None
    sender_id: str | None = None


@dataclass
class PollerStatus:
    running: bool = False
    last_error: str | None = None
    last_inbound_at: str | None = None


OperatorHandler = Callable[[OperatorMessage], Awaitable[Any]]


def parse_operator_message(update: dict[str, Any]) -> OperatorMessage | None:
    """Normalize a getUpdates entry; returns None for anything but a chat message."""
    message = update.get("message")
    if not isinstance(message, dict):
        return None
    chat = message.get("chat") or {}
    chat_id = chat.get("id")
    if chat_id is None:
        return None

    reply_to_text: str | None = None
    replied = message.get("reply_to_message")
    if isinstance(replied, dict):
        reply_to_text = replied.get("text") or replied.get("caption") or ""

    sender = message.get("from") or {}
    return OperatorMessage(
        chat_id=str(chat_id),
        message_id=message.get("message_id"),
        text=message.get("text") or "",
        reply_to_text=reply_to_text,
        sender_id=str(sender["id"]) if sender.get("id") is not None else None,
    )


class TelegramPoller:
    """Runs getUpdates in a background task and hands messages to ``handler``."""

    def __init__(
        self,
        *,
        config: TelegramConfig,
        client: TelegramClient,
        handler: OperatorHandler,
    ) -> None:
        self.config = config
        self.client = client
        self.handler = handler

        self._offset = 0
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()
        self._status = PollerStatus()

    def status(self) -> PollerStatus:
        return self._status

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._status.running = True
        self._task = asyncio.create_task(self._poll_loop(), name="telegram-poll")

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._status.running = False

    async def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                updates = await self.client.get_updates(self._offset, self.config.poll_timeout_s)
                for update in updates:
                    await self.process_update(update)
            except asyncio.CancelledError:
                raise
            except TelegramApiError as e:
                self._status.last_error = str(e)
                if e.is_conflict:
                    logger.warning("telegram.poll_conflict", error=str(e))
                    await asyncio.sleep(self.config.conflict_backoff_s)
                else:
                    logger.warning("telegram.poll_error", error=str(e))
                    await asyncio.sleep(self.config.retry_delay_s)
            except Exception as e:
                logger.warning("telegram.poll_error", error=str(e))
                self._status.last_error = str(e)
                await asyncio.sleep(self.config.retry_delay_s)

    async def process_update(self, update: dict[str, Any]) -> None:
        update_id = update.get("update_id")
        if isinstance(update_id, int):
            self._offset = max(self._offset, update_id + 1)

        message = parse_operator_message(update)
        if message is None:
            return

        self._status.last_inbound_at = datetime.now(UTC).isoformat()
        try:
            await self.handler(message)
        except Exception as e:
            logger.error("telegram.handler_failed", update_id=update_id, error=str(e))
