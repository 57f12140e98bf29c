"""Source session lifecycle: connect, authenticate, reconnect with backoff."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from enum import Enum
from functools import partial
from typing import Any

import structlog

from wabridge.backoff import reconnect_delay
from wabridge.errors import SessionNotReadyError
from wabridge.formatting import escape_html
from wabridge.session.base import (
    Contact,
    MediaPayload,
    SessionEvent,
    SessionFactory,
    SourceMessage,
    SourceSession,
)

logger = structlog.get_logger()

Notify = Callable[[str], Any]
QrHandler = Callable[[str], Awaitable[None]]
MessageHandler = Callable[[SessionEvent], Awaitable[None]]
ReadyHook = Callable[[], None]
FatalHook = Callable[[], Awaitable[None]]
Sleep = Callable[[float], Awaitable[None]]


class ReconnectState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    READY = "ready"
    FATALLY_FAILED = "fatally_failed"


_PRE_READY = (ReconnectState.CONNECTING, ReconnectState.AUTHENTICATING)


class SessionReconnector:
    """Owns the source session handle and drives its state machine.

    State changes only happen here, in response to collaborator events or
    failures of ``initialize()``. ``READY`` requires ``authenticated`` followed
    by ``ready`` from the same session handle. Each disconnect counts one
    attempt; once ``max_attempts`` is reached the state becomes
    ``FATALLY_FAILED`` and nothing further is scheduled.

    ``on_ready`` runs on every transition into ``READY``; ``on_fatal`` runs once
    the session has been released after the attempts ran out.
    """

    def __init__(
        self,
        factory: SessionFactory,
        *,
        notify: Notify,
        on_qr: QrHandler | None = None,
        on_message: MessageHandler | None = None,
        on_ready: ReadyHook | None = None,
        on_fatal: FatalHook | None = None,
        base_delay_s: float = 5.0,
        max_delay_s: float = 300.0,
        max_attempts: int = 10,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._factory = factory
        self._notify = notify
        self._on_qr = on_qr
        self._on_message = on_message
        self._ready_hook = on_ready
        self._fatal_hook = on_fatal
        self.base_delay_s = base_delay_s
        self.max_delay_s = max_delay_s
        self.max_attempts = max_attempts
        self._sleep = sleep

        self.state = ReconnectState.DISCONNECTED
        self.attempts = 0
        self.last_transition_at: datetime | None = None

        self._session: SourceSession | None = None
        self._authenticated = False
        self._reconnect_task: asyncio.Task[None] | None = None
        self._stopped = False

    @property
    def ready(self) -> bool:
        return self.state is ReconnectState.READY

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    async def initialize(self) -> None:
        """Create a fresh session handle and start connecting."""
        if self._stopped or self.state is ReconnectState.FATALLY_FAILED:
            return

        await self._teardown()
        session = self._factory()
        session.subscribe(partial(self._on_event, session))
        self._session = session
        self._authenticated = False
        self._transition(ReconnectState.CONNECTING)
        self._notify("🔌 Connecting to WhatsApp...")

        try:
            await session.initialize()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("session.initialize_failed", error=str(e))
            if session is self._session:
                await self._handle_disconnect(f"initialize failed: {e}")

    async def stop(self) -> None:
        """Cancel pending reconnects and release the session. No notifications."""
        self._stopped = True
        if self.reconnect_pending and self._reconnect_task is not asyncio.current_task():
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
        await self._teardown()
        if self.state is not ReconnectState.FATALLY_FAILED:
            self._transition(ReconnectState.DISCONNECTED)

    async def send(self, address: str, text: str) -> None:
        session = self._require_ready()
        await session.send(address, text)

    async def download_media(self, message: SourceMessage) -> MediaPayload | None:
        if self._session is None:
            raise SessionNotReadyError(self.state.value)
        return await self._session.download_media(message)

    async def get_contact(self, message: SourceMessage) -> Contact:
        if self._session is None:
            raise SessionNotReadyError(self.state.value)
        return await self._session.get_contact(message)

    def _require_ready(self) -> SourceSession:
        if self.state is not ReconnectState.READY or self._session is None:
            raise SessionNotReadyError(self.state.value)
        return self._session

    async def _on_event(self, session: SourceSession, event: SessionEvent) -> None:
        if session is not self._session:
            logger.debug("session.stale_event", kind=event.kind)
            return

        kind = event.kind
        if kind == "qr":
            await self._on_qr_event(event.payload or "")
        elif kind == "authenticated":
            self._on_authenticated()
        elif kind == "ready":
            self._on_ready()
        elif kind == "auth_failure":
            reason = event.payload or "unknown"
            logger.error("session.auth_failure", reason=reason)
            self._notify("❌ <b>Authentication Failed</b>\n\nPlease scan QR code again")
            await self._handle_disconnect(reason)
        elif kind == "disconnected":
            reason = event.payload or "unknown"
            if self.state not in (ReconnectState.DISCONNECTED, ReconnectState.FATALLY_FAILED):
                self._notify(f"🔴 <b>WhatsApp Disconnected</b>\n\nReason: {escape_html(reason)}")
            await self._handle_disconnect(reason)
        elif kind in ("message", "message_echo"):
            if self._on_message is not None:
                await self._on_message(event)
        else:
            logger.warning("session.unknown_event", kind=kind)

    async def _on_qr_event(self, payload: str) -> None:
        if self.state not in _PRE_READY:
            logger.warning("session.qr_ignored", state=self.state.value)
            return
        # a new challenge means any earlier authentication no longer applies
        self._authenticated = False
        self._transition(ReconnectState.AUTHENTICATING)
        logger.info("session.qr_received")
        if self._on_qr is not None:
            await self._on_qr(payload)

    def _on_authenticated(self) -> None:
        if self.state not in _PRE_READY:
            logger.warning("session.authenticated_ignored", state=self.state.value)
            return
        self._authenticated = True
        self._transition(ReconnectState.AUTHENTICATING)
        self._notify("✅ <b>WhatsApp Authenticated</b>")

    def _on_ready(self) -> None:
        if not self._authenticated or self.state is not ReconnectState.AUTHENTICATING:
            logger.warning(
                "session.ready_ignored",
                state=self.state.value,
                authenticated=self._authenticated,
            )
            return
        self.attempts = 0
        self._transition(ReconnectState.READY)
        self._notify("🟢 <b>WhatsApp Connected & Ready</b>")
        if self._ready_hook is not None:
            self._ready_hook()

    async def _handle_disconnect(self, reason: str) -> None:
        if self.state in (ReconnectState.DISCONNECTED, ReconnectState.FATALLY_FAILED):
            logger.debug("session.disconnect_ignored", state=self.state.value, reason=reason)
            return

        self._authenticated = False
        self._transition(ReconnectState.DISCONNECTED, reason=reason)
        if self._stopped:
            return

        self.attempts += 1
        if self.attempts >= self.max_attempts:
            self._transition(ReconnectState.FATALLY_FAILED, reason=reason)
            logger.critical("session.reconnect_exhausted", attempts=self.attempts)
            self._notify(
                "❌ <b>Critical Error</b>\n\n"
                "Max reconnection attempts reached. Manual restart required."
            )
            await self._teardown()
            if self._fatal_hook is not None:
                await self._fatal_hook()
            return

        delay = reconnect_delay(self.attempts, self.base_delay_s, self.max_delay_s)
        logger.info(
            "session.reconnect_scheduled",
            delay_s=delay,
            attempt=self.attempts,
            max_attempts=self.max_attempts,
        )
        self._notify(
            f"🔄 Reconnecting in {round(delay)}s "
            f"(attempt {self.attempts}/{self.max_attempts})..."
        )
        self._schedule_reconnect(delay)

    def _schedule_reconnect(self, delay: float) -> None:
        current = asyncio.current_task()
        if self.reconnect_pending and self._reconnect_task is not current:
            self._reconnect_task.cancel()
        self._reconnect_task = asyncio.create_task(
            self._reconnect_after(delay),
            name="session-reconnect",
        )

    async def _reconnect_after(self, delay: float) -> None:
        await self._sleep(delay)
        await self.initialize()

    async def _teardown(self) -> None:
        session, self._session = self._session, None
        if session is None:
            return
        try:
            await session.destroy()
        except Exception as e:
            logger.warning("session.cleanup_error", error=str(e))

    def _transition(self, new_state: ReconnectState, *, reason: str | None = None) -> None:
        old_state = self.state
        self.state = new_state
        self.last_transition_at = datetime.now(UTC)
        if old_state is not new_state:
            logger.info(
                "session.state_changed",
                from_state=old_state.value,
                to_state=new_state.value,
                reason=reason,
            )
