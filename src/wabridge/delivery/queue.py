"""Single-flight, rate-limited delivery queue with bounded retry."""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import structlog

from wabridge.backoff import retry_delay
from wabridge.config import DeliveryConfig
from wabridge.errors import QueueClosedError

logger = structlog.get_logger()

Action = Callable[[], Awaitable[Any]]
Sleep = Callable[[float], Awaitable[None]]


@dataclass
class DeliveryResult:
    """Outcome of one queued item. Failures are reported here, never raised."""

    delivered: bool
    value: Any = None
    attempts: int = 0
    error: str | None = None


@dataclass
class RelayItem:
    """One unit of outbound work owned by the queue until it resolves."""

    action: Action
    label: str
    future: asyncio.Future[DeliveryResult]


class DeliveryQueue:
    """Executes actions one at a time, in submission order.

    A new item starts no sooner than ``interval_s`` after the previous one
    finished, measured on ``clock``; after an idle period the next item starts
    immediately. Each item is attempted up to ``max_retries`` times with a
    linear backoff between attempts. An item that exhausts its attempts is
    logged and resolved as undelivered, and the queue moves on.
    """

    def __init__(
        self,
        name: str,
        *,
        interval_s: float = 1.0,
        max_retries: int = 3,
        retry_base_s: float = 1.0,
        timeout_s: float | None = 30.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.name = name
        self.interval_s = interval_s
        self.max_retries = max(1, max_retries)
        self.retry_base_s = retry_base_s
        self.timeout_s = timeout_s
        self._clock = clock
        self._sleep = sleep

        self._items: deque[RelayItem] = deque()
        self._in_flight: RelayItem | None = None
        self._processing = False
        self._closed = False
        self._task: asyncio.Task[None] | None = None
        self._idle = asyncio.Event()
        self._idle.set()
        self._last_finished_at: float | None = None

        self.stats: dict[str, int] = {"enqueued": 0, "delivered": 0, "abandoned": 0}

    @classmethod
    def from_config(
        cls,
        name: str,
        config: DeliveryConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> DeliveryQueue:
        return cls(
            name,
            interval_s=config.rate_limit_delay_s,
            max_retries=config.max_retries,
            retry_base_s=config.retry_base_s,
            timeout_s=config.message_timeout_s,
            clock=clock,
            sleep=sleep,
        )

    @property
    def pending(self) -> int:
        """Queued items plus the one currently executing."""
        return len(self._items) + (1 if self._in_flight is not None else 0)

    @property
    def closed(self) -> bool:
        return self._closed

    def enqueue(self, action: Action, *, label: str = "") -> asyncio.Future[DeliveryResult]:
        """Submit ``action``; the returned future resolves with its DeliveryResult."""
        if self._closed:
            raise QueueClosedError(f"delivery queue '{self.name}' is closed")

        loop = asyncio.get_running_loop()
        item = RelayItem(action=action, label=label, future=loop.create_future())
        self._items.append(item)
        self.stats["enqueued"] += 1

        if not self._processing:
            self._processing = True
            self._idle.clear()
            self._task = asyncio.create_task(self._drain(), name=f"delivery-{self.name}")
        return item.future

    def close(self) -> None:
        """Stop accepting new items. Already queued items still run."""
        self._closed = True

    async def drain(self) -> None:
        """Wait until every accepted item has resolved."""
        await self._idle.wait()

    async def abort(self) -> None:
        """Cancel processing and resolve everything still queued as undelivered."""
        self._closed = True
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def _drain(self) -> None:
        try:
            while self._items:
                item = self._items.popleft()
                self._in_flight = item
                await self._wait_for_slot()
                result = await self._execute(item)
                self._last_finished_at = self._clock()
                self._in_flight = None
                if not item.future.done():
                    item.future.set_result(result)
        finally:
            leftovers = list(self._items)
            if self._in_flight is not None:
                leftovers.insert(0, self._in_flight)
            self._items.clear()
            self._in_flight = None
            for item in leftovers:
                if not item.future.done():
                    item.future.set_result(DeliveryResult(delivered=False, error="queue aborted"))
            self._processing = False
            self._idle.set()

    async def _wait_for_slot(self) -> None:
        if self._last_finished_at is None:
            return
        remaining = self.interval_s - (self._clock() - self._last_finished_at)
        if remaining > 0:
            await self._sleep(remaining)

    async def _execute(self, item: RelayItem) -> DeliveryResult:
        error = ""
        for attempt in range(1, self.max_retries + 1):
            try:
                if self.timeout_s is None:
                    value = await item.action()
                else:
                    value = await asyncio.wait_for(item.action(), timeout=self.timeout_s)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                error = str(exc) or type(exc).__name__
                logger.warning(
                    "delivery.attempt_failed",
                    queue=self.name,
                    label=item.label,
                    attempt=attempt,
                    max_retries=self.max_retries,
                    error=error,
                )
                if attempt < self.max_retries:
                    await self._sleep(retry_delay(attempt, self.retry_base_s))
                continue

            self.stats["delivered"] += 1
            return DeliveryResult(delivered=True, value=value, attempts=attempt)

        self.stats["abandoned"] += 1
        logger.error(
            "delivery.abandoned",
            queue=self.name,
            label=item.label,
            attempts=self.max_retries,
            error=error,
        )
        return DeliveryResult(delivered=False, attempts=self.max_retries, error=error)
