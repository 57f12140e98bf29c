"""Bridge — FastAPI application entrypoint."""

from __future__ import annotations

import asyncio
import os
import signal
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from functools import partial
from typing import Any

import structlog
import uvicorn
from fastapi import FastAPI
from pydantic import ValidationError

from wabridge import __version__
from wabridge.bridge import BridgeController
from wabridge.config import get_config
from wabridge.delivery.notifier import TelegramNotifier
from wabridge.delivery.queue import DeliveryQueue
from wabridge.errors import ConfigError
from wabridge.formatting import escape_html
from wabridge.logging import setup_logging
from wabridge.session.loader import load_session_factory
from wabridge.telegram.client import TelegramClient, send_message_sync
from wabridge.telegram.poller import TelegramPoller

logger = structlog.get_logger()


def _request_server_exit(app: FastAPI) -> None:
    """Ask uvicorn to run its normal shutdown, which drives the lifespan exit."""
    server = getattr(app.state, "server", None)
    if server is not None:
        server.should_exit = True
        return
    # served by an external uvicorn process
    os.kill(os.getpid(), signal.SIGTERM)


async def _exit_with_failure(app: FastAPI, reason: str) -> None:
    if app.state.exit_code:
        return
    app.state.exit_code = 1
    logger.critical("bridge.exit_requested", reason=reason)
    _request_server_exit(app)


async def _notify_and_exit(app: FastAPI, notifier: TelegramNotifier, message: str) -> None:
    # direct send: the queue may be the thing that broke
    await notifier.notify_direct("⚠️ <b>Unhandled Exception</b>\n\n" + escape_html(message))
    await _exit_with_failure(app, "unhandled_exception")


def _handle_loop_exception(
    app: FastAPI,
    notifier: TelegramNotifier,
    loop: asyncio.AbstractEventLoop,
    context: dict[str, Any],
) -> None:
    """Last-resort handler for exceptions nobody awaited.

    Sends one direct notice, then shuts the server down with exit code 1.
    Later exceptions are only logged.
    """
    exc = context.get("exception")
    message = str(exc) if exc else context.get("message", "unknown error")
    logger.error("bridge.unhandled_exception", error=message, exc_info=exc)
    if loop.is_closed() or app.state.fatal_task is not None:
        return
    app.state.fatal_task = loop.create_task(
        _notify_and_exit(app, notifier, message),
        name="unhandled-exception-exit",
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application startup/shutdown lifecycle."""
    config = get_config()
    setup_logging(level=config.log_level, fmt=config.log_format)

    logger.info(
        "bridge.starting",
        version=__version__,
        port=config.port,
        max_retries=config.delivery.max_retries,
        reconnect_delay_s=config.session.reconnect_delay_s,
    )

    session_factory = load_session_factory(config.session.factory)

    client = TelegramClient(config.telegram)
    await client.start()
    queue = DeliveryQueue.from_config("telegram", config.delivery)
    notifier = TelegramNotifier(
        client=client,
        queue=queue,
        telegram=config.telegram,
        delivery=config.delivery,
    )
    bridge = BridgeController(
        config,
        notifier=notifier,
        session_factory=session_factory,
        on_fatal=partial(_exit_with_failure, app, "reconnect_exhausted"),
    )
    poller = TelegramPoller(
        config=config.telegram,
        client=client,
        handler=bridge.handle_operator_message,
    )

    app.state.exit_code = 0
    app.state.fatal_task = None

    loop = asyncio.get_running_loop()
    loop.set_exception_handler(partial(_handle_loop_exception, app, notifier))

    notifier.notify("🚀 Bridge started successfully")
    await bridge.start()
    await poller.start()

    app.state.config = config
    app.state.bridge = bridge
    app.state.poller = poller
    app.state.notifier = notifier
    app.state.started_at = time.monotonic()

    logger.info("bridge.ready")

    yield

    # Shutdown
    logger.info("bridge.shutting_down")

    async def _shutdown() -> None:
        notifier.notify("⚠️ Bridge shutting down")
        await poller.stop()
        await bridge.stop()
        queue.close()
        await queue.drain()

    try:
        await asyncio.wait_for(_shutdown(), timeout=config.shutdown_timeout_s)
        logger.info("bridge.stopped")
    except TimeoutError:
        logger.error("bridge.forced_shutdown", timeout_s=config.shutdown_timeout_s)
        await queue.abort()
        await bridge.source_queue.abort()
        app.state.exit_code = 1
    finally:
        await client.close()
        loop.set_exception_handler(None)


def create_app() -> FastAPI:
    """Create the FastAPI application."""
    app = FastAPI(
        title="WhatsApp-Telegram Bridge",
        version=__version__,
        lifespan=lifespan,
    )

    from wabridge.api.routes.health import router as health_router

    app.include_router(health_router, tags=["health"])

    return app


app = create_app()


def main() -> None:
    """Run the server directly."""
    try:
        config = get_config()
        load_session_factory(config.session.factory)
    except (ConfigError, ValidationError) as e:
        setup_logging()
        logger.error("bridge.config_invalid", error=str(e))
        raise SystemExit(1) from e

    setup_logging(level=config.log_level, fmt=config.log_format)
    try:
        server = uvicorn.Server(
            uvicorn.Config(app, host=config.host, port=config.port, log_level="warning")
        )
        app.state.server = server
        server.run()
    except Exception as exc:
        logger.exception("bridge.fatal_error")
        send_message_sync(
            config.telegram,
            "❌ <b>Fatal Error</b>\n\n" + escape_html(str(exc) or type(exc).__name__),
        )
        raise SystemExit(1) from exc

    raise SystemExit(getattr(app.state, "exit_code", 0))


if __name__ == "__main__":
    main()
