"""Health and status endpoints."""

from __future__ import annotations

import time
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse

from wabridge import __version__
from wabridge.api.security import require_status_key

router = APIRouter()


def _uptime(request: Request) -> float:
    started = getattr(request.app.state, "started_at", None) or time.monotonic()
    return time.monotonic() - started


@router.get("/")
async def health(request: Request) -> dict:
    """Liveness. Always answers while the process is up."""
    bridge = getattr(request.app.state, "bridge", None)
    poller = getattr(request.app.state, "poller", None)
    return {
        "status": "running",
        "telegram": bool(poller and poller.status().running),
        "whatsapp": bool(bridge and bridge.reconnector.ready),
        "uptime": round(_uptime(request), 1),
        "timestamp": datetime.now(UTC).isoformat(),
    }


@router.get("/status")
async def status(
    request: Request,
    _auth: None = Depends(require_status_key),
) -> dict:
    """Reconnect state, attempt count, activity and queue depth."""
    bridge = request.app.state.bridge
    poller = request.app.state.poller
    poller_status = poller.status()
    return {
        "service": "WhatsApp-Telegram Bridge",
        "version": __version__,
        "uptime_seconds": int(_uptime(request)),
        "telegram_connected": poller_status.running,
        "telegram_last_error": poller_status.last_error,
        **bridge.status(),
    }


@router.get("/ping", response_class=PlainTextResponse)
async def ping() -> str:
    return "pong"
