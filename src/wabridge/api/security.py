"""Optional shared-key guard for the status endpoint."""

from __future__ import annotations

import secrets

import structlog
from fastapi import HTTPException, Request, Security, status
from fastapi.security import APIKeyHeader

logger = structlog.get_logger()

STATUS_KEY_HEADER = "X-API-Key"

_status_key = APIKeyHeader(
    name=STATUS_KEY_HEADER,
    auto_error=False,
    description="Required on /status when BRIDGE_API_KEY is set",
)


def _rejection(request: Request, status_code: int, reason: str, detail: str) -> HTTPException:
    logger.warning("status.auth_rejected", path=request.url.path, reason=reason)
    return HTTPException(status_code=status_code, detail=detail)


async def require_status_key(
    request: Request,
    presented: str | None = Security(_status_key),
) -> None:
    """Guard ``/status`` with BRIDGE_API_KEY. An empty key leaves it open."""
    expected: str = request.app.state.config.api_key
    if not expected:
        return

    if not presented:
        raise _rejection(
            request,
            status.HTTP_401_UNAUTHORIZED,
            "missing",
            f"Missing {STATUS_KEY_HEADER} header.",
        )
    if not secrets.compare_digest(presented.encode(), expected.encode()):
        raise _rejection(request, status.HTTP_403_FORBIDDEN, "mismatch", "Invalid API key.")
