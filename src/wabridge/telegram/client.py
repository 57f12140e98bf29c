"""Thin async client for the Telegram Bot API methods the bridge uses."""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from wabridge.config import TelegramConfig
from wabridge.errors import TelegramApiError

logger = structlog.get_logger()


def _timeout(config: TelegramConfig) -> httpx.Timeout:
    return httpx.Timeout(
        connect=10.0,
        read=config.poll_timeout_s + 10.0,
        write=30.0,
        pool=10.0,
    )


def _api_base(config: TelegramConfig) -> str:
    return f"{config.api_base.rstrip('/')}/bot{config.token.strip()}"


def _check(method: str, resp: httpx.Response) -> Any:
    try:
        payload = resp.json()
    except ValueError:
        payload = {}
    if resp.status_code >= 400 or not payload.get("ok"):
        raise TelegramApiError(
            method,
            resp.status_code,
            str(payload.get("description") or resp.text[:300]),
        )
    return payload.get("result")


class TelegramClient:
    """Owns the single HTTP connection pool to the Bot API."""

    def __init__(self, config: TelegramConfig, *, http: httpx.AsyncClient | None = None) -> None:
        self.config = config
        self._api_base = _api_base(config)
        self._http = http
        self._owns_http = http is None

    async def start(self) -> None:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=_timeout(self.config))
            self._owns_http = True

    async def close(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
        self._http = None

    async def _call(
        self,
        method: str,
        *,
        json: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
        files: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        if self._http is None:
            await self.start()
        assert self._http is not None
        url = f"{self._api_base}/{method}"
        if params is not None:
            resp = await self._http.get(url, params=params)
        elif files is not None:
            resp = await self._http.post(url, data=data, files=files)
        else:
            resp = await self._http.post(url, json=json or {})
        return _check(method, resp)

    async def get_me(self) -> dict[str, Any]:
        return await self._call("getMe", params={})

    async def send_message(
        self,
        chat_id: str,
        text: str,
        *,
        parse_mode: str | None = "HTML",
        disable_web_page_preview: bool = True,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "chat_id": chat_id,
            "text": text,
            "disable_web_page_preview": disable_web_page_preview,
        }
        if parse_mode:
            payload["parse_mode"] = parse_mode
        return await self._call("sendMessage", json=payload)

    async def send_photo(
        self,
        chat_id: str,
        photo: bytes,
        *,
        caption: str | None = None,
        parse_mode: str | None = "HTML",
    ) -> dict[str, Any]:
        return await self._call(
            "sendPhoto",
            data=self._media_fields(chat_id, caption, parse_mode),
            files={"photo": ("photo.png", photo, "image/png")},
        )

    async def send_document(
        self,
        chat_id: str,
        document: bytes,
        *,
        filename: str = "media",
        mimetype: str | None = None,
        caption: str | None = None,
        parse_mode: str | None = "HTML",
    ) -> dict[str, Any]:
        return await self._call(
            "sendDocument",
            data=self._media_fields(chat_id, caption, parse_mode),
            files={"document": (filename, document, mimetype or "application/octet-stream")},
        )

    async def get_updates(self, offset: int, timeout: int) -> list[dict[str, Any]]:
        result = await self._call(
            "getUpdates",
            params={
                "offset": offset,
                "timeout": timeout,
                "allowed_updates": '["message"]',
            },
        )
        if not isinstance(result, list):
            return []
        return [item for item in result if isinstance(item, dict)]

    @staticmethod
    def _media_fields(chat_id: str, caption: str | None, parse_mode: str | None) -> dict[str, Any]:
        fields: dict[str, Any] = {"chat_id": chat_id}
        if caption:
            fields["caption"] = caption
            if parse_mode:
                fields["parse_mode"] = parse_mode
        return fields


def send_message_sync(config: TelegramConfig, text: str, *, timeout_s: float = 10.0) -> bool:
    """Best-effort blocking send for use when the event loop is gone.

    Never raises; returns whether Telegram accepted the message.
    """
    try:
        with httpx.Client(timeout=timeout_s) as client:
            resp = client.post(
                f"{_api_base(config)}/sendMessage",
                json={
                    "chat_id": config.chat_id,
                    "text": text,
                    "parse_mode": "HTML",
                    "disable_web_page_preview": True,
                },
            )
            _check("sendMessage", resp)
        return True
    except Exception as exc:
        logger.error("telegram.direct_send_failed", error=str(exc))
        return False
