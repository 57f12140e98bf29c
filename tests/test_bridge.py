from __future__ import annotations

import asyncio
from typing import Any

import pytest

from wabridge.bridge import BridgeController
from wabridge.config import BridgeConfig, DeliveryConfig, SessionConfig, TelegramConfig
from wabridge.delivery.notifier import MEDIA_SEND_FAILED, TelegramNotifier
from wabridge.delivery.queue import DeliveryQueue
from wabridge.errors import TelegramApiError
from wabridge.session.base import Contact, MediaPayload, SessionEvent, SourceMessage, SourceSession
from wabridge.telegram.poller import OperatorMessage


class _FakeTelegramClient:
    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.fail_photos = False

    @property
    def texts(self) -> list[str]:
        return [call["text"] for method, call in self.calls if method == "sendMessage"]

    def by_method(self, method: str) -> list[dict[str, Any]]:
        return [call for name, call in self.calls if name == method]

    async def send_message(self, chat_id: str, text: str, **kwargs: Any) -> dict:
        self.calls.append(("sendMessage", {"chat_id": chat_id, "text": text}))
        return {"message_id": len(self.calls)}

    async def send_photo(self, chat_id: str, photo: bytes, *, caption: str | None = None, **kwargs: Any) -> dict:
        if self.fail_photos:
            raise TelegramApiError("sendPhoto", 400, "IMAGE_PROCESS_FAILED")
        self.calls.append(("sendPhoto", {"chat_id": chat_id, "size": len(photo), "caption": caption}))
        return {"message_id": len(self.calls)}

    async def send_document(
        self,
        chat_id: str,
        document: bytes,
        *,
        filename: str = "media",
        mimetype: str | None = None,
        caption: str | None = None,
        **kwargs: Any,
    ) -> dict:
        self.calls.append(
            (
                "sendDocument",
                {"chat_id": chat_id, "filename": filename, "mimetype": mimetype, "caption": caption},
            )
        )
        return {"message_id": len(self.calls)}


class _FakeSession(SourceSession):
    def __init__(self) -> None:
        super().__init__()
        self.sent: list[tuple[str, str]] = []
        self.send_error: Exception | None = None
        self.media: MediaPayload | None = None
        self.contact: Contact = Contact(name="Alice <A&B>", number="15551234567")
        self.contact_error: Exception | None = None

    async def initialize(self) -> None:
        return None

    async def destroy(self) -> None:
        return None

    async def send(self, address: str, text: str) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((address, text))

    async def download_media(self, message: SourceMessage) -> MediaPayload | None:
        return self.media

    async def get_contact(self, message: SourceMessage) -> Contact:
        if self.contact_error is not None:
            raise self.contact_error
        return self.contact


class _FakeRenderer:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error

    def render(self, payload: str) -> bytes:
        if self.error is not None:
            raise self.error
        return b"png:" + payload.encode()


class _Setup:
    def __init__(
        self,
        virtual_time,
        *,
        delivery: DeliveryConfig | None = None,
        relay_outgoing: bool = False,
        max_reconnect_attempts: int = 10,
        renderer: _FakeRenderer | None = None,
        on_fatal=None,
    ) -> None:
        config = BridgeConfig(
            telegram=TelegramConfig(token="token", chat_id="42"),
            delivery=delivery or DeliveryConfig(),
            session=SessionConfig(
                relay_outgoing=relay_outgoing,
                max_reconnect_attempts=max_reconnect_attempts,
            ),
        )
        self.virtual_time = virtual_time
        self.client = _FakeTelegramClient()
        self.session = _FakeSession()
        queue = DeliveryQueue.from_config(
            "telegram",
            config.delivery,
            clock=virtual_time.clock,
            sleep=virtual_time.sleep,
        )
        self.notifier = TelegramNotifier(
            client=self.client,
            queue=queue,
            telegram=config.telegram,
            delivery=config.delivery,
        )
        self.bridge = BridgeController(
            config,
            notifier=self.notifier,
            session_factory=lambda: self.session,
            qr_renderer=renderer or _FakeRenderer(),
            on_fatal=on_fatal,
            clock=virtual_time.clock,
            sleep=virtual_time.sleep,
        )

    async def connect(self, *, ready: bool = True) -> None:
        await self.bridge.reconnector.initialize()
        if ready:
            await self.session.emit(SessionEvent(kind="authenticated"))
            await self.session.emit(SessionEvent(kind="ready"))

    async def inbound(self, message: SourceMessage) -> None:
        await self.session.emit(SessionEvent(kind="message", message=message))

    async def flush(self) -> None:
        for _ in range(3):
            await asyncio.sleep(0)
            await self.notifier.queue.drain()

    def relayed(self) -> list[str]:
        return [text for text in self.client.texts if "📩 WhatsApp Message" in text]


def _message(message_id: str = "ABC123", **kwargs: Any) -> SourceMessage:
    kwargs.setdefault("sender", "15551234567@c.us")
    kwargs.setdefault("body", "hello <b>")
    return SourceMessage(id=message_id, **kwargs)


@pytest.mark.asyncio
async def test_duplicate_inbound_within_ttl_is_relayed_once(virtual_time) -> None:
    s = _Setup(virtual_time)
    await s.connect()

    await s.inbound(_message())
    virtual_time.advance(2.0)
    await s.inbound(_message())
    await s.flush()

    relayed = s.relayed()
    assert len(relayed) == 1
    assert "👤 Alice &lt;A&amp;B&gt;" in relayed[0]
    assert "📱 15551234567" in relayed[0]
    assert "💬 hello &lt;b&gt;" in relayed[0]


@pytest.mark.asyncio
async def test_contact_lookup_failure_falls_back_to_sender(virtual_time) -> None:
    s = _Setup(virtual_time)
    await s.connect()
    s.session.contact_error = RuntimeError("store not loaded")

    await s.inbound(_message(sender="4915112345@c.us"))
    await s.flush()

    relayed = s.relayed()
    assert "👤 Unknown" in relayed[0]
    assert "📱 4915112345" in relayed[0]


@pytest.mark.asyncio
async def test_reply_with_address_marker_is_sent_once(virtual_time) -> None:
    s = _Setup(virtual_time)
    await s.connect()
    await s.inbound(_message())
    await s.flush()

    reply = OperatorMessage(
        chat_id="42",
        message_id=9,
        text="hi there",
        reply_to_text=s.relayed()[0],
    )
    future = await s.bridge.handle_operator_message(reply)
    assert future is not None
    result = await future
    await s.flush()

    assert result.delivered is True
    assert s.session.sent == [("15551234567@c.us", "hi there")]
    assert "⏳ Sending reply..." in s.client.texts
    assert any("✅ <b>Reply Sent</b>" in text and "To: 15551234567" in text for text in s.client.texts)


@pytest.mark.asyncio
async def test_reply_when_not_ready_is_rejected(virtual_time) -> None:
    s = _Setup(virtual_time)
    await s.connect(ready=False)

    reply = OperatorMessage(chat_id="42", message_id=9, text="hi", reply_to_text="📱 15551234567")
    future = await s.bridge.handle_operator_message(reply)
    await s.flush()

    assert future is None
    assert s.session.sent == []
    assert any("❌ <b>Reply Failed</b>" in text and "not ready" in text for text in s.client.texts)


@pytest.mark.asyncio
async def test_reply_failure_is_reported_after_retries(virtual_time) -> None:
    s = _Setup(virtual_time)
    await s.connect()
    s.session.send_error = RuntimeError("socket closed")

    reply = OperatorMessage(chat_id="42", message_id=9, text="hi", reply_to_text="📱 15551234567")
    future = await s.bridge.handle_operator_message(reply)
    result = await future
    await s.flush()

    assert result.delivered is False
    assert result.attempts == 3
    assert any("❌ <b>Reply Failed</b>" in text and "socket closed" in text for text in s.client.texts)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "reply",
    [
        OperatorMessage(chat_id="42", message_id=1, text="hi", reply_to_text="no address here"),
        OperatorMessage(chat_id="42", message_id=2, text="hi", reply_to_text=None),
        OperatorMessage(chat_id="99", message_id=3, text="hi", reply_to_text="📱 15551234567"),
    ],
)
async def test_replies_without_target_are_ignored(virtual_time, reply: OperatorMessage) -> None:
    s = _Setup(virtual_time)
    await s.connect()
    await s.flush()
    before = list(s.client.texts)

    future = await s.bridge.handle_operator_message(reply)
    await s.flush()

    assert future is None
    assert s.session.sent == []
    assert s.client.texts == before


@pytest.mark.asyncio
async def test_image_media_is_sent_as_photo(virtual_time) -> None:
    s = _Setup(virtual_time)
    await s.connect()
    s.session.media = MediaPayload(data=b"\xff\xd8\xff-jpeg", mimetype="image/jpeg")

    await s.inbound(_message(has_media=True, body="look"))
    await s.flush()

    photos = s.client.by_method("sendPhoto")
    assert len(photos) == 1
    assert "📎 Media type: image/jpeg" in photos[0]["caption"]


@pytest.mark.asyncio
async def test_other_media_is_sent_as_document(virtual_time) -> None:
    s = _Setup(virtual_time)
    await s.connect()
    s.session.media = MediaPayload(data=b"%PDF-1.7", mimetype="application/pdf", filename="invoice.pdf")

    await s.inbound(_message(has_media=True))
    await s.flush()

    documents = s.client.by_method("sendDocument")
    assert documents[0]["filename"] == "invoice.pdf"
    assert documents[0]["mimetype"] == "application/pdf"


@pytest.mark.asyncio
async def test_failed_download_is_relayed_as_text(virtual_time) -> None:
    s = _Setup(virtual_time)
    await s.connect()
    s.session.media = None

    await s.inbound(_message(has_media=True))
    await s.flush()

    assert any("⚠️ [Media failed to download]" in text for text in s.relayed())
    assert s.client.by_method("sendPhoto") == []


@pytest.mark.asyncio
async def test_oversize_media_is_replaced_by_notice(virtual_time) -> None:
    s = _Setup(virtual_time, delivery=DeliveryConfig(max_media_bytes=4))
    await s.connect()
    s.session.media = MediaPayload(data=b"0123456789", mimetype="video/mp4")

    await s.inbound(_message(has_media=True))
    await s.flush()

    assert s.client.by_method("sendDocument") == []
    assert any("Media too large to forward" in text for text in s.relayed())


@pytest.mark.asyncio
async def test_photo_send_failure_falls_back_to_text(virtual_time) -> None:
    s = _Setup(virtual_time)
    await s.connect()
    s.client.fail_photos = True
    s.session.media = MediaPayload(data=b"img", mimetype="image/png")

    await s.inbound(_message(has_media=True))
    await s.flush()

    fallback = [text for text in s.relayed() if text.endswith(MEDIA_SEND_FAILED)]
    assert len(fallback) == 1


@pytest.mark.asyncio
async def test_outbound_echo_touches_activity_without_relaying(virtual_time) -> None:
    s = _Setup(virtual_time)
    await s.connect()
    await s.flush()
    before = list(s.client.texts)
    virtual_time.advance(500.0)

    await s.session.emit(
        SessionEvent(kind="message_echo", message=_message("OUT1", from_me=True, recipient="15550000000@c.us"))
    )
    await s.flush()

    assert s.bridge.activity.idle_for() == 0
    assert s.client.texts == before


@pytest.mark.asyncio
async def test_outbound_echo_is_relayed_when_enabled(virtual_time) -> None:
    s = _Setup(virtual_time, relay_outgoing=True)
    await s.connect()
    echo = _message("OUT1", from_me=True, recipient="15550000000@c.us", body="on my way")

    await s.session.emit(SessionEvent(kind="message_echo", message=echo))
    await s.session.emit(SessionEvent(kind="message_echo", message=echo))
    await s.flush()

    sent = [text for text in s.client.texts if "📤 WhatsApp Message Sent" in text]
    assert len(sent) == 1
    assert "📱 15550000000" in sent[0]


@pytest.mark.asyncio
async def test_qr_challenge_is_sent_as_photo(virtual_time) -> None:
    s = _Setup(virtual_time)
    await s.connect(ready=False)

    await s.session.emit(SessionEvent(kind="qr", payload="2@qr-data"))
    await s.flush()

    photos = s.client.by_method("sendPhoto")
    assert len(photos) == 1
    assert "WhatsApp QR Code" in photos[0]["caption"]
    assert photos[0]["size"] == len(b"png:2@qr-data")


@pytest.mark.asyncio
async def test_qr_render_failure_is_reported(virtual_time) -> None:
    s = _Setup(virtual_time, renderer=_FakeRenderer(error=ValueError("payload too long")))
    await s.connect(ready=False)

    await s.session.emit(SessionEvent(kind="qr", payload="2@qr-data"))
    await s.flush()

    assert any(text.startswith("❌ QR generation failed: payload too long") for text in s.client.texts)


@pytest.mark.asyncio
async def test_status_reports_state_and_queues(virtual_time) -> None:
    s = _Setup(virtual_time)
    await s.connect()
    await s.flush()

    status = s.bridge.status()

    assert status["whatsapp_state"] == "ready"
    assert status["whatsapp_connected"] is True
    assert status["reconnect_attempts"] == 0
    assert status["telegram_queue"]["pending"] == 0
    assert status["telegram_queue"]["delivered"] >= 3


@pytest.mark.asyncio
async def test_slow_login_does_not_trigger_stall_warning(virtual_time) -> None:
    s = _Setup(virtual_time)
    await s.bridge.reconnector.initialize()

    virtual_time.advance(240.0)
    await s.session.emit(SessionEvent(kind="authenticated"))
    await s.session.emit(SessionEvent(kind="ready"))

    assert s.bridge.activity.idle_for() == 0
    assert s.bridge.monitor.check() is False


@pytest.mark.asyncio
async def test_exhausted_reconnects_invoke_fatal_hook_once(virtual_time) -> None:
    exits: list[str] = []

    async def on_fatal() -> None:
        exits.append(s.bridge.reconnector.state.value)

    s = _Setup(virtual_time, max_reconnect_attempts=2, on_fatal=on_fatal)
    await s.connect()

    await s.session.emit(SessionEvent(kind="disconnected", payload="lost"))
    task = s.bridge.reconnector._reconnect_task
    await task
    await s.session.emit(SessionEvent(kind="disconnected", payload="lost again"))
    await s.flush()

    assert exits == ["fatally_failed"]
    assert any("Max reconnection attempts reached" in text for text in s.client.texts)
