"""QR code rendering for session linking challenges."""

from __future__ import annotations

import io

import qrcode
from qrcode.constants import ERROR_CORRECT_H

QR_CAPTION = (
    "🔑 <b>WhatsApp QR Code</b>\n\n"
    "1. Open WhatsApp on your phone\n"
    "2. Go to Settings → Linked Devices\n"
    '3. Tap "Link a Device"\n'
    "4. Scan this QR code\n\n"
    "⏰ Code expires in 60 seconds"
)


class QrRenderer:
    """Renders a QR payload to PNG bytes."""

    def __init__(self, *, box_size: int = 12, border: int = 4) -> None:
        self.box_size = box_size
        self.border = border

    def render(self, payload: str) -> bytes:
        qr = qrcode.QRCode(
            error_correction=ERROR_CORRECT_H,
            box_size=self.box_size,
            border=self.border,
        )
        qr.add_data(payload)
        qr.make(fit=True)
        image = qr.make_image(fill_color="black", back_color="white")
        buffer = io.BytesIO()
        image.save(buffer, format="PNG")
        return buffer.getvalue()
