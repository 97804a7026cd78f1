# src/infrastructure/tickets/qr.py

import io
import json

import qrcode
from qrcode.constants import ERROR_CORRECT_M
from qrcode.exceptions import DataOverflowError

from src.domain.exceptions import QrTooLarge
from src.infrastructure.clients.backend import TicketDetails, TicketGame

QR_BOX_SIZE = 8
QR_BORDER = 2
QR_MAX_VERSION = 40


def build_qr_payload(details: TicketDetails, game: TicketGame | None = None) -> str:
    """
    Canonical QR content for one game of a booking.
    Keys always appear in the same order so the same booking always
    encodes to the same bytes.
    """
    game = game or (details.games[0] if details.games else TicketGame())
    payload = {
        "ref": details.booking_ref,
        "id": details.booking_id,
        "name": details.child_name or "",
        "game": game.game_name or "",
        "slot_id": game.slot_id if game.slot_id is not None else 0,
    }
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def render_qr(payload: str) -> bytes:
    """Render ``payload`` as a PNG (error correction M, 2-module margin)."""
    qr = qrcode.QRCode(
        version=None,
        error_correction=ERROR_CORRECT_M,
        box_size=QR_BOX_SIZE,
        border=QR_BORDER,
    )
    qr.add_data(payload)
    try:
        qr.make(fit=True)
    except DataOverflowError as exc:
        raise QrTooLarge(f"QR payload of {len(payload)} chars exceeds capacity") from exc

    if qr.version > QR_MAX_VERSION:
        raise QrTooLarge(f"QR payload needs version {qr.version}")

    image = qr.make_image(fill_color="black", back_color="white").get_image()
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()
