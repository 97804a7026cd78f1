import io
import logging
from dataclasses import dataclass, field
from typing import Callable

from reportlab.pdfgen import canvas
from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader

from src.domain.exceptions import AttachmentGenerationFailed, QrTooLarge
from src.infrastructure.clients.backend import TicketDetails, TicketGame
from src.infrastructure.tickets.qr import build_qr_payload, render_qr

logger = logging.getLogger(__name__)

FONT_REGULAR = "Helvetica"
FONT_BOLD = "Helvetica-Bold"

PAGE_WIDTH, PAGE_HEIGHT = A4
MARGIN = 20 * mm
QR_SIZE = 45 * mm
BLOCK_HEIGHT = 62 * mm


@dataclass
class TicketArtifact:
    """In-memory ticket for one notification attempt. Never persisted."""

    booking_ref: str
    qr_payloads: list[str] = field(default_factory=list)
    qr_images: list[bytes | None] = field(default_factory=list)
    pdf: bytes = b""
    # Games whose QR could not be embedded; the PDF shows a placeholder.
    degraded: list[str] = field(default_factory=list)


def _money(value: float | None) -> str:
    if value is None:
        return "N/A"
    return f"Rs. {value:,.2f}"


def _text(value: object) -> str:
    return str(value) if value not in (None, "") else "N/A"


def _draw_header(c: canvas.Canvas, details: TicketDetails) -> float:
    y = PAGE_HEIGHT - MARGIN
    c.setFont(FONT_BOLD, 20)
    c.drawString(MARGIN, y, "NIBOG - Event Ticket")
    y -= 10 * mm

    c.setFont(FONT_BOLD, 13)
    c.drawString(MARGIN, y, _text(details.event_title))
    y -= 7 * mm

    c.setFont(FONT_REGULAR, 11)
    for line in (
        f"Booking Reference: {details.booking_ref}",
        f"Date: {_text(details.event_date)}",
        f"Venue: {_text(details.venue_name)}",
        f"Parent: {_text(details.parent_name)}",
        f"Child: {_text(details.child_name)}",
        f"Total Amount: {_money(details.total_amount)}",
    ):
        c.drawString(MARGIN, y, line)
        y -= 6 * mm
    return y - 4 * mm


def _draw_qr_placeholder(c: canvas.Canvas, x: float, y: float) -> None:
    c.setDash(3, 3)
    c.rect(x, y, QR_SIZE, QR_SIZE)
    c.setDash()
    c.setFont(FONT_BOLD, 9)
    c.drawCentredString(x + QR_SIZE / 2, y + QR_SIZE / 2 + 2 * mm, "QR CODE UNAVAILABLE")
    c.setFont(FONT_REGULAR, 8)
    c.drawCentredString(x + QR_SIZE / 2, y + QR_SIZE / 2 - 3 * mm, "Show booking reference at entry")


def _draw_game_block(
    c: canvas.Canvas,
    top: float,
    index: int,
    game: TicketGame,
    qr_image: bytes | None,
) -> bool:
    """Draw one ticket block; return False when the QR had to be replaced."""
    bottom = top - BLOCK_HEIGHT + 4 * mm
    c.roundRect(MARGIN, bottom, PAGE_WIDTH - 2 * MARGIN, BLOCK_HEIGHT - 4 * mm, 4 * mm)

    x = MARGIN + 6 * mm
    y = top - 10 * mm
    c.setFont(FONT_BOLD, 13)
    c.drawString(x, y, f"Ticket {index}: {_text(game.game_name)}")
    y -= 8 * mm

    c.setFont(FONT_REGULAR, 11)
    times = " - ".join(t for t in (game.start_time, game.end_time) if t) or "N/A"
    for line in (
        f"Slot: {_text(game.slot_id)}",
        f"Time: {times}",
        f"Price: {_money(game.price)}",
    ):
        c.drawString(x, y, line)
        y -= 6 * mm

    qr_x = PAGE_WIDTH - MARGIN - QR_SIZE - 6 * mm
    qr_y = bottom + (BLOCK_HEIGHT - 4 * mm - QR_SIZE) / 2
    if qr_image is not None:
        try:
            c.drawImage(ImageReader(io.BytesIO(qr_image)), qr_x, qr_y, QR_SIZE, QR_SIZE, mask="auto")
            return True
        except (OSError, ValueError):
            logger.exception("QR embedding failed for ticket block %s", index)

    _draw_qr_placeholder(c, qr_x, qr_y)
    return False


def render_ticket_pdf(details: TicketDetails, qr_images: list[bytes | None]) -> tuple[bytes, list[str]]:
    """
    Lay out one ticket block per game with its QR image.
    Returns the PDF bytes and the names of games drawn with a placeholder.
    """
    games = details.games or [TicketGame()]
    buffer = io.BytesIO()
    c = canvas.Canvas(buffer, pagesize=A4)
    c.setTitle(f"NIBOG Ticket {details.booking_ref}")

    degraded: list[str] = []
    y = _draw_header(c, details)
    for index, game in enumerate(games, start=1):
        if y - BLOCK_HEIGHT < MARGIN:
            c.showPage()
            y = PAGE_HEIGHT - MARGIN
        qr_image = qr_images[index - 1] if index - 1 < len(qr_images) else None
        if not _draw_game_block(c, y, index, game, qr_image):
            degraded.append(game.game_name or f"game {index}")
        y -= BLOCK_HEIGHT

    c.setFont(FONT_REGULAR, 9)
    c.drawString(MARGIN, 12 * mm, "Show the QR code at the venue entrance. One QR code admits one child per game.")

    c.showPage()
    c.save()
    pdf = buffer.getvalue()
    buffer.close()
    return pdf, degraded


def build_ticket_artifact(
    details: TicketDetails,
    qr_renderer: Callable[[str], bytes] = render_qr,
) -> TicketArtifact:
    """
    QR payloads, QR images and the PDF for one booking.

    A QR that cannot be rendered degrades into a placeholder block. Only a
    failure to produce the document itself raises AttachmentGenerationFailed.
    """
    artifact = TicketArtifact(booking_ref=details.booking_ref)

    for game in details.games or [TicketGame()]:
        payload = build_qr_payload(details, game)
        artifact.qr_payloads.append(payload)
        try:
            artifact.qr_images.append(qr_renderer(payload))
        except QrTooLarge:
            logger.warning("QR too large for %s / %s", details.booking_ref, game.game_name)
            artifact.qr_images.append(None)

    try:
        artifact.pdf, artifact.degraded = render_ticket_pdf(details, artifact.qr_images)
    except Exception as exc:
        logger.exception("PDF build failed for booking %s", details.booking_ref)
        raise AttachmentGenerationFailed(f"Ticket PDF for {details.booking_ref} failed: {exc}") from exc

    return artifact
