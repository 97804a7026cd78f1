from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from starlette.concurrency import run_in_threadpool

from src.api.deps import get_backend
from src.api.errors import http_error
from src.domain.booking_reference import convert_reference_format
from src.domain.exceptions import NibogPaymentsError
from src.infrastructure.clients.backend import NibogBackendClient, TicketDetails
from src.infrastructure.tickets.pdf import build_ticket_artifact
from src.infrastructure.tickets.qr import build_qr_payload, render_qr

router = APIRouter(prefix="/tickets", tags=["tickets"])


async def _load_details(backend: NibogBackendClient, booking_ref: str) -> TicketDetails:
    try:
        details = await backend.get_ticket_details(booking_ref)
    except NibogPaymentsError as exc:
        raise http_error(exc) from exc

    if details is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No ticket found for booking {booking_ref}",
        )
    return details


@router.get("/{booking_ref}", response_model=TicketDetails)
async def get_ticket(
    booking_ref: str,
    dialect: str | None = Query(default=None, description="Convert the reference to MAN or PPT first"),
    backend: NibogBackendClient = Depends(get_backend),
):
    if dialect is not None:
        try:
            booking_ref = convert_reference_format(booking_ref, dialect.upper())
        except NibogPaymentsError as exc:
            raise http_error(exc) from exc

    return await _load_details(backend, booking_ref)


@router.get("/{booking_ref}/pdf")
async def get_ticket_pdf(
    booking_ref: str,
    backend: NibogBackendClient = Depends(get_backend),
):
    details = await _load_details(backend, booking_ref)
    try:
        artifact = await run_in_threadpool(build_ticket_artifact, details)
    except NibogPaymentsError as exc:
        raise http_error(exc) from exc

    return Response(
        content=artifact.pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'inline; filename="NIBOG-Ticket-{details.booking_ref}.pdf"'},
    )


@router.get("/{booking_ref}/qr.png")
async def get_ticket_qr(
    booking_ref: str,
    game_index: int = Query(default=0, ge=0),
    backend: NibogBackendClient = Depends(get_backend),
):
    details = await _load_details(backend, booking_ref)
    if game_index >= max(1, len(details.games)):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Booking {booking_ref} has {len(details.games)} games",
        )

    game = details.games[game_index] if details.games else None
    try:
        image = await run_in_threadpool(render_qr, build_qr_payload(details, game))
    except NibogPaymentsError as exc:
        raise http_error(exc) from exc

    return Response(content=image, media_type="image/png")
