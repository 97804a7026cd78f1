import httpx
from fastapi import Depends, Request
from sqlalchemy.orm import Session

from src.application.booking_lookup import BookingMaterializationCheck
from src.application.notification_service import NotificationDispatcher
from src.application.payment_service import PaymentInitiationService, PaymentStatusPoller
from src.application.reconciliation_service import CallbackService, ReconciliationService
from src.core.config import Settings, get_settings
from src.infrastructure.cache import ResponseCache
from src.infrastructure.clients.backend import NibogBackendClient
from src.infrastructure.clients.email import SmtpEmailSender
from src.infrastructure.clients.phonepe import PhonePeClient
from src.infrastructure.clients.whatsapp import ZaptraWhatsAppClient
from src.infrastructure.db.session import SessionLocal


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_app_settings() -> Settings:
    return get_settings()


def get_http_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.http


def get_cache(request: Request) -> ResponseCache:
    return request.app.state.cache


def get_gateway(
    settings: Settings = Depends(get_app_settings),
    http: httpx.AsyncClient = Depends(get_http_client),
) -> PhonePeClient:
    return PhonePeClient(settings, http)


def get_backend(
    settings: Settings = Depends(get_app_settings),
    http: httpx.AsyncClient = Depends(get_http_client),
    cache: ResponseCache = Depends(get_cache),
) -> NibogBackendClient:
    return NibogBackendClient(settings, http, cache)


def get_poller(
    settings: Settings = Depends(get_app_settings),
    gateway: PhonePeClient = Depends(get_gateway),
    cache: ResponseCache = Depends(get_cache),
) -> PaymentStatusPoller:
    return PaymentStatusPoller(settings, gateway, cache)


def get_lookup(
    settings: Settings = Depends(get_app_settings),
    backend: NibogBackendClient = Depends(get_backend),
) -> BookingMaterializationCheck:
    return BookingMaterializationCheck(
        backend,
        max_retries=max(0, settings.payment_status_max_retries - 1),
        retry_delay=settings.payment_status_retry_delay,
    )


def get_email_sender(settings: Settings = Depends(get_app_settings)) -> SmtpEmailSender:
    return SmtpEmailSender(settings)


def get_dispatcher(
    settings: Settings = Depends(get_app_settings),
    http: httpx.AsyncClient = Depends(get_http_client),
    email_sender: SmtpEmailSender = Depends(get_email_sender),
    backend: NibogBackendClient = Depends(get_backend),
) -> NotificationDispatcher:
    return NotificationDispatcher(
        settings,
        whatsapp=ZaptraWhatsAppClient(settings, http),
        email_sender=email_sender,
        backend=backend,
    )


def get_initiation_service(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    gateway: PhonePeClient = Depends(get_gateway),
) -> PaymentInitiationService:
    return PaymentInitiationService(db, settings, gateway)


def get_reconciliation_service(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    poller: PaymentStatusPoller = Depends(get_poller),
    lookup: BookingMaterializationCheck = Depends(get_lookup),
) -> ReconciliationService:
    return ReconciliationService(settings, poller, lookup, db)


def get_callback_service(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    gateway: PhonePeClient = Depends(get_gateway),
    poller: PaymentStatusPoller = Depends(get_poller),
    lookup: BookingMaterializationCheck = Depends(get_lookup),
    backend: NibogBackendClient = Depends(get_backend),
    cache: ResponseCache = Depends(get_cache),
) -> CallbackService:
    return CallbackService(db, settings, gateway, poller, lookup, backend, cache)
