import logging

from fastapi import HTTPException, status

from src.domain.exceptions import (
    AttachmentGenerationFailed,
    IdempotencyConflictError,
    InvalidInput,
    InvalidStateTransitionError,
    NibogPaymentsError,
    NotificationsDisabled,
    ProviderUnavailable,
    QrTooLarge,
    SchemaMismatch,
    SignatureMismatch,
    TemplateRejected,
    TransientError,
    UnknownTransaction,
)

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: list[tuple[type[NibogPaymentsError], int]] = [
    (InvalidInput, status.HTTP_400_BAD_REQUEST),
    (SignatureMismatch, status.HTTP_400_BAD_REQUEST),
    (UnknownTransaction, status.HTTP_404_NOT_FOUND),
    (IdempotencyConflictError, status.HTTP_409_CONFLICT),
    (InvalidStateTransitionError, status.HTTP_409_CONFLICT),
    (QrTooLarge, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NotificationsDisabled, status.HTTP_503_SERVICE_UNAVAILABLE),
    (TransientError, status.HTTP_502_BAD_GATEWAY),
    (SchemaMismatch, status.HTTP_502_BAD_GATEWAY),
    (ProviderUnavailable, status.HTTP_502_BAD_GATEWAY),
    (TemplateRejected, status.HTTP_502_BAD_GATEWAY),
    (AttachmentGenerationFailed, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


def http_error(exc: NibogPaymentsError) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            break
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    if status_code >= 500:
        logger.error("%s: %s", type(exc).__name__, exc)
    return HTTPException(status_code=status_code, detail=str(exc))
