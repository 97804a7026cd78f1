class NibogPaymentsError(Exception):
    """
    Base exception for all domain-level errors
    inside the NIBOG payment confirmation service.
    """


class InvalidInput(NibogPaymentsError):
    """Raised when caller-supplied data is empty or malformed."""


class TransientError(NibogPaymentsError):
    """
    Retryable I/O failure (network error, unparsable response).
    Callers may retry with backoff.
    """


class RequestTimeout(TransientError):
    """Raised when an outbound call exceeds its timeout."""


class PaymentFailed(NibogPaymentsError):
    """
    Terminal payment failure reported explicitly by the gateway.
    Never retried.
    """

    def __init__(
        self,
        transaction_id: str,
        code: str | None,
        message: str | None = None,
        raw: dict | None = None,
    ):
        self.transaction_id = transaction_id
        self.code = code
        self.message = message
        self.raw = raw or {}
        super().__init__(
            f"Payment {transaction_id} failed with code {code}: {message or 'no message'}"
        )


class SchemaMismatch(NibogPaymentsError):
    """Raised when a backend response does not match the expected envelope."""


class ConfigurationError(NibogPaymentsError):
    """
    Raised when the configuration carries CRITICAL issues,
    e.g. sandbox credentials paired with production endpoints.
    """

    def __init__(self, issues: list):
        self.issues = issues
        self.severity = "CRITICAL"
        details = "; ".join(issue.message for issue in issues)
        super().__init__(f"CRITICAL configuration error: {details}")


class SignatureMismatch(NibogPaymentsError):
    """Raised when a gateway callback carries an invalid X-VERIFY header."""


class UnknownTransaction(NibogPaymentsError):
    """Raised when no ledger row exists for a merchant transaction id."""


class InvalidStateTransitionError(NibogPaymentsError):
    """
    Raised when an illegal state transition is attempted.
    """

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state

        message = (
            f"Illegal state transition attempted: "
            f"{from_state} -> {to_state}"
        )
        super().__init__(message)


class IdempotencyConflictError(NibogPaymentsError):
    """Raised when an idempotent request conflicts with previous data."""


# ---------------------
# Ticket artifacts
# ---------------------

class QrTooLarge(NibogPaymentsError):
    """Raised when a payload exceeds the QR encoding capacity."""


class AttachmentGenerationFailed(NibogPaymentsError):
    """Ticket generation failed; delivery degrades instead of blocking."""


# ---------------------
# Notifications
# ---------------------

class NotificationsDisabled(NibogPaymentsError):
    """A channel is switched off by configuration. Not a failure."""


class ProviderUnavailable(NibogPaymentsError):
    """Network error or timeout talking to a notification provider."""


class TemplateRejected(NibogPaymentsError):
    """The WhatsApp provider refused the template call."""

    def __init__(self, message: str, provider_response: dict | None = None):
        self.provider_response = provider_response or {}
        super().__init__(message)


class ParameterCountMismatch(TemplateRejected):
    """
    Template parameter count differs from the count the remote template
    declares. Detected locally, before any network call.
    """

    def __init__(self, expected: int, supplied: list[str]):
        self.expected = expected
        self.supplied = supplied
        super().__init__(
            f"Template expects {expected} parameters, got {len(supplied)}: "
            f"{supplied}"
        )
