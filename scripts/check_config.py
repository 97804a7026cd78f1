import sys

from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from src.core.config import get_settings, validate_settings
from src.domain.state_machine import TransactionStatus
from src.infrastructure.db.models import PaymentTransaction
from src.infrastructure.db.session import get_db_session


def _presence(value: str) -> str:
    return "set" if value else "MISSING"


def main() -> int:
    settings = get_settings()

    print("=== Payment configuration ===")
    print(f"Environment:   {settings.phonepe_environment}")
    print(f"Merchant ID:   {settings.phonepe_merchant_id or 'MISSING'}")
    print(f"Salt key:      {_presence(settings.phonepe_salt_key)}")
    print(f"Salt index:    {_presence(settings.phonepe_salt_index)}")
    print(f"Gateway URL:   {settings.phonepe_api_base or 'MISSING'}")
    print(f"App URL:       {settings.app_url}")
    print(f"WhatsApp:      {'enabled' if settings.whatsapp_enabled else 'disabled'} ({settings.zaptra_api_url})")
    print(f"Zaptra token:  {_presence(settings.zaptra_api_token)}")
    print(f"Email:         {'enabled' if settings.email_enabled else 'disabled'}")
    print(f"SMTP host:     {settings.smtp_host or 'from backend email settings'}")

    try:
        with get_db_session() as db:
            pending = db.scalar(
                select(func.count())
                .select_from(PaymentTransaction)
                .where(PaymentTransaction.status == TransactionStatus.PENDING)
            )
        print(f"Ledger:        reachable, {pending} pending transactions")
    except OperationalError as exc:
        print(f"Ledger:        UNREACHABLE ({exc.orig})")

    issues = validate_settings(settings)
    for issue in issues:
        print(f"[{issue.severity}] {issue.message}")

    if any(issue.severity == "CRITICAL" for issue in issues):
        print("Configuration is NOT valid.")
        return 1

    print("Configuration is valid.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
