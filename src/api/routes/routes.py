from fastapi import APIRouter, Depends

from src.api.deps import get_app_settings
from src.api.routes import notifications, payments, tickets
from src.core.config import Settings

router = APIRouter()
router.include_router(payments.router)
router.include_router(tickets.router)
router.include_router(notifications.router)


@router.get("/health")
def health(settings: Settings = Depends(get_app_settings)):
    return {
        "message": f"{settings.app_name} is running",
        "environment": settings.phonepe_environment,
    }
