import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from src.api.routes.routes import router
from src.core.config import ensure_valid_settings, get_settings
from src.infrastructure.cache import ResponseCache
from src.infrastructure.db.models import Base
from src.infrastructure.db.session import engine, wait_for_database

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Mixed sandbox/production credentials never serve a request.
    ensure_valid_settings(settings)
    wait_for_database(settings.db_connect_max_retries, settings.db_connect_retry_delay)
    Base.metadata.create_all(bind=engine)

    app.state.cache = ResponseCache(ttl_seconds=settings.cache_ttl_seconds)
    app.state.http = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
    logger.info(
        "%s started (environment=%s merchant=%s gateway=%s)",
        settings.app_name,
        settings.phonepe_environment,
        settings.phonepe_merchant_id,
        settings.phonepe_api_base,
    )
    try:
        yield
    finally:
        await app.state.http.aclose()
        app.state.cache.clear()


app = FastAPI(title=settings.app_name, lifespan=lifespan)

app.include_router(router, prefix="/api")
