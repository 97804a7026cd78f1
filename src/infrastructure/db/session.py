# src/infrastructure/db/session.py

import logging
import time
from contextlib import contextmanager

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from src.core.config import get_settings

logger = logging.getLogger(__name__)

DATABASE_URL = get_settings().database_url


def _connect_args(url: str) -> dict:
    # FastAPI serves sync dependencies from a thread pool.
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine: Engine = create_engine(
    DATABASE_URL,
    echo=False,
    future=True,
    pool_pre_ping=True,
    connect_args=_connect_args(DATABASE_URL),
)


class Base(DeclarativeBase):
    pass


SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
)


def wait_for_database(max_retries: int, retry_delay: float) -> None:
    """Block until the ledger database answers, or give up after ``max_retries``."""
    attempts = max(1, max_retries)
    for attempt in range(1, attempts + 1):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.info("Ledger database is reachable.")
            return
        except OperationalError:
            if attempt == attempts:
                logger.exception(
                    "Ledger database not reachable after %s attempts. Check DATABASE_URL.",
                    attempts,
                )
                raise
            logger.warning(
                "Ledger database not ready (attempt %s/%s). Retrying in %.1f seconds...",
                attempt,
                attempts,
                retry_delay,
            )
            time.sleep(retry_delay)


# Non-FastAPI usage (scripts).
@contextmanager
def get_db_session():
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
