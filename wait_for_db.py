import logging
import time

from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from staydesk.core.config import settings
from staydesk.db.session import Database

logger = logging.getLogger("wait_for_db")


def wait_for_db(url: str | None = None, timeout_s: int = 60) -> None:
    """Block until the database accepts connections, or raise after ``timeout_s``."""
    database = Database(url or settings.DATABASE_URL, pool_timeout=settings.DB_POOL_TIMEOUT_SECONDS)
    start = time.time()
    logger.info("Waiting for database (timeout=%ss)", timeout_s)
    try:
        while True:
            try:
                with database.engine.connect() as conn:
                    conn.execute(text("SELECT 1"))
                logger.info("Database is ready.")
                return
            except OperationalError as e:
                if time.time() - start > timeout_s:
                    logger.error("Timed out waiting for DB. Last error: %s", e)
                    raise
                time.sleep(1)
    finally:
        database.dispose()
