import logging
import time
from typing import Callable, TypeVar

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from carecall.core.config import settings
from carecall.core.errors import DatabaseError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def read_with_retry(db: Session, operation: Callable[[], T], description: str = "read") -> T:
    """Run a read-only query, retrying transient OperationalErrors. Never use for writes."""
    attempts = max(1, settings.DB_READ_RETRIES + 1)
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except OperationalError as e:
            db.rollback()
            if attempt >= attempts:
                logger.error(f"{description} failed after {attempts} attempts: {e}")
                raise DatabaseError(f"Database unavailable during {description}") from e
            logger.warning(f"{description} attempt {attempt}/{attempts} failed, retrying: {e}")
            time.sleep(settings.DB_READ_RETRY_DELAY_SECONDS * attempt)
        except SQLAlchemyError as e:
            logger.error(f"{description} failed: {e}")
            raise DatabaseError(f"Database error during {description}") from e
    raise DatabaseError(f"Database unavailable during {description}")
