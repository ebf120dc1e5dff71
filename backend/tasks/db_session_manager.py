"""
Database sessions for Celery lead tasks

Workers open their own sessions. The processing pass receives a session
factory because it opens one session per lead; short tasks such as the
stats report use a single session through get_celery_db_session().
"""
import logging
from contextlib import contextmanager
from typing import Callable, Generator
from sqlalchemy.orm import Session

from backend.db.database import SessionLocal

logger = logging.getLogger(__name__)


def get_task_session_factory() -> Callable[[], Session]:
    """Session factory handed to run_lead_processing_pass from a worker"""
    return SessionLocal


@contextmanager
def get_celery_db_session(read_only: bool = False) -> Generator[Session, None, None]:
    """
    Single session for a short task.

    Usage:
        with get_celery_db_session(read_only=True) as db:
            stats = get_lead_stats_service().get_processing_stats(db)

    Read-only sessions are rolled back on exit instead of committed.
    """
    db = SessionLocal()

    try:
        yield db
        if read_only:
            db.rollback()
        else:
            db.commit()

    except Exception as e:
        logger.error(f"Lead task database error, rolling back: {e}")
        db.rollback()
        raise

    finally:
        db.close()
