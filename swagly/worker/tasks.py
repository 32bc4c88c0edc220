"""
Celery Tasks for off-request maintenance
"""
import logging
from typing import Optional, Dict, Any

from celery import shared_task

from swagly.config import settings
from swagly.db.database import Database

logger = logging.getLogger(__name__)

_database: Optional[Database] = None


def get_database() -> Database:
    """Storage handle owned by the worker process"""
    global _database
    if _database is None:
        _database = Database(
            settings.DATABASE_URL,
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=settings.DATABASE_MAX_OVERFLOW
        ).open()
    return _database


def set_database(database: Optional[Database]) -> None:
    global _database
    _database = database


@shared_task
def flag_stale_claims(older_than_minutes: Optional[int] = None) -> Dict[str, Any]:
    """
    Mark claim attempts stuck in flight as outcome unknown.

    Never re-sends anything: an operator checks the chain and resolves each
    flagged attempt through the admin API.
    """
    from swagly.services.approval_service import approval_service

    db = get_database().session()
    try:
        flagged = approval_service.flag_stale_attempts(db, older_than_minutes)
        if flagged:
            logger.warning(f"Flagged {flagged} stale claim attempt(s) for manual reconciliation")
        return {"flagged": flagged}
    finally:
        db.close()


@shared_task(bind=True, max_retries=3, default_retry_delay=60)
def sync_event_passports(self, event_id: str) -> Dict[str, Any]:
    """Add activities created after registration to every passport of an event"""
    from swagly.services.passport_service import passport_service

    db = get_database().session()
    try:
        result = passport_service.sync_passports(db, event_id=event_id)
        logger.info(f"Passport sync for event {event_id}: {result['total_activities_added']} added")
        return result
    except Exception as e:
        db.rollback()
        logger.error(f"Passport sync for event {event_id} failed: {e}")
        raise self.retry(exc=e)
    finally:
        db.close()
