import logging

from celery import Celery

from app.core.config import get_settings
from app.core.database import SessionLocal

settings = get_settings()
logger = logging.getLogger("app.tasks")

celery_app = Celery("crm_api", broker=settings.redis_url, backend=settings.redis_url)
celery_app.conf.beat_schedule = {
    "cleanup-expired-auth-tokens": {
        "task": "app.tasks.cleanup_expired_auth_tokens",
        "schedule": 3600.0,
    },
}


@celery_app.task(name="app.tasks.cleanup_expired_auth_tokens")
def cleanup_expired_auth_tokens() -> dict[str, int]:
    from app.auth.service import auth_service

    session = SessionLocal()
    try:
        counts = auth_service.cleanup_expired_tokens(session)
    finally:
        session.close()
    logger.info("tasks.cleanup_expired_auth_tokens", extra={"status": counts})
    return counts
