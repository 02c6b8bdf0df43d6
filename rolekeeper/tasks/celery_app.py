"""Celery app and the scheduled system validation task."""

import logging

from celery import Celery
from rolekeeper.core.config import settings

logger = logging.getLogger("rolekeeper.tasks")

celery_app = Celery(
    "rolekeeper",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_soft_time_limit=600,  # 10 min soft limit
    task_time_limit=900,  # 15 min hard limit
    beat_schedule={
        "validate-role-system": {
            "task": "rolekeeper.validate_system",
            "schedule": float(settings.VALIDATION_SCHEDULE_SECONDS),
        },
    },
)


@celery_app.task(name="rolekeeper.validate_system")
def validate_system_task() -> dict:
    """Run a full validation pass and cache the report for dashboards."""
    from rolekeeper.services.cache_service import cache_service
    from rolekeeper.services.validation_service import RoleValidationService

    report = RoleValidationService().validate_system()
    payload = report.model_dump(mode="json")
    if not cache_service.store_validation_report(payload):
        logger.warning("Validation report was computed but could not be cached")

    return {
        "timestamp": payload["timestamp"],
        "total_users": report.total_users,
        "invalid_users": report.invalid_users,
        "health_score": report.summary.health_score,
        "incomplete": report.summary.incomplete,
    }
