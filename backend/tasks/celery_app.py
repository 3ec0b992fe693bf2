from celery import Celery

from bloodnode.config import get_settings

settings = get_settings()

celery_app = Celery(
    "bloodnode",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=[
        "tasks.alert_tasks",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_routes={
        "tasks.alert_tasks.*": {"queue": "alerts.expiry"},
    },
    beat_schedule={
        "expire-stale-alerts": {
            "task": "tasks.alert_tasks.expire_stale_alerts",
            "schedule": settings.EXPIRY_SWEEP_INTERVAL_SECONDS,  # Every 5 minutes by default
        },
        "alert-statistics": {
            "task": "tasks.alert_tasks.refresh_alert_statistics",
            "schedule": 3600.0,  # Every hour
        },
    },
)
