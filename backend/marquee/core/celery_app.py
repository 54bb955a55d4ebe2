from celery import Celery
from marquee.core.config import settings

celery_app = Celery(
    "marquee",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["marquee.services.tasks"]
)


def build_beat_schedule(cfg=settings) -> dict:
    """Periodic tasks; the reconciliation pass is left out when REQUEST_SYNC_DISABLED is set."""
    schedule = {
        "sync-watchlists": {
            "task": "marquee.services.tasks.sync_watchlists",
            "schedule": 60 * cfg.watchlist_sync_interval_minutes,
        },
        "check-service-health": {
            "task": "marquee.services.tasks.check_service_health",
            "schedule": 60 * cfg.health_check_interval_minutes,
        },
    }
    if not cfg.request_sync_disabled:
        schedule["reconcile-requests"] = {
            "task": "marquee.services.tasks.reconcile_requests",
            "schedule": 60 * cfg.request_sync_interval_minutes,
            # The watchlist import has its own schedule
            "kwargs": {"import_watchlists": False},
        }
    return schedule


celery_app.conf.update(
    result_expires=3600,
    task_acks_late=True,
    worker_max_tasks_per_child=100,
    worker_prefetch_multiplier=1,

    # Connection settings
    broker_connection_retry_on_startup=True,
    broker_pool_limit=10,

    # RedBeat scheduler configuration
    beat_scheduler='redbeat.schedulers:RedBeatScheduler',
    redbeat_redis_url=settings.redis_url,
    redbeat_key_prefix='celery:beat:',

    task_routes={
        'marquee.services.tasks.reconcile_requests': {'queue': 'sync'},
        'marquee.services.tasks.reconcile_request': {'queue': 'sync'},
        'marquee.services.tasks.sync_watchlists': {'queue': 'sync'},
        'marquee.services.tasks.check_service_health': {'queue': 'maintenance'},
    },

    beat_schedule=build_beat_schedule(),
    timezone="UTC",
)

celery_app.conf.worker_send_task_events = True
celery_app.conf.task_send_sent_event = True
