"""
Celery configuration settings

This file contains all the Celery configurations including:
- Broker and result backend settings
- Task serialization settings
- Timezone configuration
- Beat schedule for the export runner
"""

# Local imports
from exportqueue.core.config import settings

# Broker and result backend configurations
broker_url = settings.celery_broker
result_backend = settings.celery_backend

# Task serialization
task_serializer = "json"
accept_content = ["json"]
result_serializer = "json"
timezone = "UTC"
enable_utc = True

# Task settings
task_track_started = True
# A tick is one page of rows; anything slower than this is stuck
task_time_limit = 5 * 60
task_soft_time_limit = 4 * 60
worker_prefetch_multiplier = 1
task_acks_late = True

broker_connection_retry_on_startup = True
broker_connection_retry = True
broker_connection_max_retries = 10

redis_socket_timeout = 10
redis_socket_connect_timeout = 10
redis_retry_on_timeout = True

# Beat schedule configuration
beat_schedule = {
    # --- Export runner: one page per runnable job on every beat ---
    "advance-pending-exports": {
        "task": "exports.advance_pending_exports",
        "schedule": float(settings.export_tick_seconds),
        "kwargs": {"limit": settings.export_batch_limit},
        # A beat that was not picked up before the next one is redundant
        "options": {"expires": float(settings.export_tick_seconds)},
    },
}

# Worker configuration
worker_hijack_root_logger = False
worker_log_color = False
