"""
Main Celery Application Configuration

This file sets up the Celery application instance with Redis as broker and result backend.
It also handles task discovery and loads the periodic export schedule.
"""

# Third party imports
from celery import Celery

# Import models to ensure they're registered with SQLAlchemy
# This must happen before any database operations in tasks
import exportqueue.exports.models  # noqa: F401
from exportqueue.core.config import settings
from exportqueue.utils.logger import configure_logging

configure_logging(settings.log_level, settings.log_format)

# Create Celery Instance
app = Celery("export_queue")

# Configure celery from separate config file
app.config_from_object("exportqueue.worker.config")

# Auto discover tasks.py files in the listed packages
app.autodiscover_tasks(["exportqueue.exports"])

if __name__ == "__main__":
    app.start()
