### exportqueue/exports/tasks.py

"""
Celery Tasks for Async Export Processing

The beat schedule fires ``exports.advance_pending_exports`` every few
seconds; each run advances every runnable job by one page. Failures are
absorbed per job so one broken export never stalls the others.
"""

from celery import shared_task

from exportqueue.core.config import settings
from exportqueue.core.db import SessionLocal
from exportqueue.exports.runner import ExportRunner
from exportqueue.exports.storage import LocalFileStore
from exportqueue.utils.logger import get_logger

logger = get_logger(__name__)


def _runner(db) -> ExportRunner:
    return ExportRunner(db, LocalFileStore(settings.export_storage_dir))


@shared_task(name="exports.advance_pending_exports")
def advance_pending_exports(limit: int = None):
    """
    Advance every QUEUED or PROCESSING export by one page.

    Returns:
        dict: Counts of processed, finished, rejected and skipped jobs
    """
    db = SessionLocal()
    try:
        return _runner(db).advance_pending(limit)
    except Exception as e:
        # Never let the beat task die; the next beat retries
        logger.error(f"Error in advance_pending_exports: {e}", exc_info=True)
        db.rollback()
        return {"status": "error", "message": str(e)}
    finally:
        db.close()


@shared_task(name="exports.advance_export")
def advance_export(signature: str):
    """
    Advance a single export by one page, e.g. right after it was requested.

    Returns:
        dict: Result summary
    """
    db = SessionLocal()
    try:
        job = _runner(db).advance(signature)
        if job is None:
            return {"status": "error", "message": "Export job not found"}
        return {
            "status": job.status.value,
            "signature": signature,
            "steps_processed": job.steps_processed,
            "total_steps": job.total_steps,
        }
    finally:
        db.close()
