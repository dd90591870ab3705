### exportqueue/exports/runner.py

"""
Export Runner

Advances export jobs one page per tick. Ticks are triggered by the scheduler
(see exportqueue.exports.tasks); a single tick never exports more than
``page_size`` records, so each one finishes quickly however large the list is.

A tick holds the job's lease for its whole read-modify-write. The bytes it
appends and the counters it advances are committed together: the file is
first cut back to the committed ``bytes_written``, so a tick that died after
appending but before committing is simply redone.

A tick that outlived its lease loses to whichever tick or cancel committed a
newer version of the job. Its commit fails the version check, its page is
dropped, and the job carries on from the winner's state.
"""

import secrets
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from exportqueue.core.config import settings
from exportqueue.exports.exceptions import DataShrankError
from exportqueue.exports.models import ExportJob, ExportStatus, utcnow
from exportqueue.exports.repository import ExportJobRepository
from exportqueue.exports.serializer import DelimitedSerializer
from exportqueue.exports.sources import (
    ListReference,
    Record,
    SourceRegistry,
    record_value,
    source_registry,
)
from exportqueue.exports.storage import LocalFileStore
from exportqueue.utils.logger import get_logger

logger = get_logger(__name__)

FAILED_MESSAGE = "Export failed"


class ExportRunner:
    """Background execution unit for export jobs"""

    def __init__(
        self,
        db: Session,
        file_store: LocalFileStore,
        registry: SourceRegistry = source_registry,
        page_size: Optional[int] = None,
        lease_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.repo = ExportJobRepository(db)
        self.file_store = file_store
        self.registry = registry
        self.page_size = page_size or settings.export_page_size
        self.lease_seconds = lease_seconds or settings.export_lease_seconds
        self.clock = clock

    def advance(self, signature: str) -> Optional[ExportJob]:
        """
        Perform one tick on a job and return its persisted state.

        Terminal jobs and jobs leased by a concurrent tick are left untouched.
        Returns None if no job has this signature.
        """
        job, _ = self._advance(signature)
        return job

    def advance_pending(self, limit: Optional[int] = None) -> Dict[str, int]:
        """
        Run one tick on every runnable job, oldest first.

        A failure on one job never stops the others.
        """
        signatures = self.repo.list_runnable_signatures(limit or settings.export_batch_limit)
        summary = {"processed": 0, "finished": 0, "rejected": 0, "skipped": 0}

        for signature in signatures:
            try:
                job, ticked = self._advance(signature)
            except Exception as e:
                logger.error(f"Unexpected error advancing export {signature}: {e}", exc_info=True)
                self.db.rollback()
                summary["skipped"] += 1
                continue

            if not ticked or job is None:
                summary["skipped"] += 1
                continue
            summary["processed"] += 1
            if job.status == ExportStatus.FINISHED:
                summary["finished"] += 1
            elif job.status == ExportStatus.REJECTED:
                summary["rejected"] += 1

        if signatures:
            logger.info("Advanced pending exports", **summary)
        return summary

    def _advance(self, signature: str) -> Tuple[Optional[ExportJob], bool]:
        job = self.repo.get_by_signature(signature, refresh=True)
        if job is None:
            logger.warning("Export job not found", signature=signature)
            return None, False

        if not job.is_runnable:
            logger.debug("Export job is not runnable", signature=signature, status=job.status.value)
            return job, False

        token = secrets.token_hex(16)
        now = self.clock()
        expires_at = now + timedelta(seconds=self.lease_seconds)
        if not self.repo.acquire_lease(signature, token, now, expires_at):
            logger.info("Export job is leased by another tick", signature=signature)
            return self.repo.get_by_signature(signature, refresh=True), False

        # Re-read under the lease; a cancel may have landed in between
        job = self.repo.get_by_signature(signature, refresh=True)
        if not job.is_runnable:
            self.repo.release_lease(signature, token)
            return job, False

        try:
            ticked = self._tick(job, token)
        except StaleDataError:
            # A newer tick or a cancel committed first; its state stands
            self.db.rollback()
            logger.warning("Export job changed during tick, discarding page", signature=signature)
            self._trim_finished_file(signature)
            ticked = False
        except DataShrankError as e:
            self.db.rollback()
            logger.warning(
                "Export source shrank during export",
                signature=signature,
                expected=e.expected,
                processed=e.processed,
            )
            self._reject(signature, token, str(e))
            ticked = True
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error advancing export job {signature}: {e}", exc_info=True)
            self._reject(signature, token, FAILED_MESSAGE)
            ticked = True

        return self.repo.get_by_signature(signature, refresh=True), ticked

    def _tick(self, job: ExportJob, token: str) -> bool:
        signature = job.signature
        now = self.clock()

        if job.status == ExportStatus.QUEUED:
            self.file_store.open(signature)
            job.mark_processing(now)
            logger.info("Started processing export", signature=signature, total=job.total_steps)
        else:
            # Bytes past the committed length belong to a tick that never committed
            self.file_store.truncate(signature, job.bytes_written)

        source = self.registry.resolve(ListReference(**job.list_ref), self.db)
        limit = min(self.page_size, job.total_steps - job.steps_processed)
        # Rows added after the snapshot are never exported
        records = source.fetch(job.steps_processed, limit)[:limit]
        if not records:
            raise DataShrankError(signature, job.total_steps, job.steps_processed)

        fields, titles = self._resolve_columns(job, records[0])
        serializer = DelimitedSerializer(job.separator)

        text = serializer.serialize_rows(
            [record_value(record, f) for f in fields] for record in records
        )
        if job.include_header and job.steps_processed == 0:
            text = serializer.serialize_header(titles) + text
        data = text.encode("utf-8")

        if not self.repo.holds_lease(signature, token):
            logger.warning("Export lease expired mid-tick, discarding page", signature=signature)
            self.db.rollback()
            return False

        nbytes = self.file_store.append(signature, data)
        job.record_progress(len(records), nbytes, now)
        if job.steps_processed == job.total_steps:
            job.mark_finished(now)
            logger.info("Export job finished", signature=signature, rows=job.steps_processed)

        job.lease_token = None
        job.lease_expires_at = None
        self.db.commit()

        logger.debug(
            "Export tick committed",
            signature=signature,
            rows=len(records),
            steps=f"{job.steps_processed}/{job.total_steps}",
        )
        return True

    def _resolve_columns(self, job: ExportJob, first: Record) -> Tuple[List[str], List[str]]:
        if job.columns is not None:
            fields = [field for field, _ in job.columns]
            titles = [title for _, title in job.columns]
            return fields, titles

        if job.resolved_fields is None:
            job.resolved_fields = list(first.keys())
        return list(job.resolved_fields), list(job.resolved_fields)

    def _trim_finished_file(self, signature: str) -> None:
        """Cut a file finished by another tick back to the length that tick committed."""
        job = self.repo.get_by_signature(signature, refresh=True)
        if job is None or job.status != ExportStatus.FINISHED:
            return
        try:
            self.file_store.truncate(signature, job.bytes_written)
        except FileNotFoundError:
            # Downloaded in the meantime
            pass

    def _reject(self, signature: str, token: str, reason: str) -> None:
        try:
            job = self.repo.get_by_signature(signature, refresh=True)
            if job.is_runnable:
                job.mark_rejected(reason, now=self.clock())
            if job.lease_token == token:
                job.lease_token = None
                job.lease_expires_at = None
            self.db.commit()
            if job.status == ExportStatus.REJECTED:
                self.file_store.delete(signature)
                logger.info("Export job rejected", signature=signature, reason=job.error_message)
        except Exception as e:
            # The lease expires on its own; the next tick retries from committed state
            logger.error(f"Failed to reject export job {signature}: {e}", exc_info=True)
            self.db.rollback()
