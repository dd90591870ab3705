### exportqueue/exports/services.py

"""
Export Service

Plain operations behind the export endpoints: register a job, report its
progress, hand out the finished file exactly once, and cancel.
"""

import secrets
from datetime import datetime
from typing import Any, Callable, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import ValidationError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from exportqueue.core.config import settings
from exportqueue.exports.access import AccessGate, StaticAccessGate
from exportqueue.exports.exceptions import (
    AlreadyConsumedError,
    ConcurrentUpdateError,
    ExportNotFoundError,
    InvalidConfigurationError,
    InvalidStateTransitionError,
    NotReadyError,
)
from exportqueue.exports.models import (
    ExportAction,
    ExportJob,
    ExportStatus,
    utcnow,
)
from exportqueue.exports.repository import ExportJobRepository
from exportqueue.exports.schemas import JobView
from exportqueue.exports.serializer import FORBIDDEN_SEPARATORS
from exportqueue.exports.sources import ListReference, SourceRegistry, source_registry
from exportqueue.exports.storage import LocalFileStore
from exportqueue.utils.logger import get_logger

logger = get_logger(__name__)

CANCELLED_MESSAGE = "This export job was cancelled"
CANCEL_ATTEMPTS = 2

ColumnsArg = Optional[Union[Mapping[str, str], Sequence[Sequence[str]]]]


class ExportService:
    """
    Service layer for export jobs.
    Handles job registration, status reporting, one-time download and cancellation.
    """

    def __init__(
        self,
        db: Session,
        file_store: LocalFileStore,
        registry: SourceRegistry = source_registry,
        access_gate: Optional[AccessGate] = None,
        link_prefix: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.repo = ExportJobRepository(db)
        self.file_store = file_store
        self.registry = registry
        self.access_gate = access_gate or StaticAccessGate(None)
        self.link_prefix = link_prefix if link_prefix is not None else f"{settings.api_prefix}/exports"
        self.clock = clock

    def create_job(
        self,
        list_ref: Union[ListReference, Mapping[str, Any]],
        columns: ColumnsArg = None,
        separator: str = ",",
        include_header: bool = True,
        owner_id: Optional[str] = None,
    ) -> str:
        """
        Registers a new export job over a frozen snapshot of the list.

        Args:
            list_ref: Source name, filters and sort of the list to export
            columns: Ordered field -> title map, or None for every field
            separator: Exactly one character
            include_header: Whether a header row is written
            owner_id: Identity requesting the export

        Returns:
            Signature of the new job

        Raises:
            InvalidConfigurationError: If any option is invalid; nothing is persisted
        """
        if not owner_id:
            raise InvalidConfigurationError("An export needs an owner")
        ref = self._validate_list_ref(list_ref)
        column_pairs = self._validate_columns(columns)
        self._validate_separator(separator)
        if not isinstance(include_header, bool):
            raise InvalidConfigurationError("include_header must be a boolean")

        source = self.registry.resolve(ref, self.db)
        total = source.count()
        if total < 0:
            raise InvalidConfigurationError(f"List source returned a negative count: {total}")

        now = self.clock()
        job = ExportJob(
            signature=secrets.token_hex(20),
            owner_id=str(owner_id),
            list_ref=ref.model_dump(),
            columns=column_pairs,
            separator=separator,
            include_header=include_header,
            total_steps=total,
            steps_processed=0,
            bytes_written=0,
            status=ExportStatus.QUEUED,
            created_at=now,
            last_updated_at=now,
        )
        job.add_action(ExportAction.REGISTER, now=now)

        try:
            if total == 0:
                # Nothing to page through: an empty file, ready at once
                self.file_store.open(job.signature)
                job.transition_to(ExportStatus.FINISHED, now)
                job.add_action(ExportAction.FINISHED, detail="Empty list", now=now)
            self.repo.create(job)
            self.db.commit()
        except Exception as e:
            logger.error(f"Error creating export job: {e}", exc_info=True)
            self.db.rollback()
            self.file_store.delete(job.signature)
            raise

        logger.info(
            "Registered export job",
            signature=job.signature,
            owner_id=job.owner_id,
            source=ref.source,
            total=total,
        )
        return job.signature

    def get_status(self, signature: str, requester_id: Optional[str]) -> JobView:
        """
        Status view of a job for its owner. Always renders one of: progress,
        download link, or the reason the file is unavailable.
        """
        job = self._load(signature, requester_id)
        link = self._link(job.signature)
        view = {
            "id": job.signature,
            "status": job.status,
            "steps_processed": job.steps_processed,
            "total_steps": job.total_steps,
            "link": link,
        }

        if job.status == ExportStatus.FINISHED:
            view["has_file"] = self.file_store.exists(job.signature)
            if view["has_file"]:
                view["download_link"] = f"{link}/download"
            else:
                view["error_message"] = str(AlreadyConsumedError(job.signature))
        elif job.status == ExportStatus.REJECTED:
            view["error_message"] = job.error_message or CANCELLED_MESSAGE
        else:
            elapsed, remaining = self._estimate(job)
            view["elapsed_seconds"] = elapsed
            view["remaining_seconds"] = remaining

        return JobView(**view)

    def download(self, signature: str, requester_id: Optional[str]) -> Tuple[bytes, str]:
        """
        Hands the finished file to its owner and destroys it.

        Returns:
            Tuple of (content, suggested filename)

        Raises:
            NotReadyError: If the job has not finished
            AlreadyConsumedError: If the file was already downloaded
        """
        job = self._load(signature, requester_id)
        if job.status != ExportStatus.FINISHED:
            raise NotReadyError(job.signature, job.status.value)

        try:
            content = self.file_store.claim(job.signature)
        except FileNotFoundError:
            logger.info("Export already consumed", signature=job.signature)
            raise AlreadyConsumedError(job.signature)

        now = self.clock()
        filename = f"export-{now:%d-%m-%Y-%H-%M}.csv"

        try:
            job.downloaded_at = now
            job.last_updated_at = now
            job.add_action(ExportAction.DOWNLOADED, now=now)
            self.db.commit()
        except Exception as e:
            # The file is gone already; the owner still gets it
            logger.error(f"Failed to record download of {job.signature}: {e}", exc_info=True)
            self.db.rollback()

        logger.info("Export downloaded", signature=job.signature, size=len(content))
        return content, filename

    def cancel(self, signature: str, requester_id: Optional[str]) -> ExportJob:
        """
        Rejects a QUEUED or PROCESSING job so no further tick runs.

        A tick committing between the load and the cancel bumps the job's
        version; the cancel then reloads the job and tries once more.

        Raises:
            InvalidStateTransitionError: If the job already finished or was rejected
            ConcurrentUpdateError: If the job changed again during the retry
        """
        job = self._load(signature, requester_id)
        for attempt in range(1, CANCEL_ATTEMPTS + 1):
            if not job.is_runnable:
                raise InvalidStateTransitionError(job.status.value, ExportStatus.REJECTED.value)

            job.mark_rejected(CANCELLED_MESSAGE, action=ExportAction.CANCELLED, now=self.clock())
            try:
                self.db.commit()
                break
            except StaleDataError:
                self.db.rollback()
                logger.info(
                    "Export job changed while cancelling",
                    signature=job.signature,
                    attempt=attempt,
                )
                job = self.repo.get_by_signature(signature, refresh=True)
        else:
            raise ConcurrentUpdateError(signature)

        self.file_store.delete(job.signature)

        logger.info("Export job cancelled", signature=job.signature, requester_id=requester_id)
        return job

    def list_jobs(
        self,
        owner_id: str,
        page: int = 1,
        per_page: int = 10,
        status: Optional[ExportStatus] = None,
    ) -> Tuple[List[ExportJob], int]:
        """One page of the owner's jobs, newest first, and the total count."""
        return self.repo.list_for_owner(owner_id, page=page, per_page=per_page, status=status)

    def _load(self, signature: str, requester_id: Optional[str]) -> ExportJob:
        job = self.repo.get_by_signature(signature, refresh=True)
        if job is None:
            raise ExportNotFoundError(signature)
        self.access_gate.authorize(job, requester_id)
        return job

    def _link(self, signature: str) -> str:
        return f"{self.link_prefix}/{signature}"

    @staticmethod
    def _estimate(job: ExportJob) -> Tuple[Optional[int], Optional[int]]:
        """
        Elapsed and remaining seconds, extrapolated linearly from the rows
        done so far. Remaining is unknown until at least one row is processed.
        """
        if job.started_at is None:
            return None, None
        elapsed = max(int((job.last_updated_at - job.started_at).total_seconds()), 0)
        if job.steps_processed == 0:
            return elapsed, None
        left = job.total_steps - job.steps_processed
        return elapsed, round((left / job.steps_processed) * elapsed)

    @staticmethod
    def _validate_list_ref(list_ref) -> ListReference:
        if isinstance(list_ref, ListReference):
            return list_ref
        try:
            return ListReference.model_validate(list_ref)
        except ValidationError as e:
            raise InvalidConfigurationError(f"Invalid list reference: {e}") from e

    @staticmethod
    def _validate_separator(separator) -> None:
        if not isinstance(separator, str) or len(separator) != 1:
            raise InvalidConfigurationError(
                f"Separator must be exactly one character, got {separator!r}"
            )
        if separator in FORBIDDEN_SEPARATORS:
            raise InvalidConfigurationError(f"Separator {separator!r} cannot be used")

    @staticmethod
    def _validate_columns(columns: ColumnsArg) -> Optional[List[List[str]]]:
        if columns is None:
            return None
        pairs = list(columns.items()) if isinstance(columns, Mapping) else list(columns)
        if not pairs:
            raise InvalidConfigurationError("Column map must not be empty; use None for all fields")

        validated = []
        for pair in pairs:
            if isinstance(pair, str) or len(pair) != 2:
                raise InvalidConfigurationError(f"Invalid column entry: {pair!r}")
            field, title = pair
            if not isinstance(field, str) or not field:
                raise InvalidConfigurationError(f"Invalid column field: {field!r}")
            if not isinstance(title, str):
                raise InvalidConfigurationError(f"Invalid title for column '{field}'")
            validated.append([field, title])

        fields = [field for field, _ in validated]
        if len(set(fields)) != len(fields):
            raise InvalidConfigurationError("Column map lists a field twice")
        return validated
