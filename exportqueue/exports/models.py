### exportqueue/exports/models.py

"""
Database models for tracking async export jobs.

An export job stores the list definition, CSV options, progress counters and
status of one export. Its action log keeps an audit trail that outlives the
exported file.
"""

from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Dict, List, Optional, Set

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from exportqueue.core.db import Base
from exportqueue.exports.exceptions import InvalidStateTransitionError


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ExportStatus(str, PyEnum):
    """Export job status enumeration"""
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    FINISHED = "FINISHED"
    REJECTED = "REJECTED"


class ExportAction(str, PyEnum):
    """Names written to the export action log"""
    REGISTER = "Register"
    START_PROCESSING = "StartProcessing"
    FINISHED = "Finished"
    REJECTED = "Rejected"
    CANCELLED = "Cancelled"
    DOWNLOADED = "Downloaded"


# FINISHED is reachable from QUEUED only for an export over an empty list
VALID_TRANSITIONS: Dict[ExportStatus, Set[ExportStatus]] = {
    ExportStatus.QUEUED: {
        ExportStatus.PROCESSING,
        ExportStatus.FINISHED,
        ExportStatus.REJECTED,
    },
    ExportStatus.PROCESSING: {
        ExportStatus.FINISHED,
        ExportStatus.REJECTED,
    },
    # Terminal states - no transitions out
    ExportStatus.FINISHED: set(),
    ExportStatus.REJECTED: set(),
}

RUNNABLE_STATUSES = (ExportStatus.QUEUED, ExportStatus.PROCESSING)


class ExportJob(Base):
    """
    Model for tracking async export jobs.

    Identified externally by ``signature`` only; the integer primary key is
    never handed out so job URLs cannot be enumerated.
    """
    __tablename__ = "export_jobs"

    # Primary Key
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    signature: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
        index=True,
        comment="Opaque token used in every export URL"
    )

    owner_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
        comment="Identity that requested the export"
    )

    # Export Configuration
    list_ref: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
        comment="Source name, filters and sort needed to rebuild the list"
    )

    columns: Mapped[Optional[list]] = mapped_column(
        JSON,
        nullable=True,
        comment="Ordered [field, title] pairs; NULL exports every field"
    )

    resolved_fields: Mapped[Optional[list]] = mapped_column(
        JSON,
        nullable=True,
        comment="Field order taken from the first record when columns is NULL"
    )

    separator: Mapped[str] = mapped_column(String(1), nullable=False, default=",")

    include_header: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Progress
    total_steps: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Record count frozen when the job was registered"
    )

    steps_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    bytes_written: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Committed length of the export file"
    )

    # Job Status
    status: Mapped[ExportStatus] = mapped_column(
        Enum(ExportStatus),
        nullable=False,
        default=ExportStatus.QUEUED,
        index=True,
    )

    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    downloaded_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Per-job tick lease
    lease_token: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Bumped on every ORM update; a tick committing over a cancel fails instead of reviving the job
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    actions: Mapped[List["ExportJobAction"]] = relationship(
        "ExportJobAction",
        back_populates="job",
        order_by="ExportJobAction.id",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_runnable(self) -> bool:
        return self.status in RUNNABLE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return not VALID_TRANSITIONS[self.status]

    def transition_to(self, target: ExportStatus, now: Optional[datetime] = None) -> None:
        if target not in VALID_TRANSITIONS[self.status]:
            raise InvalidStateTransitionError(self.status.value, target.value)
        self.status = target
        self.last_updated_at = now or utcnow()

    def add_action(
        self, action: ExportAction, detail: Optional[str] = None, now: Optional[datetime] = None
    ) -> "ExportJobAction":
        entry = ExportJobAction(action=action.value, detail=detail, created_at=now or utcnow())
        self.actions.append(entry)
        return entry

    def mark_processing(self, now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        self.transition_to(ExportStatus.PROCESSING, now)
        self.started_at = now
        self.add_action(ExportAction.START_PROCESSING, now=now)

    def mark_finished(self, now: Optional[datetime] = None) -> None:
        if self.steps_processed != self.total_steps:
            raise InvalidStateTransitionError(self.status.value, ExportStatus.FINISHED.value)
        self.transition_to(ExportStatus.FINISHED, now)
        self.add_action(ExportAction.FINISHED, now=now)

    def mark_rejected(
        self,
        reason: str,
        action: ExportAction = ExportAction.REJECTED,
        now: Optional[datetime] = None,
    ) -> None:
        self.transition_to(ExportStatus.REJECTED, now)
        self.error_message = reason
        self.add_action(action, detail=reason, now=now)

    def record_progress(self, rows: int, nbytes: int, now: Optional[datetime] = None) -> None:
        """Advance the counters after a page was appended to the file."""
        if rows < 0 or self.steps_processed + rows > self.total_steps:
            raise ValueError(
                f"Cannot process {rows} rows: {self.steps_processed}/{self.total_steps} done"
            )
        self.steps_processed += rows
        self.bytes_written += nbytes
        self.last_updated_at = now or utcnow()

    def __repr__(self):
        return (
            f"<ExportJob(signature={self.signature}, status={self.status}, "
            f"steps={self.steps_processed}/{self.total_steps})>"
        )


class ExportJobAction(Base):
    """Audit entry in an export job's action log"""
    __tablename__ = "export_job_actions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    job_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("export_jobs.id", name="fk_export_job_actions_job_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    action: Mapped[str] = mapped_column(String(50), nullable=False)
    detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    job: Mapped["ExportJob"] = relationship("ExportJob", back_populates="actions")

    def __repr__(self):
        return f"<ExportJobAction(job_id={self.job_id}, action={self.action})>"
