# exportqueue/exports/repository.py

from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import desc, func, or_, select, update
from sqlalchemy.orm import Session

from exportqueue.exports.models import RUNNABLE_STATUSES, ExportJob, ExportStatus
from exportqueue.utils.logger import get_logger

logger = get_logger(__name__)


class ExportJobRepository:
    """
    Data Access Layer for Export Jobs.
    Handles all database interactions for the ExportJob model.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_by_signature(self, signature: str, refresh: bool = False) -> Optional[ExportJob]:
        """
        Fetches a single export job by its signature.
        Returns None if not found. ``refresh`` overwrites any state already
        loaded in the session with the committed row.
        """
        stmt = select(ExportJob).where(ExportJob.signature == signature)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = self.db.execute(stmt)
        return result.scalar_one_or_none()

    def list_for_owner(
        self,
        owner_id: str,
        page: int = 1,
        per_page: int = 10,
        status: Optional[ExportStatus] = None,
    ) -> Tuple[List[ExportJob], int]:
        """
        Fetches one page of an owner's export jobs, newest first,
        together with the total number of matching jobs.
        """
        stmt = select(ExportJob).where(ExportJob.owner_id == owner_id)
        if status:
            stmt = stmt.where(ExportJob.status == status)

        total = self.db.execute(
            select(func.count()).select_from(stmt.subquery())
        ).scalar_one()

        offset = (page - 1) * per_page
        stmt = stmt.order_by(desc(ExportJob.created_at), desc(ExportJob.id)).offset(offset).limit(per_page)
        return list(self.db.execute(stmt).scalars().all()), total

    def list_runnable_signatures(self, limit: int) -> List[str]:
        """
        Signatures of QUEUED and PROCESSING jobs, oldest first.
        Used by the scheduler to pick work for a beat.
        """
        stmt = (
            select(ExportJob.signature)
            .where(ExportJob.status.in_(RUNNABLE_STATUSES))
            .order_by(ExportJob.created_at, ExportJob.id)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def create(self, job: ExportJob) -> ExportJob:
        """
        Adds a new ExportJob record to the session.
        The caller is responsible for committing the transaction.
        """
        self.db.add(job)
        self.db.flush()
        logger.info("Created new ExportJob", signature=job.signature, owner_id=job.owner_id)
        return job

    def acquire_lease(
        self, signature: str, token: str, now: datetime, expires_at: datetime
    ) -> bool:
        """
        Takes the tick lease of a runnable job in one conditional UPDATE and
        commits it. Returns False when another tick holds an unexpired lease
        or the job is no longer runnable.
        """
        stmt = (
            update(ExportJob)
            .where(
                ExportJob.signature == signature,
                ExportJob.status.in_(RUNNABLE_STATUSES),
                or_(
                    ExportJob.lease_token.is_(None),
                    ExportJob.lease_expires_at.is_(None),
                    ExportJob.lease_expires_at < now,
                ),
            )
            .values(lease_token=token, lease_expires_at=expires_at)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        self.db.commit()
        return result.rowcount == 1

    def holds_lease(self, signature: str, token: str) -> bool:
        """Reads the committed lease owner, bypassing the session's identity map."""
        stmt = select(ExportJob.lease_token).where(ExportJob.signature == signature)
        return self.db.execute(stmt).scalar_one_or_none() == token

    def release_lease(self, signature: str, token: str) -> None:
        """Clears a lease still owned by ``token`` and commits."""
        stmt = (
            update(ExportJob)
            .where(ExportJob.signature == signature, ExportJob.lease_token == token)
            .values(lease_token=None, lease_expires_at=None)
            .execution_options(synchronize_session=False)
        )
        self.db.execute(stmt)
        self.db.commit()
