### exportqueue/exports/access.py

"""
Access control for export jobs.

Authentication happens upstream; the gate only learns who is asking and
checks that the requester owns the job.
"""

from abc import ABC, abstractmethod
from typing import Optional

from fastapi import Request

from exportqueue.core.config import settings
from exportqueue.exports.exceptions import ForbiddenError
from exportqueue.exports.models import ExportJob
from exportqueue.utils.logger import get_logger

logger = get_logger(__name__)


class AccessGate(ABC):
    """Binds export jobs to the identity that requested them."""

    @abstractmethod
    def current_identity(self) -> Optional[str]:
        ...

    def authorize(self, job: ExportJob, requester_id: Optional[str]) -> None:
        if requester_id is None or str(job.owner_id) != str(requester_id):
            logger.warning(
                "Export access denied",
                signature=job.signature,
                requester_id=requester_id,
            )
            raise ForbiddenError(job.signature)


class StaticAccessGate(AccessGate):
    """Gate with a fixed identity, for workers and scripts acting on behalf of a user."""

    def __init__(self, identity: Optional[str]):
        self.identity = identity

    def current_identity(self) -> Optional[str]:
        return self.identity


class HeaderAccessGate(AccessGate):
    """Reads the identity from a header set by the authenticating proxy."""

    def __init__(self, request: Request, header: str = None):
        self.request = request
        self.header = header or settings.identity_header

    def current_identity(self) -> Optional[str]:
        value = self.request.headers.get(self.header)
        return value.strip() if value and value.strip() else None


def get_access_gate(request: Request) -> AccessGate:
    """FastAPI dependency"""
    return HeaderAccessGate(request)
