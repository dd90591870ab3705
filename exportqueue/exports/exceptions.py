# exportqueue/exports/exceptions.py

"""
Export Module Custom Exceptions

Configuration and authorization errors surface to the caller. Errors raised
while a job is being advanced are absorbed by the runner into the job's
REJECTED state.
"""


class ExportError(Exception):
    """Base exception for all export errors"""
    pass


class InvalidConfigurationError(ExportError):
    """Raised when an export is requested with a bad separator, column map or list reference"""
    pass


class ExportNotFoundError(ExportError):
    """Raised when no export job matches a signature."""
    def __init__(self, signature: str = None):
        self.signature = signature
        super().__init__("Export job not found.")


class ForbiddenError(ExportError):
    """Raised when an export job belongs to a different identity."""
    def __init__(self, signature: str = None):
        self.signature = signature
        super().__init__("You are not allowed to access this export job.")


class NotReadyError(ExportError):
    """Raised when a download is attempted before the export has finished."""
    def __init__(self, signature: str, status: str):
        self.signature = signature
        self.status = status
        super().__init__(f"Export not ready yet. Current status: {status}")


class AlreadyConsumedError(ExportError):
    """Raised when the export file has already been downloaded and removed."""
    def __init__(self, signature: str = None):
        self.signature = signature
        super().__init__(
            "This export has already been downloaded. "
            "For security reasons each export can only be downloaded once."
        )


class DataShrankError(ExportError):
    """
    Raised inside the runner when the list returned fewer rows than the
    snapshot promised. Never reaches status or download callers.
    """
    def __init__(self, signature: str, expected: int, processed: int):
        self.signature = signature
        self.expected = expected
        self.processed = processed
        super().__init__(
            f"Source ran out of records after {processed} of {expected} rows; "
            f"the list shrank while exporting."
        )


class InvalidStateTransitionError(ExportError):
    """Raised for an export status change the state machine does not allow."""
    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move export job from {current} to {target}.")


class ConcurrentUpdateError(ExportError):
    """Raised when an export job keeps changing under a request that modifies it."""
    def __init__(self, signature: str = None):
        self.signature = signature
        super().__init__("The export job was updated concurrently. Please try again.")
