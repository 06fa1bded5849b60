"""
Flush Error Taxonomy

Every failure of the write path surfaces as a FlushError subclass. The stage
tells where in the transaction the failure happened; only validation errors
are final, everything else is handed to the retry channel.
"""

from datetime import datetime
from typing import Optional


class FlushError(Exception):
    """Base class for all flush failures."""

    stage = "flush"

    def __init__(self, message: str, batch_size: int = 0):
        super().__init__(message)
        self.batch_size = batch_size


class BatchValidationError(FlushError):
    """Batch rejected before any I/O (e.g. empty batch)."""

    stage = "validate"


class StoreConnectionError(FlushError):
    """Could not begin a transaction: store unreachable or pool exhausted."""

    stage = "begin"


class PreparationError(FlushError):
    """The insert statement failed to prepare."""

    stage = "prepare"


class ExecutionError(FlushError):
    """A row-level insert failed (duplicate key, constraint, lost connection)."""

    stage = "execute"

    def __init__(self, message: str, batch_size: int = 0, created: Optional[datetime] = None):
        super().__init__(message, batch_size)
        self.created = created


class CommitError(FlushError):
    """Commit failed after every row executed."""

    stage = "commit"
