"""
Meter Persistence - Core Module

Domain types shared by every persister: the measurement record and the
flush error taxonomy.
"""

from .errors import (
    FlushError,
    BatchValidationError,
    StoreConnectionError,
    PreparationError,
    ExecutionError,
    CommitError,
)
from .measurement import Measurement, Batch, COLUMNS, sorted_batch, validate_batch

__all__ = [
    "Measurement",
    "Batch",
    "COLUMNS",
    "sorted_batch",
    "validate_batch",
    "FlushError",
    "BatchValidationError",
    "StoreConnectionError",
    "PreparationError",
    "ExecutionError",
    "CommitError",
]
