"""
Persistence Layer for Meter Readings

Durable, all-or-nothing write path. Supports SQLite (dev) and PostgreSQL
(production).
"""

from .config import StoreConfig, RetryMode, RetryPolicy, PersisterSettings
from .database import Database, Transaction, PreparedStatement
from .metrics import FlushMetrics, get_default_metrics
from .retry import RetryChannel
from .persister import (
    MeasurementPersister,
    NullMode,
    NullPersister,
    DurableWriter,
    build_persister,
    INSERT_METER_DATA,
)

__all__ = [
    "StoreConfig",
    "RetryMode",
    "RetryPolicy",
    "PersisterSettings",
    "Database",
    "Transaction",
    "PreparedStatement",
    "FlushMetrics",
    "get_default_metrics",
    "RetryChannel",
    "MeasurementPersister",
    "NullMode",
    "NullPersister",
    "DurableWriter",
    "build_persister",
    "INSERT_METER_DATA",
]
