"""
Measurement Persisters

The write path for meter readings: take an unordered batch of immutable
measurements and make it durable all-or-nothing, or raise and hand the batch
to the retry channel.

- NullPersister: discards batches (dry runs, test wiring)
- DurableWriter: one transaction per batch against the relational store
"""

import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional, Tuple

import structlog

from core.errors import (
    CommitError,
    ExecutionError,
    FlushError,
    PreparationError,
    StoreConnectionError,
)
from core.measurement import Batch, Measurement, sorted_batch, validate_batch
from .config import PersisterSettings
from .database import Database
from .metrics import FlushMetrics, get_default_metrics
from .retry import RetryChannel

logger = structlog.get_logger()

INSERT_METER_DATA = """
INSERT INTO meter_data (created_at, meter_id, total_kwh_neg, total_kwh_pos, total_kwh_t1_pos,
                        total_kwh_t2_pos, total_p, p1, p2, p3, v1, v2, v3)
VALUES (:created_at, :meter_id, :total_kwh_neg, :total_kwh_pos, :total_kwh_t1_pos,
        :total_kwh_t2_pos, :total_p, :p1, :p2, :p3, :v1, :v2, :v3)
"""


class MeasurementPersister(ABC):
    """
    Anything that can make a batch of measurements durable.

    flush() returns None when every record is committed and raises a
    FlushError when none is. There is no partial outcome.
    """

    @abstractmethod
    def flush(self, batch: Batch) -> None:
        """Persist the whole batch or raise."""
        pass


class NullMode(Enum):
    """How a NullPersister reports the batches it discards."""
    SILENT = "SILENT"
    VERBOSE = "VERBOSE"


class NullPersister(MeasurementPersister):
    """Discards every batch. Never raises, never touches a store."""

    def __init__(self, mode: NullMode = NullMode.SILENT):
        self.mode = mode

    @property
    def verbose(self) -> bool:
        return self.mode is NullMode.VERBOSE

    def flush(self, batch: Batch) -> None:
        if self.verbose:
            logger.info("persist_skipped", count=len(batch))


class DurableWriter(MeasurementPersister):
    """
    Transactional writer backed by the meter_data table.

    Each flush runs in its own transaction on its own pooled connection, so
    concurrent flushes of disjoint batches commit independently. Rows are
    inserted in ascending `created` order through one prepared statement.

    On any store failure the transaction is rolled back, the caller gets the
    error, and the batch (the caller's records, in the caller's order) is
    offered to the retry channel. The offer never blocks the caller and may
    complete after flush() has returned.
    """

    name = "durable"

    def __init__(
        self,
        database: Database,
        retry_channel: RetryChannel,
        metrics: Optional[FlushMetrics] = None,
    ):
        self.database = database
        self.retry_channel = retry_channel
        self.metrics = metrics or get_default_metrics()

    def flush(self, batch: Batch) -> None:
        snapshot = validate_batch(batch)

        with self.metrics.time_flush(self.name):
            started = time.perf_counter()
            try:
                self._write(sorted_batch(snapshot))
            except FlushError as e:
                self.metrics.record_failure(e.stage)
                logger.error(
                    "flush_failed",
                    stage=e.stage,
                    error=str(e),
                    cause=repr(e.__cause__) if e.__cause__ else None,
                    count=len(snapshot),
                )
                self.retry_channel.offer(snapshot)
                raise

        logger.info(
            "flush_completed",
            count=len(snapshot),
            duration_ms=round((time.perf_counter() - started) * 1000, 3),
        )

    def _write(self, ordered: Tuple[Measurement, ...]) -> None:
        """Insert every row in one transaction; raise the FlushError for the failing stage."""
        count = len(ordered)

        try:
            tx = self.database.begin()
        except Exception as e:
            raise StoreConnectionError(f"Could not begin transaction: {e}", batch_size=count) from e

        with tx:
            try:
                statement = tx.prepare(INSERT_METER_DATA)
            except Exception as e:
                raise PreparationError(f"Could not prepare insert: {e}", batch_size=count) from e

            try:
                with statement:
                    for measurement in ordered:
                        try:
                            statement.execute(measurement.to_params())
                        except Exception as e:
                            raise ExecutionError(
                                f"Insert failed for {measurement.created.isoformat()}: {e}",
                                batch_size=count,
                                created=measurement.created,
                            ) from e
            except FlushError:
                raise
            except Exception as e:
                # Statement release failed after every row went through
                raise ExecutionError(f"Could not release insert statement: {e}", batch_size=count) from e

            try:
                tx.commit()
            except Exception as e:
                raise CommitError(f"Commit failed: {e}", batch_size=count) from e


def build_persister(
    settings: PersisterSettings,
    database: Optional[Database] = None,
    retry_channel: Optional[RetryChannel] = None,
    metrics: Optional[FlushMetrics] = None,
) -> MeasurementPersister:
    """
    Wire the configured persister at startup.

    A dry run gets a NullPersister; otherwise the store is opened, the
    meter_data table created if missing, and a DurableWriter returned.
    """
    if settings.dry_run:
        mode = NullMode.VERBOSE if settings.verbose else NullMode.SILENT
        logger.info("persister_configured", persister="null", mode=mode.value)
        return NullPersister(mode)

    metrics = metrics or get_default_metrics()
    if database is None:
        store = None if settings.database_url else settings.store
        database = Database(database_url=settings.database_url, store=store)
    database.initialize()

    if retry_channel is None:
        retry_channel = RetryChannel.from_policy(settings.retry, metrics=metrics)

    logger.info(
        "persister_configured",
        persister=DurableWriter.name,
        backend=database.backend,
        retry_capacity=retry_channel.capacity,
        retry_mode=retry_channel.mode.value,
    )
    return DurableWriter(database, retry_channel, metrics=metrics)
