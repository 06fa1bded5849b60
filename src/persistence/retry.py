"""
Retry Channel

Hand-off point between the DurableWriter (producer) and an external retry
worker (consumer). A failed batch is offered once, intact and in the caller's
order; the channel never splits, reorders or merges batches.

The channel is bounded. When it is full the batch is dropped and counted,
either at once (RetryMode.DROP) or after waiting up to `offer_timeout`
seconds on a background thread (RetryMode.BLOCK). Either way the caller of
offer() never waits. Batches still on the channel when the process exits are
lost.
"""

import queue
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import List, Optional, Tuple

import structlog

from core.measurement import Batch, Measurement
from .config import RetryMode, RetryPolicy
from .metrics import FlushMetrics

logger = structlog.get_logger()

Snapshot = Tuple[Measurement, ...]


def _resolved(value: bool) -> "Future[bool]":
    future: "Future[bool]" = Future()
    future.set_result(value)
    return future


class RetryChannel:
    """
    Bounded conduit of failed batches.

    Producer side: offer(). Consumer side: get(), drain(), qsize().
    A capacity of zero or less means unbounded.
    """

    def __init__(
        self,
        capacity: int = 1024,
        mode: RetryMode = RetryMode.DROP,
        offer_timeout: float = 5.0,
        max_pending_offers: int = 64,
        metrics: Optional[FlushMetrics] = None,
    ):
        self.capacity = capacity
        self.mode = mode
        self.offer_timeout = offer_timeout
        self.metrics = metrics
        self._queue: "queue.Queue[Snapshot]" = queue.Queue(maxsize=max(capacity, 0))
        self._pending = threading.BoundedSemaphore(max(max_pending_offers, 1))
        self._lock = threading.Lock()
        self._dropped = 0
        self._enqueued = 0
        self._closed = False
        self._executor: Optional[ThreadPoolExecutor] = None
        if mode is RetryMode.BLOCK:
            # One worker keeps hand-offs in arrival order
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="retry-offer")

    @classmethod
    def from_policy(cls, policy: RetryPolicy, metrics: Optional[FlushMetrics] = None) -> "RetryChannel":
        return cls(
            capacity=policy.capacity,
            mode=policy.mode,
            offer_timeout=policy.offer_timeout,
            max_pending_offers=policy.max_pending_offers,
            metrics=metrics,
        )

    @property
    def dropped(self) -> int:
        """Batches dropped since the channel was created."""
        return self._dropped

    @property
    def enqueued(self) -> int:
        return self._enqueued

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    def offer(self, batch: Batch) -> "Future[bool]":
        """
        Offer a failed batch without blocking.

        Returns a future resolving to True once the batch is on the channel,
        or False if it was dropped.
        """
        snapshot = tuple(batch)

        if self._closed:
            self._drop(snapshot, reason="closed")
            return _resolved(False)

        if self._executor is None:
            return _resolved(self._put(snapshot, block=False))

        if not self._pending.acquire(blocking=False):
            self._drop(snapshot, reason="too_many_pending")
            return _resolved(False)

        try:
            future = self._executor.submit(self._hand_off, snapshot)
        except RuntimeError:
            # Executor shut down between the closed check and submit
            self._pending.release()
            self._drop(snapshot, reason="closed")
            return _resolved(False)

        return future

    def _hand_off(self, snapshot: Snapshot) -> bool:
        try:
            return self._put(snapshot, block=True)
        finally:
            self._pending.release()

    def _put(self, snapshot: Snapshot, block: bool) -> bool:
        try:
            if block:
                self._queue.put(snapshot, timeout=self.offer_timeout)
            else:
                self._queue.put_nowait(snapshot)
        except queue.Full:
            self._drop(snapshot, reason="full")
            return False

        with self._lock:
            self._enqueued += 1
        if self.metrics is not None:
            self.metrics.retry_enqueued.inc()
            self.metrics.retry_depth.set(self._queue.qsize())
        logger.debug("retry_batch_enqueued", count=len(snapshot), depth=self._queue.qsize())
        return True

    def _drop(self, snapshot: Snapshot, reason: str) -> None:
        with self._lock:
            self._dropped += 1
            dropped = self._dropped
        if self.metrics is not None:
            self.metrics.retry_dropped.inc()
        logger.warning(
            "retry_batch_dropped",
            reason=reason,
            count=len(snapshot),
            first_created=snapshot[0].created.isoformat() if snapshot else None,
            dropped_total=dropped,
        )

    def get(self, timeout: Optional[float] = None) -> Snapshot:
        """
        Take the next batch, waiting up to `timeout` seconds (forever if None).

        Raises queue.Empty when nothing arrives in time.
        """
        snapshot = self._queue.get(timeout=timeout)
        if self.metrics is not None:
            self.metrics.retry_depth.set(self._queue.qsize())
        return snapshot

    def drain(self) -> List[Snapshot]:
        """Take every batch currently on the channel."""
        batches: List[Snapshot] = []
        while True:
            try:
                batches.append(self._queue.get_nowait())
            except queue.Empty:
                break
        if self.metrics is not None:
            self.metrics.retry_depth.set(self._queue.qsize())
        return batches

    def close(self, wait: bool = True) -> None:
        """Stop accepting offers; with `wait`, let in-flight hand-offs finish."""
        self._closed = True
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
