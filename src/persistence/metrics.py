"""
Write Path Metrics

Prometheus instruments for the flush path and the retry channel. Each
FlushMetrics owns its instruments on one registry; pass a fresh
CollectorRegistry in tests to keep them isolated.
"""

import threading
import time
from contextlib import contextmanager
from typing import Generator, Optional

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram

FLUSH_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)


class FlushMetrics:
    """Flush latency, failures by stage, and retry channel health."""

    def __init__(self, registry: Optional[CollectorRegistry] = None, namespace: str = "meter"):
        self.registry = registry if registry is not None else REGISTRY

        self.flush_duration = Histogram(
            "persister_flush_duration_seconds",
            "Time spent in one flush call, whatever the outcome",
            ["persister", "outcome"],
            namespace=namespace,
            registry=self.registry,
            buckets=FLUSH_BUCKETS,
        )
        self.flush_failures = Counter(
            "persister_flush_failures_total",
            "Failed flush calls by the stage that failed",
            ["stage"],
            namespace=namespace,
            registry=self.registry,
        )
        self.retry_enqueued = Counter(
            "retry_enqueued_batches_total",
            "Failed batches placed on the retry channel",
            namespace=namespace,
            registry=self.registry,
        )
        self.retry_dropped = Counter(
            "retry_dropped_batches_total",
            "Failed batches dropped because the retry channel was full",
            namespace=namespace,
            registry=self.registry,
        )
        self.retry_depth = Gauge(
            "retry_queue_depth",
            "Batches waiting on the retry channel",
            namespace=namespace,
            registry=self.registry,
        )

    @contextmanager
    def time_flush(self, persister: str) -> Generator[None, None, None]:
        """Observe the duration of the enclosed block, labelled by outcome."""
        start = time.perf_counter()
        outcome = "success"
        try:
            yield
        except BaseException:
            outcome = "failure"
            raise
        finally:
            self.flush_duration.labels(persister=persister, outcome=outcome).observe(
                time.perf_counter() - start
            )

    def record_failure(self, stage: str) -> None:
        self.flush_failures.labels(stage=stage).inc()


_default_metrics: Optional[FlushMetrics] = None
_default_lock = threading.Lock()


def get_default_metrics() -> FlushMetrics:
    """FlushMetrics on the global prometheus registry, created once per process."""
    global _default_metrics
    if _default_metrics is None:
        with _default_lock:
            if _default_metrics is None:
                _default_metrics = FlushMetrics()
    return _default_metrics
