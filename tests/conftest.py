"""
Pytest Configuration and Fixtures
"""

import os
import sys
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from prometheus_client import CollectorRegistry

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

from core.measurement import Measurement
from persistence.database import Database
from persistence.metrics import FlushMetrics
from persistence.retry import RetryChannel

BASE_TIME = datetime(2024, 3, 1, 12, 0, 0)


def make_measurement(offset_seconds: int = 0, meter_id: int = 1, **overrides) -> Measurement:
    """Build a plausible reading `offset_seconds` after BASE_TIME."""
    values = {
        "created": BASE_TIME + timedelta(seconds=offset_seconds),
        "meter_id": meter_id,
        "total_kwh_neg": Decimal("12.345"),
        "total_kwh_pos": Decimal("5432.1") + offset_seconds,
        "total_kwh_t1_pos": Decimal("3000.05"),
        "total_kwh_t2_pos": Decimal("2432.05"),
        "total_p": Decimal("1520.7"),
        "p1": Decimal("500.2"),
        "p2": Decimal("510.3"),
        "p3": Decimal("510.2"),
        "v1": Decimal("230.1"),
        "v2": Decimal("229.8"),
        "v3": Decimal("231.4"),
    }
    values.update(overrides)
    return Measurement(**values)


@pytest.fixture
def measurement_factory():
    """Factory for measurements offset from a fixed base time."""
    return make_measurement


@pytest.fixture
def registry():
    """Isolated prometheus registry."""
    return CollectorRegistry()


@pytest.fixture
def metrics(registry):
    return FlushMetrics(registry=registry)


@pytest.fixture
def retry_channel(metrics):
    channel = RetryChannel(capacity=16, metrics=metrics)
    yield channel
    channel.close()


@pytest.fixture
def temp_db(tmp_path):
    """File-backed SQLite database with the meter_data table."""
    db = Database(database_url=f"sqlite:///{tmp_path / 'meter.db'}")
    db.initialize()

    yield db

    db.close()


def stored_measurements(db: Database):
    """Every committed row, oldest first."""
    rows = db.execute("SELECT * FROM meter_data ORDER BY created_at", read_only=True)
    return [Measurement.from_row(row) for row in rows]


@pytest.fixture
def read_stored():
    """Reader for committed rows, as Measurements."""
    return stored_measurements
