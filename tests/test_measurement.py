"""
Tests for the Measurement Model

Readings are normalised to Decimal, records are immutable, and batches sort
by their creation timestamp.
"""

import dataclasses
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from core.errors import BatchValidationError
from core.measurement import (
    COLUMNS,
    Measurement,
    normalize_created,
    sorted_batch,
    to_decimal,
    validate_batch,
)


class TestReadings:
    """Test reading normalisation."""

    def test_float_keeps_its_printed_value(self):
        """230.1 must not become 230.099999..."""
        assert to_decimal(230.1) == Decimal("230.1")

    def test_int_and_str_accepted(self):
        assert to_decimal(5) == Decimal("5")
        assert to_decimal("12.50") == Decimal("12.50")

    def test_bool_rejected(self):
        with pytest.raises(TypeError):
            to_decimal(True)

    def test_constructor_normalises_readings(self, measurement_factory):
        m = measurement_factory(v1=230.1, p1=500, meter_id="7")

        assert m.v1 == Decimal("230.1")
        assert isinstance(m.p1, Decimal)
        assert m.meter_id == 7

    def test_created_must_be_datetime(self, measurement_factory):
        with pytest.raises(TypeError):
            measurement_factory(created="2024-03-01T12:00:00")


class TestMeasurement:
    """Test the record itself."""

    def test_is_immutable(self, measurement_factory):
        m = measurement_factory()

        with pytest.raises(dataclasses.FrozenInstanceError):
            m.v1 = Decimal("0")

    def test_params_cover_every_column(self, measurement_factory):
        """The insert binds all thirteen columns by name."""
        params = measurement_factory().to_params()

        assert tuple(params.keys()) == COLUMNS
        assert len(COLUMNS) == 13

    def test_params_carry_key_and_values(self, measurement_factory):
        m = measurement_factory(offset_seconds=30)
        params = m.to_params()

        assert params["created_at"] == m.created
        assert params["meter_id"] == 1
        assert params["v3"] == Decimal("231.4")

    def test_from_row_parses_text_columns(self, measurement_factory):
        """SQLite hands back timestamps and decimals as text."""
        m = measurement_factory()
        row = {
            key: (value.isoformat() if isinstance(value, datetime) else str(value))
            for key, value in m.to_params().items()
        }
        row["meter_id"] = m.meter_id

        assert Measurement.from_row(row) == m


class TestBatch:
    """Test batch helpers."""

    def test_empty_batch_rejected(self):
        with pytest.raises(BatchValidationError) as exc_info:
            validate_batch([])

        assert exc_info.value.stage == "validate"

    def test_snapshot_keeps_caller_order(self, measurement_factory):
        batch = [measurement_factory(20), measurement_factory(10)]

        snapshot = validate_batch(batch)

        assert snapshot == tuple(batch)

    def test_sorted_batch_orders_by_created(self, measurement_factory):
        batch = [measurement_factory(30), measurement_factory(10), measurement_factory(20)]

        ordered = sorted_batch(batch)

        assert [m.created for m in ordered] == sorted(m.created for m in batch)
        # Caller's list untouched
        assert batch[0].created > batch[1].created


class TestCreatedNormalisation:
    """One instant has one key, whatever offset it was written with."""

    def test_aware_becomes_naive_utc(self):
        local = datetime(2024, 3, 1, 13, 0, tzinfo=timezone(timedelta(hours=1)))

        assert normalize_created(local) == datetime(2024, 3, 1, 12, 0)

    def test_naive_left_alone(self):
        naive = datetime(2024, 3, 1, 12, 0)

        assert normalize_created(naive) is naive

    def test_same_instant_same_key(self, measurement_factory):
        a = measurement_factory(created=datetime(2024, 3, 1, 12, tzinfo=timezone.utc))
        b = measurement_factory(created=datetime(2024, 3, 1, 13, tzinfo=timezone(timedelta(hours=1))))

        assert a.created == b.created
        assert a.to_params()["created_at"] == b.to_params()["created_at"]
        assert a.created.tzinfo is None

    def test_mixed_batch_sorts(self, measurement_factory):
        """Naive and aware readings in one batch still order by instant."""
        naive = measurement_factory(created=datetime(2024, 3, 1, 12, 0, 30))
        aware = measurement_factory(created=datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc))

        assert sorted_batch([naive, aware]) == (aware, naive)
