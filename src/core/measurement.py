"""
Meter Measurement Model

One immutable reading of an electrical meter. The `created` timestamp is the
natural ordering key and the primary key of the meter_data table.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, Sequence, Tuple, Union

from .errors import BatchValidationError

Reading = Union[Decimal, int, float, str]

# Column order of the meter_data table
COLUMNS = (
    "created_at",
    "meter_id",
    "total_kwh_neg",
    "total_kwh_pos",
    "total_kwh_t1_pos",
    "total_kwh_t2_pos",
    "total_p",
    "p1",
    "p2",
    "p3",
    "v1",
    "v2",
    "v3",
)

READING_FIELDS = COLUMNS[2:]


def to_decimal(value: Reading) -> Decimal:
    """Normalise a reading to Decimal (floats go through str to keep 230.1 exact)."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise TypeError("Boolean is not a meter reading")
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def normalize_created(created: datetime) -> datetime:
    """
    Aware timestamps become naive UTC.

    The key column is a plain `timestamp`, so one instant must have exactly one
    stored form whatever offset it was written with.
    """
    if created.tzinfo is None or created.utcoffset() is None:
        return created
    return created.astimezone(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class Measurement:
    """A single meter reading."""
    created: datetime
    meter_id: int
    total_kwh_neg: Decimal
    total_kwh_pos: Decimal
    total_kwh_t1_pos: Decimal
    total_kwh_t2_pos: Decimal
    total_p: Decimal
    p1: Decimal
    p2: Decimal
    p3: Decimal
    v1: Decimal
    v2: Decimal
    v3: Decimal

    def __post_init__(self):
        if not isinstance(self.created, datetime):
            raise TypeError(f"created must be a datetime, got {type(self.created).__name__}")
        object.__setattr__(self, "created", normalize_created(self.created))
        object.__setattr__(self, "meter_id", int(self.meter_id))
        for name in READING_FIELDS:
            object.__setattr__(self, name, to_decimal(getattr(self, name)))

    def to_params(self) -> Dict[str, Any]:
        """Bind parameters for the meter_data insert, keyed by column name."""
        params: Dict[str, Any] = {
            "created_at": self.created,
            "meter_id": self.meter_id,
        }
        for name in READING_FIELDS:
            params[name] = getattr(self, name)
        return params

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Measurement":
        created = row["created_at"]
        if isinstance(created, str):
            created = datetime.fromisoformat(created)

        return cls(
            created=created,
            meter_id=row["meter_id"],
            **{name: to_decimal(row[name]) for name in READING_FIELDS},
        )


Batch = Sequence[Measurement]


def sort_key(measurement: Measurement) -> datetime:
    return measurement.created


def sorted_batch(batch: Iterable[Measurement]) -> Tuple[Measurement, ...]:
    """Return a copy of the batch in ascending `created` order."""
    return tuple(sorted(batch, key=sort_key))


def validate_batch(batch: Batch) -> Tuple[Measurement, ...]:
    """
    Reject an empty batch and return an immutable snapshot of it.

    The snapshot keeps the caller's order; it is what a failed flush hands to
    the retry channel.
    """
    snapshot = tuple(batch)
    if not snapshot:
        raise BatchValidationError("No data in batch to flush", batch_size=0)
    return snapshot
