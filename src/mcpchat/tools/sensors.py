"""
Compressor air blower sensor tools (in-process ``compressor_ai`` server).

Readings live in an in-memory :class:`ReadingStore` seeded with deterministic sample data so the
tool has something to report without a database.
"""

import logging
import random
import threading
from datetime import (
    datetime,
    timedelta,
)
from statistics import mean
from typing import (
    Iterable,
    List,
)

from pydantic import BaseModel

from mcpchat.tools import register_tool

logger = logging.getLogger(__name__)

SERVER_ID = "compressor_ai"
MAX_LIMIT = 50
ORDER_FIELDS = ("created_at", "flow", "temperature", "pressure", "vibration")


class Reading(BaseModel):
    """One sensor sample."""

    id: int
    flow: float
    temperature: float
    pressure: float
    vibration: float
    status: str
    created_at: datetime


def classify(temperature: float, pressure: float, vibration: float) -> str:
    """Derive the operational status from raw values."""
    if temperature > 83 or pressure > 108 or vibration > 0.68:
        return "critical"
    if temperature > 80 or pressure > 105 or vibration > 0.65:
        return "warning"
    return "normal"


class ReadingStore:
    """Thread-safe in-memory collection of readings."""

    def __init__(self, readings: Iterable[Reading] = ()) -> None:
        self._lock = threading.Lock()
        self._readings: List[Reading] = list(readings)

    def add(self, reading: Reading) -> None:
        with self._lock:
            self._readings.append(reading)

    def replace(self, readings: Iterable[Reading]) -> None:
        with self._lock:
            self._readings = list(readings)

    def all(self) -> List[Reading]:
        with self._lock:
            return list(self._readings)


def sample_readings(
    count: int = 100, seed: int = 7, start: datetime | None = None
) -> List[Reading]:
    """Generate *count* plausible readings, one per minute from *start*."""
    rng = random.Random(seed)
    start = start or datetime(2025, 12, 1, 8, 0, 0)
    readings = []
    for i in range(count):
        temperature = round(rng.uniform(65, 85), 2)
        pressure = round(rng.uniform(85, 110), 2)
        vibration = round(rng.uniform(0.3, 0.7), 2)
        readings.append(
            Reading(
                id=i + 1,
                flow=round(rng.uniform(130, 170), 2),
                temperature=temperature,
                pressure=pressure,
                vibration=vibration,
                status=classify(temperature, pressure, vibration),
                created_at=start + timedelta(minutes=i),
            )
        )
    return readings


STORE = ReadingStore(sample_readings())


def _parse_date(value: str, field: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError as exc:
        raise ValueError(f"'{field}' must look like YYYY-MM-DD HH:MM:SS, got {value!r}") from exc


def format_report(readings: List[Reading]) -> str:
    """Render aggregate statistics followed by the individual readings."""
    rule = "-" * 50
    lines = [
        "Compressor Air Blower Readings",
        "=" * 50,
        "",
        "Statistics:",
        f"  Total Readings: {len(readings)}",
        f"  Average Flow: {round(mean(r.flow for r in readings), 2)}",
        f"  Average Temperature: {round(mean(r.temperature for r in readings), 2)}°C",
        f"  Average Pressure: {round(mean(r.pressure for r in readings), 2)} PSI",
        f"  Average Vibration: {round(mean(r.vibration for r in readings), 2)}",
        f"  Max Temperature: {round(max(r.temperature for r in readings), 2)}°C",
        f"  Max Pressure: {round(max(r.pressure for r in readings), 2)} PSI",
        f"  Max Vibration: {round(max(r.vibration for r in readings), 2)}",
        "",
        "Recent Readings:",
        rule,
    ]
    for r in readings:
        lines.append(f"ID: {r.id} | Time: {r.created_at:%Y-%m-%d %H:%M:%S}")
        lines.append(f"  Flow: {r.flow} | Temp: {r.temperature}°C")
        lines.append(f"  Pressure: {r.pressure} PSI | Vibration: {r.vibration}")
        lines.append(f"  Status: {r.status}")
        lines.append(rule)
    return "\n".join(lines) + "\n"


READINGS_SCHEMA = {
    "type": "object",
    "properties": {
        "status": {
            "type": "string",
            "description": "Filter by status (e.g., normal, warning, critical)",
        },
        "from_date": {
            "type": "string",
            "description": "Filter readings from this date (YYYY-MM-DD HH:MM:SS)",
        },
        "to_date": {
            "type": "string",
            "description": "Filter readings to this date (YYYY-MM-DD HH:MM:SS)",
        },
        "order_by": {
            "type": "string",
            "enum": list(ORDER_FIELDS),
            "description": "Field to order by (default: created_at)",
        },
        "order_direction": {
            "type": "string",
            "enum": ["asc", "desc"],
            "description": "Order direction (default: desc)",
        },
        "limit": {
            "type": "integer",
            "minimum": 1,
            "maximum": MAX_LIMIT,
            "description": "Maximum number of readings to return (default: 20, max: 50)",
        },
    },
}


@register_tool(SERVER_ID, "readings", input_schema=READINGS_SCHEMA)
def readings(
    status: str | None = None,
    from_date: str | None = None,
    to_date: str | None = None,
    order_by: str = "created_at",
    order_direction: str = "desc",
    limit: int = 20,
) -> str:
    """
    Retrieve readings from the compressor air blower sensors.
    Returns flow, temperature, pressure, vibration, and status data.
    Supports filtering by status, date range, and limiting results.
    """
    if order_by not in ORDER_FIELDS:
        raise ValueError(f"'order_by' must be one of {', '.join(ORDER_FIELDS)}")
    if order_direction not in ("asc", "desc"):
        raise ValueError("'order_direction' must be 'asc' or 'desc'")

    rows = STORE.all()
    if status:
        rows = [r for r in rows if r.status == status]
    if from_date:
        lower = _parse_date(from_date, "from_date")
        rows = [r for r in rows if r.created_at >= lower]
    if to_date:
        upper = _parse_date(to_date, "to_date")
        rows = [r for r in rows if r.created_at <= upper]

    rows.sort(key=lambda r: getattr(r, order_by), reverse=order_direction == "desc")
    rows = rows[: max(1, min(int(limit), MAX_LIMIT))]

    logger.debug("readings tool matched %d rows", len(rows))
    if not rows:
        return "No readings found matching the criteria."
    return format_report(rows)
