from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence
import csv


CSV_HEADER = [
    "recorded_at",
    "bus_id",
    "employee_id",
    "lat",
    "lng",
    "accuracy",
    "speed",
    "heading",
]


def _to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_iso8601_utc(value: str) -> datetime:
    text = value.strip()
    if text.lower().endswith("z"):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    else:
        dt = dt.astimezone(timezone.utc)
    return dt


def _fmt(value: Optional[float], digits: int) -> str:
    return "" if value is None else f"{value:.{digits}f}"


def _parse_float(value: str) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


@dataclass
class BusLocationRecord:
    recorded_at: datetime
    bus_id: Optional[str]
    employee_id: Optional[str]
    lat: float
    lng: float
    accuracy: Optional[float] = None
    speed: Optional[float] = None
    heading: Optional[float] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "BusLocationRecord":
        return cls(
            recorded_at=parse_iso8601_utc(payload["timestamp"]),
            bus_id=payload.get("busId"),
            employee_id=payload.get("employeeId"),
            lat=payload["lat"],
            lng=payload["lng"],
            accuracy=payload.get("accuracy"),
            speed=payload.get("speed"),
            heading=payload.get("heading"),
        )

    def to_row(self) -> List[str]:
        return [
            _to_utc(self.recorded_at).isoformat().replace("+00:00", "Z"),
            self.bus_id or "",
            self.employee_id or "",
            f"{self.lat:.6f}",
            f"{self.lng:.6f}",
            _fmt(self.accuracy, 2),
            _fmt(self.speed, 3),
            _fmt(self.heading, 1),
        ]


class BusLocationStorage:
    """Append-only location log, one CSV file per UTC day."""

    def __init__(self, base_dir: Path):
        self.base_dir = base_dir

    def _file_for_date(self, dt: datetime) -> Path:
        return self.base_dir / f"{_to_utc(dt).date().isoformat()}.csv"

    def insert(self, record: BusLocationRecord) -> None:
        self.write_records([record])

    def write_records(self, records: Sequence[BusLocationRecord]) -> None:
        if not records:
            return
        self.base_dir.mkdir(parents=True, exist_ok=True)
        grouped_rows: dict[Path, List[List[str]]] = {}
        for record in records:
            path = self._file_for_date(record.recorded_at)
            grouped_rows.setdefault(path, []).append(record.to_row())

        for path, rows in grouped_rows.items():
            is_new = not path.exists()
            with path.open("a", newline="") as f:
                writer = csv.writer(f)
                if is_new:
                    writer.writerow(CSV_HEADER)
                writer.writerows(rows)

    def query_records(
        self, day: datetime, bus_id: Optional[str] = None
    ) -> List[BusLocationRecord]:
        path = self._file_for_date(day)
        if not path.exists():
            return []
        records: List[BusLocationRecord] = []
        with path.open("r", newline="") as f:
            reader = csv.reader(f)
            for row in reader:
                if len(row) < len(CSV_HEADER) or row[0] == CSV_HEADER[0]:
                    continue
                if bus_id is not None and row[1] != bus_id:
                    continue
                try:
                    recorded_at = parse_iso8601_utc(row[0])
                    lat = float(row[3])
                    lng = float(row[4])
                except ValueError:
                    continue
                records.append(
                    BusLocationRecord(
                        recorded_at=recorded_at,
                        bus_id=row[1] or None,
                        employee_id=row[2] or None,
                        lat=lat,
                        lng=lng,
                        accuracy=_parse_float(row[5]),
                        speed=_parse_float(row[6]),
                        heading=_parse_float(row[7]),
                    )
                )
        records.sort(key=lambda r: r.recorded_at)
        return records


__all__ = ["BusLocationRecord", "BusLocationStorage", "parse_iso8601_utc"]
