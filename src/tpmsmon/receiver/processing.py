from __future__ import annotations

import csv
import time
from dataclasses import replace
from pathlib import Path
from typing import Callable, Iterable, List, Optional, TextIO

from .frames import Frame
from .sensors import SensorStateEngine, SensorUpdate

READING_FIELDS = [
    "received_at",
    "sensor_id",
    "position",
    "pressure_psi",
    "temperature_f",
    "status",
    "alarm",
]


class CsvLogger:
    """
    Lazily creates a CSV writer when the first update arrives. Keeping writer
    creation lazy avoids touching the filesystem during dry runs or tests.
    """

    def __init__(self, path: Path):
        self.path = path
        self._handle: Optional[csv.DictWriter[str]] = None
        self._file_handle: Optional[TextIO] = None

    def append(self, update: SensorUpdate) -> None:
        if self._handle is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._file_handle = self.path.open("w", newline="", encoding="utf-8")
            self._handle = csv.DictWriter(self._file_handle, fieldnames=READING_FIELDS)
            self._handle.writeheader()
        record = update.record
        self._handle.writerow(
            {
                "received_at": f"{record.last_signal_at:.3f}",
                "sensor_id": record.sensor_id,
                "position": record.assigned_position.short_name,
                "pressure_psi": record.pressure_psi,
                "temperature_f": record.temperature_f,
                "status": record.status.value,
                "alarm": int(record.is_alarm_condition),
            }
        )
        if self._file_handle is not None:
            self._file_handle.flush()

    def close(self) -> None:
        if self._file_handle:
            self._file_handle.close()
            self._file_handle = None
            self._handle = None


class ReadingPipeline:
    """
    Glue that timestamps validated frames, feeds them to the sensor engine and
    optionally logs every resulting update.
    """

    def __init__(
        self,
        engine: SensorStateEngine,
        output_csv: Optional[Path] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.engine = engine
        self.clock = clock
        self.logger = CsvLogger(output_csv) if output_csv else None

    def process(self, frames: Iterable[Frame]) -> List[SensorUpdate]:
        updates: List[SensorUpdate] = []
        for frame in frames:
            update = self.engine.ingest(frame.to_reading(self.clock()))
            # subscribers may have changed the record (e.g. restored its position)
            current = self.engine.get(update.record.sensor_id)
            if current is not None and current != update.record:
                update = replace(update, record=current)
            updates.append(update)
            if self.logger:
                self.logger.append(update)
        return updates

    def close(self) -> None:
        if self.logger:
            self.logger.close()
