"""
Sensor state engine: one record per sensor id, status classification and
tire position assignment.
"""
from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional

from ..errors import ThresholdOutOfRange, UnknownSensor
from .frames import SensorReading

logger = logging.getLogger(__name__)

PRESSURE_FLOOR_PSI = 15
PRESSURE_CEILING_PSI = 50
TEMPERATURE_FLOOR_F = 32
TEMPERATURE_CEILING_F = 120
DEFAULT_SIGNAL_TIMEOUT_SEC = 30.0

THRESHOLD_RANGES: Dict[str, tuple[float, float]] = {
    "target_pressure": (10, 100),
    "target_temperature": (0, 150),
    "pressure_deviation_percent": (1, 50),
    "temperature_deviation_percent": (1, 50),
}


class TirePosition(str, enum.Enum):
    VEHICLE_FRONT_LEFT = "VFL"
    VEHICLE_FRONT_RIGHT = "VFR"
    VEHICLE_REAR_LEFT = "VRL"
    VEHICLE_REAR_RIGHT = "VRR"
    TRAILER_FRONT_LEFT = "TFL"
    TRAILER_FRONT_RIGHT = "TFR"
    TRAILER_REAR_LEFT = "TRL"
    TRAILER_REAR_RIGHT = "TRR"
    UNASSIGNED = "---"

    @property
    def short_name(self) -> str:
        return self.value

    @property
    def display_name(self) -> str:
        if self is TirePosition.UNASSIGNED:
            return "Unassigned"
        return self.name.replace("_", " ").title()

    @property
    def index(self) -> int:
        if self is TirePosition.UNASSIGNED:
            return -1
        return list(TirePosition).index(self)

    @classmethod
    def parse(cls, text: str) -> "TirePosition":
        key = text.strip().upper()
        for position in cls:
            if key in (position.value, position.name):
                return position
        raise ValueError(f"Unknown tire position '{text}'")

    @classmethod
    def slots(cls) -> List["TirePosition"]:
        return [position for position in cls if position is not cls.UNASSIGNED]


class SensorStatus(str, enum.Enum):
    DORMANT = "dormant"
    NORMAL = "normal"
    LOW_PRESSURE = "low_pressure"
    HIGH_PRESSURE = "high_pressure"
    VERY_HIGH_PRESSURE = "very_high_pressure"
    COLD_TEMPERATURE = "cold_temperature"
    HOT_TEMPERATURE = "hot_temperature"
    OVERHEATING = "overheating"
    NO_SIGNAL = "no_signal"

    @property
    def description(self) -> str:
        return _STATUS_DESCRIPTIONS[self]


_STATUS_DESCRIPTIONS = {
    SensorStatus.DORMANT: "Dormant (no pressure)",
    SensorStatus.NORMAL: "Normal",
    SensorStatus.LOW_PRESSURE: "Low pressure",
    SensorStatus.HIGH_PRESSURE: "High pressure",
    SensorStatus.VERY_HIGH_PRESSURE: "Very high pressure!",
    SensorStatus.COLD_TEMPERATURE: "Cold",
    SensorStatus.HOT_TEMPERATURE: "Hot",
    SensorStatus.OVERHEATING: "Overheating!",
    SensorStatus.NO_SIGNAL: "No signal",
}

ALARM_STATUSES = frozenset(
    {SensorStatus.LOW_PRESSURE, SensorStatus.VERY_HIGH_PRESSURE, SensorStatus.OVERHEATING}
)


@dataclass(frozen=True)
class Thresholds:
    target_pressure: float = 32
    target_temperature: float = 75
    pressure_deviation_percent: float = 15.0
    temperature_deviation_percent: float = 20.0

    def validate(self) -> "Thresholds":
        for name, (low, high) in THRESHOLD_RANGES.items():
            value = getattr(self, name)
            if not low <= value <= high:
                raise ThresholdOutOfRange(name, value, low, high)
        return self

    @property
    def pressure_min(self) -> float:
        return self.target_pressure * (1 - self.pressure_deviation_percent / 100)

    @property
    def pressure_max(self) -> float:
        return self.target_pressure * (1 + self.pressure_deviation_percent / 100)

    @property
    def temperature_min(self) -> float:
        return self.target_temperature * (1 - self.temperature_deviation_percent / 100)

    @property
    def temperature_max(self) -> float:
        return self.target_temperature * (1 + self.temperature_deviation_percent / 100)


def classify_status(pressure_psi: int, temperature_f: int, thresholds: Thresholds) -> SensorStatus:
    """
    Classify one sample. Pressure checks run entirely before temperature
    checks, and the absolute floor/ceiling checks before the deviation bands.
    """
    if pressure_psi == 0:
        return SensorStatus.DORMANT
    if pressure_psi < PRESSURE_FLOOR_PSI:
        return SensorStatus.LOW_PRESSURE
    if pressure_psi > PRESSURE_CEILING_PSI:
        return SensorStatus.VERY_HIGH_PRESSURE
    if pressure_psi < thresholds.pressure_min:
        return SensorStatus.LOW_PRESSURE
    if pressure_psi > thresholds.pressure_max:
        return SensorStatus.HIGH_PRESSURE
    if temperature_f < TEMPERATURE_FLOOR_F:
        return SensorStatus.COLD_TEMPERATURE
    if temperature_f > TEMPERATURE_CEILING_F:
        return SensorStatus.OVERHEATING
    if temperature_f > thresholds.temperature_max:
        return SensorStatus.HOT_TEMPERATURE
    if temperature_f < thresholds.temperature_min:
        return SensorStatus.COLD_TEMPERATURE
    return SensorStatus.NORMAL


def is_alarm_condition(status: SensorStatus) -> bool:
    return status in ALARM_STATUSES


@dataclass(frozen=True)
class SensorRecord:
    """Immutable snapshot of one sensor's latest known state."""

    sensor_id: int
    pressure_psi: int
    temperature_f: int
    last_signal_at: float
    assigned_position: TirePosition = TirePosition.UNASSIGNED
    thresholds: Thresholds = field(default_factory=Thresholds)

    @property
    def status(self) -> SensorStatus:
        return classify_status(self.pressure_psi, self.temperature_f, self.thresholds)

    @property
    def is_alarm_condition(self) -> bool:
        return is_alarm_condition(self.status)

    @property
    def status_description(self) -> str:
        return self.status.description

    @property
    def announcement_text(self) -> str:
        if self.assigned_position is TirePosition.UNASSIGNED:
            label = f"Sensor {self.sensor_id}"
        else:
            label = self.assigned_position.display_name
        return f"{label} pressure {self.pressure_psi} PSI temperature {self.temperature_f} degrees"

    def has_recent_signal(self, timeout: float, now: Optional[float] = None) -> bool:
        return not is_stale(self, timeout, now)


def is_stale(record: SensorRecord, timeout: float = DEFAULT_SIGNAL_TIMEOUT_SEC, now: Optional[float] = None) -> bool:
    current = time.time() if now is None else now
    return current - record.last_signal_at >= timeout


def effective_status(
    record: SensorRecord, timeout: float = DEFAULT_SIGNAL_TIMEOUT_SEC, now: Optional[float] = None
) -> SensorStatus:
    if is_stale(record, timeout, now):
        return SensorStatus.NO_SIGNAL
    return record.status


@dataclass(frozen=True)
class SensorUpdate:
    record: SensorRecord
    created: bool


class SensorStateEngine:
    """
    Owns the per-sensor record set. Records are stored as immutable snapshots
    behind a lock, so readers on other threads only ever see complete states.
    """

    def __init__(self, thresholds: Optional[Thresholds] = None):
        self._lock = threading.Lock()
        self._records: Dict[int, SensorRecord] = {}
        self._positions: Dict[TirePosition, int] = {}
        self._default_thresholds = (thresholds or Thresholds()).validate()
        self._callbacks: List[Callable[[SensorUpdate], None]] = []

    @property
    def default_thresholds(self) -> Thresholds:
        return self._default_thresholds

    def ingest(self, reading: SensorReading) -> SensorUpdate:
        with self._lock:
            previous = self._records.get(reading.sensor_id)
            if previous is None:
                record = SensorRecord(
                    sensor_id=reading.sensor_id,
                    pressure_psi=reading.pressure_psi,
                    temperature_f=reading.temperature_f,
                    last_signal_at=reading.received_at,
                    thresholds=self._default_thresholds,
                )
            else:
                record = replace(
                    previous,
                    pressure_psi=reading.pressure_psi,
                    temperature_f=reading.temperature_f,
                    last_signal_at=reading.received_at,
                )
            self._records[reading.sensor_id] = record
        update = SensorUpdate(record=record, created=previous is None)
        if update.created:
            logger.info("New TPMS sensor discovered: ID %d", record.sensor_id)
        for callback in self._callbacks:
            callback(update)
        return update

    def get_all(self) -> Dict[int, SensorRecord]:
        with self._lock:
            return dict(self._records)

    def get(self, sensor_id: int) -> Optional[SensorRecord]:
        with self._lock:
            return self._records.get(sensor_id)

    def assign(self, sensor_id: int, position: TirePosition) -> SensorRecord:
        if position is TirePosition.UNASSIGNED:
            raise ValueError("Cannot assign a sensor to the unassigned slot")
        with self._lock:
            record = self._records.get(sensor_id)
            if record is None:
                raise UnknownSensor(sensor_id)
            holder = self._positions.get(position)
            if holder is not None and holder != sensor_id:
                self._records[holder] = replace(
                    self._records[holder], assigned_position=TirePosition.UNASSIGNED
                )
            if record.assigned_position is not TirePosition.UNASSIGNED:
                self._positions.pop(record.assigned_position, None)
            self._positions[position] = sensor_id
            record = replace(record, assigned_position=position)
            self._records[sensor_id] = record
        logger.info("Sensor %d assigned to %s", sensor_id, position.display_name)
        return record

    def assignments(self) -> Dict[TirePosition, int]:
        with self._lock:
            return dict(self._positions)

    def occupant(self, position: TirePosition) -> Optional[SensorRecord]:
        with self._lock:
            sensor_id = self._positions.get(position)
            return None if sensor_id is None else self._records[sensor_id]

    def update_thresholds(
        self,
        target_pressure: float,
        target_temperature: float,
        pressure_deviation_percent: float,
        temperature_deviation_percent: float,
        sensor_id: Optional[int] = None,
    ) -> Thresholds:
        """
        Replace the thresholds of one sensor, or of every sensor and the engine
        default when ``sensor_id`` is None. Nothing changes if any value is
        out of range.
        """
        thresholds = Thresholds(
            target_pressure=target_pressure,
            target_temperature=target_temperature,
            pressure_deviation_percent=pressure_deviation_percent,
            temperature_deviation_percent=temperature_deviation_percent,
        ).validate()
        with self._lock:
            if sensor_id is None:
                self._default_thresholds = thresholds
                for key, record in self._records.items():
                    self._records[key] = replace(record, thresholds=thresholds)
            else:
                record = self._records.get(sensor_id)
                if record is None:
                    raise UnknownSensor(sensor_id)
                self._records[sensor_id] = replace(record, thresholds=thresholds)
        return thresholds

    def stale_sensors(self, timeout: float = DEFAULT_SIGNAL_TIMEOUT_SEC, now: Optional[float] = None) -> List[SensorRecord]:
        return [record for record in self.get_all().values() if is_stale(record, timeout, now)]

    def active_sensors(self, timeout: float = DEFAULT_SIGNAL_TIMEOUT_SEC, now: Optional[float] = None) -> List[SensorRecord]:
        return [record for record in self.get_all().values() if not is_stale(record, timeout, now)]

    def subscribe(self, callback: Callable[[SensorUpdate], None]) -> None:
        self._callbacks.append(callback)
