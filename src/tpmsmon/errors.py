"""Exceptions raised by the TPMS monitor."""
from __future__ import annotations


class TpmsError(Exception):
    """Base exception for the TPMS monitor."""


class UnknownSensor(TpmsError, LookupError):
    """Operation requested for a sensor id that has never been observed."""

    def __init__(self, sensor_id: int):
        super().__init__(f"Unknown sensor id {sensor_id}")
        self.sensor_id = sensor_id


class ThresholdOutOfRange(TpmsError, ValueError):
    """Threshold update rejected because one value is outside its allowed range."""

    def __init__(self, field: str, value: float, low: float, high: float):
        super().__init__(f"{field}={value} outside allowed range [{low}, {high}]")
        self.field = field
        self.value = value
        self.low = low
        self.high = high
