from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Sequence

from .frames import DEFAULT_BUFFER_FRAMES, FRAME_LENGTH, max_chunk_size
from .sensors import DEFAULT_SIGNAL_TIMEOUT_SEC, Thresholds, TirePosition

TRANSPORT_KINDS = {"usb", "bluetooth"}
BAUD_RATES = (9600, 19200, 38400, 115200)


@dataclass
class ThresholdConfig:
    target_pressure: float = 32
    target_temperature: float = 75
    pressure_deviation_percent: float = 15.0
    temperature_deviation_percent: float = 20.0

    def to_thresholds(self) -> Thresholds:
        return Thresholds(
            target_pressure=self.target_pressure,
            target_temperature=self.target_temperature,
            pressure_deviation_percent=self.pressure_deviation_percent,
            temperature_deviation_percent=self.temperature_deviation_percent,
        ).validate()


@dataclass
class TransportConfig:
    kind: str = "usb"
    port: str = "/dev/ttyUSB0"
    baudrate: int = 9600
    timeout: float = 1.0
    bluetooth_address: str = ""
    bluetooth_channel: int = 1

    def validate(self) -> "TransportConfig":
        kind = self.kind.lower()
        if kind not in TRANSPORT_KINDS:
            raise ValueError(f"Unsupported transport kind '{self.kind}'")
        if kind == "bluetooth" and not self.bluetooth_address:
            raise ValueError("transport.bluetooth_address is required for bluetooth transport")
        if self.baudrate not in BAUD_RATES:
            raise ValueError(f"Unsupported baudrate {self.baudrate}, expected one of {list(BAUD_RATES)}")
        self.kind = kind
        return self


@dataclass
class DecoderConfig:
    buffer_frames: int = DEFAULT_BUFFER_FRAMES


@dataclass
class HostRuntime:
    queue_maxsize: int = 256
    reconnect_initial_sec: float = 0.5
    reconnect_max_sec: float = 5.0
    stats_log_interval: float = 60.0
    chunk_size: int = 16


@dataclass
class MonitorConfig:
    thresholds: ThresholdConfig = field(default_factory=ThresholdConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)
    decoder: DecoderConfig = field(default_factory=DecoderConfig)
    host: HostRuntime = field(default_factory=HostRuntime)
    positions: Dict[TirePosition, int] = field(default_factory=dict)
    signal_timeout_sec: float = DEFAULT_SIGNAL_TIMEOUT_SEC
    output_csv: Path | None = None


def _load_json(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as fh:
        return json.load(fh)


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {**base}
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            merged[key] = _merge(base[key], value)  # type: ignore[index]
        else:
            merged[key] = value
    return merged


def _parse_positions(data: Dict[str, Any]) -> Dict[TirePosition, int]:
    positions: Dict[TirePosition, int] = {}
    seen: Dict[int, TirePosition] = {}
    for key, raw_id in data.items():
        position = TirePosition.parse(key)
        if position is TirePosition.UNASSIGNED:
            raise ValueError("positions may not map the unassigned slot")
        sensor_id = int(raw_id)
        if not 0 <= sensor_id <= 0xFF:
            raise ValueError(f"positions.{key}: sensor id {sensor_id} outside 0-255")
        if sensor_id in seen:
            raise ValueError(
                f"Sensor {sensor_id} mapped to both {seen[sensor_id].short_name} and {position.short_name}"
            )
        seen[sensor_id] = position
        positions[position] = sensor_id
    return positions


def load_config(path: Path | str | None = None, overrides: Sequence[str] | None = None) -> MonitorConfig:
    """
    Load a TPMS monitor configuration from JSON and apply CLI-style overrides.

    Overrides are expressed as dotted `key=value` pairs, e.g.:
        ["thresholds.target_pressure=35", "transport.kind=bluetooth"]
    """
    data = _load_json(Path(path)) if path is not None else {}
    override_data: Dict[str, Any] = {}
    for override in overrides or []:
        key, raw_value = _parse_override(override)
        _assign_nested(override_data, key, raw_value)
    merged = _merge(data, override_data)
    thresholds_data = merged.get("thresholds") or {}
    transport_data = merged.get("transport") or {}
    decoder_data = merged.get("decoder") or {}
    host_data = merged.get("host") or {}
    thresholds = ThresholdConfig(
        target_pressure=float(thresholds_data.get("target_pressure", 32)),
        target_temperature=float(thresholds_data.get("target_temperature", 75)),
        pressure_deviation_percent=float(thresholds_data.get("pressure_deviation_percent", 15.0)),
        temperature_deviation_percent=float(thresholds_data.get("temperature_deviation_percent", 20.0)),
    )
    thresholds.to_thresholds()
    buffer_frames = int(decoder_data.get("buffer_frames", DEFAULT_BUFFER_FRAMES))
    if buffer_frames < 1:
        raise ValueError("decoder.buffer_frames must be at least 1")
    chunk_size = int(host_data.get("chunk_size", 16))
    chunk_limit = max_chunk_size(FRAME_LENGTH * buffer_frames)
    if not 1 <= chunk_size <= chunk_limit:
        raise ValueError(
            f"host.chunk_size={chunk_size} must be between 1 and {chunk_limit} "
            f"for a {buffer_frames}-frame decoder buffer"
        )
    return MonitorConfig(
        thresholds=thresholds,
        transport=TransportConfig(
            kind=str(transport_data.get("kind", "usb")),
            port=str(transport_data.get("port", "/dev/ttyUSB0")),
            baudrate=int(transport_data.get("baudrate", 9600)),
            timeout=float(transport_data.get("timeout", 1.0)),
            bluetooth_address=str(transport_data.get("bluetooth_address", "")),
            bluetooth_channel=int(transport_data.get("bluetooth_channel", 1)),
        ).validate(),
        decoder=DecoderConfig(buffer_frames=buffer_frames),
        host=HostRuntime(
            queue_maxsize=int(host_data.get("queue_maxsize", 256)),
            reconnect_initial_sec=float(host_data.get("reconnect_initial_sec", 0.5)),
            reconnect_max_sec=float(host_data.get("reconnect_max_sec", 5.0)),
            stats_log_interval=float(host_data.get("stats_log_interval", 60.0)),
            chunk_size=chunk_size,
        ),
        positions=_parse_positions(merged.get("positions") or {}),
        signal_timeout_sec=float(merged.get("signal_timeout_sec", DEFAULT_SIGNAL_TIMEOUT_SEC)),
        output_csv=Path(merged["output_csv"]) if merged.get("output_csv") else None,
    )


def _parse_override(item: str) -> tuple[str, Any]:
    if "=" not in item:
        raise ValueError(f"Override '{item}' must use key=value syntax")
    key, raw_value = item.split("=", 1)
    key = key.strip()
    if not key:
        raise ValueError("Override key may not be empty")
    value = _coerce_value(raw_value.strip())
    return key, value


def _coerce_value(raw: str) -> Any:
    if raw.lower() in {"true", "false"}:
        return raw.lower() == "true"
    try:
        if "." in raw or "e" in raw.lower():
            return float(raw)
        return int(raw)
    except ValueError:
        pass
    if raw.startswith("[") and raw.endswith("]"):
        return json.loads(raw)
    if raw.startswith("{") and raw.endswith("}"):
        return json.loads(raw)
    return raw


def _assign_nested(target: Dict[str, Any], dotted_key: str, value: Any) -> None:
    cursor = target
    parts = dotted_key.split(".")
    for part in parts[:-1]:
        cursor = cursor.setdefault(part, {})
    cursor[parts[-1]] = value
