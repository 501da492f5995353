"""
Utilities for reading a TPMS receiver's 8-byte frame stream.

The subpackage exposes the frame decoder, the sensor state engine,
configuration models and the host orchestration used on the receiver host.
"""

from .config import DecoderConfig, HostRuntime, MonitorConfig, ThresholdConfig, TransportConfig, load_config
from .frames import DecoderEvent, DecoderEventKind, Frame, FrameDecoder, SensorReading, encode_frame, max_chunk_size, xor_checksum
from .processing import ReadingPipeline
from .runner import RfcommByteSource, SerialByteSource, TpmsHost
from .sensors import (
    SensorRecord,
    SensorStateEngine,
    SensorStatus,
    SensorUpdate,
    Thresholds,
    TirePosition,
    classify_status,
    effective_status,
    is_alarm_condition,
    is_stale,
)

__all__ = [
    "DecoderConfig",
    "HostRuntime",
    "MonitorConfig",
    "ThresholdConfig",
    "TransportConfig",
    "load_config",
    "DecoderEvent",
    "DecoderEventKind",
    "Frame",
    "FrameDecoder",
    "SensorReading",
    "encode_frame",
    "max_chunk_size",
    "xor_checksum",
    "ReadingPipeline",
    "RfcommByteSource",
    "SerialByteSource",
    "TpmsHost",
    "SensorRecord",
    "SensorStateEngine",
    "SensorStatus",
    "SensorUpdate",
    "Thresholds",
    "TirePosition",
    "classify_status",
    "effective_status",
    "is_alarm_condition",
    "is_stale",
]
