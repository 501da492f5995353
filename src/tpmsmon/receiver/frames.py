from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from functools import reduce
from typing import Any, Callable, Dict, Iterable, Iterator, List


SYNC_1 = 0x55
SYNC_2 = 0xAA
FRAME_LENGTH = 0x08
SYNC_PATTERN = bytes([SYNC_1, SYNC_2, FRAME_LENGTH])
DEFAULT_BUFFER_FRAMES = 4


def max_chunk_size(capacity: int) -> int:
    """Largest read that can never overflow a decoder of ``capacity`` bytes."""
    return capacity - (FRAME_LENGTH - 1)


def xor_checksum(data: bytes) -> int:
    return reduce(lambda acc, byte: acc ^ byte, data, 0)


def encode_frame(sensor_id: int, pressure: int, temperature: int, reserved: int = 0) -> bytes:
    """Build a wire frame with a correct XOR checksum."""
    for name, value in (
        ("sensor_id", sensor_id),
        ("pressure", pressure),
        ("temperature", temperature),
        ("reserved", reserved),
    ):
        if not 0 <= value <= 0xFF:
            raise ValueError(f"{name} must fit in one byte, got {value}")
    body = SYNC_PATTERN + bytes([sensor_id, pressure, temperature, reserved])
    return body + bytes([xor_checksum(body)])


@dataclass(frozen=True)
class SensorReading:
    sensor_id: int
    pressure_psi: int
    temperature_f: int
    received_at: float


@dataclass(frozen=True)
class Frame:
    """One 8-byte candidate frame exactly as it was cut from the stream."""

    raw: bytes

    def __post_init__(self) -> None:
        if len(self.raw) != FRAME_LENGTH:
            raise ValueError(f"Frame must be {FRAME_LENGTH} bytes, got {len(self.raw)}")

    @property
    def sensor_id(self) -> int:
        return self.raw[3]

    @property
    def pressure(self) -> int:
        return self.raw[4]

    @property
    def temperature(self) -> int:
        return self.raw[5]

    @property
    def reserved(self) -> int:
        return self.raw[6]

    @property
    def checksum(self) -> int:
        return self.raw[7]

    @property
    def is_valid(self) -> bool:
        return self.raw[:3] == SYNC_PATTERN and xor_checksum(self.raw[:7]) == self.checksum

    def to_reading(self, received_at: float) -> SensorReading:
        if not self.is_valid:
            raise ValueError("Cannot decode a reading from a frame with an invalid checksum")
        return SensorReading(
            sensor_id=self.sensor_id,
            pressure_psi=self.pressure,
            temperature_f=self.temperature,
            received_at=received_at,
        )

    def hex(self) -> str:
        return " ".join(f"{byte:02X}" for byte in self.raw)


class DecoderEventKind(str, enum.Enum):
    CHECKSUM_INVALID = "checksum_invalid"
    BUFFER_OVERFLOW = "buffer_overflow"


@dataclass(frozen=True)
class DecoderEvent:
    kind: DecoderEventKind
    detail: str
    data: bytes = b""


class FrameDecoder:
    """
    Streaming decoder for the receiver's fixed 8-byte frames.

    Bytes are accumulated in a bounded buffer and scanned for the
    0x55 0xAA 0x08 sync pattern. A sync match always consumes a full frame,
    even when its checksum later fails. A delivery that does not fit in the
    buffer resets it; the delivery is discarded and reported.
    """

    def __init__(self, capacity: int = FRAME_LENGTH * DEFAULT_BUFFER_FRAMES):
        if capacity < FRAME_LENGTH:
            raise ValueError(f"Decoder capacity must hold at least one frame ({FRAME_LENGTH} bytes)")
        self.capacity = capacity
        self._buffer = bytearray()
        self._stats: Dict[str, int] = {
            "frames": 0,
            "checksum_errors": 0,
            "overflows": 0,
            "noise_bytes": 0,
        }
        self._callbacks: List[Callable[[DecoderEvent], None]] = []
        self._log = logging.getLogger(__name__)

    def feed(self, chunk: bytes) -> List[Frame]:
        if not chunk:
            return []
        if len(self._buffer) + len(chunk) > self.capacity:
            discarded = len(self._buffer) + len(chunk)
            self._buffer.clear()
            self._stats["overflows"] += 1
            self._log.warning(
                "Frame buffer overflow (%d bytes > capacity %d), resetting", discarded, self.capacity
            )
            self._publish(
                DecoderEvent(
                    kind=DecoderEventKind.BUFFER_OVERFLOW,
                    detail=f"discarded {discarded} bytes",
                    data=bytes(chunk),
                )
            )
            return []
        self._buffer.extend(chunk)
        return list(self._extract_frames())

    def iter_frames(self, chunks: Iterable[bytes]) -> Iterator[Frame]:
        for chunk in chunks:
            yield from self.feed(chunk)

    def _extract_frames(self) -> Iterator[Frame]:
        pos = 0
        try:
            while True:
                start = self._buffer.find(SYNC_PATTERN, pos)
                if start < 0:
                    # Keep only a tail that could still grow into a sync pattern
                    keep_from = max(pos, len(self._buffer) - (len(SYNC_PATTERN) - 1))
                    self._stats["noise_bytes"] += keep_from - pos
                    pos = keep_from
                    break
                self._stats["noise_bytes"] += start - pos
                if len(self._buffer) - start < FRAME_LENGTH:
                    pos = start
                    break
                frame = Frame(bytes(self._buffer[start : start + FRAME_LENGTH]))
                pos = start + FRAME_LENGTH
                if not frame.is_valid:
                    self._stats["checksum_errors"] += 1
                    self._log.debug(
                        "Checksum mismatch (expected=%02X, actual=%02X): %s",
                        xor_checksum(frame.raw[:7]),
                        frame.checksum,
                        frame.hex(),
                    )
                    self._publish(
                        DecoderEvent(
                            kind=DecoderEventKind.CHECKSUM_INVALID,
                            detail=f"sensor {frame.sensor_id}",
                            data=frame.raw,
                        )
                    )
                    continue
                self._stats["frames"] += 1
                yield frame
        finally:
            del self._buffer[:pos]

    def register_callback(self, callback: Callable[[DecoderEvent], None]) -> None:
        self._callbacks.append(callback)

    def _publish(self, event: DecoderEvent) -> None:
        for callback in self._callbacks:
            callback(event)

    def buffered(self) -> int:
        return len(self._buffer)

    def stats(self) -> Dict[str, int]:
        return dict(self._stats)

    def reset(self) -> None:
        self._buffer.clear()


def iterate_binary_stream(handle: Any, chunk_size: int = 16) -> Iterator[bytes]:
    while True:
        chunk = handle.read(chunk_size)
        if not chunk:
            break
        yield chunk
