"""Synthetic receiver stream utilities."""
from __future__ import annotations

import itertools
from pathlib import Path

import numpy as np

from .receiver.frames import FRAME_LENGTH, FrameDecoder, encode_frame, iterate_binary_stream
from .receiver.processing import ReadingPipeline
from .receiver.sensors import SensorStateEngine
from .reporting import export_report, load_readings_csv, summarize_readings

DEMO_SENSORS = {
    0x11: (32.0, 75.0),
    0x22: (31.0, 78.0),
    0x33: (24.0, 80.0),  # slow leak
    0x44: (33.0, 95.0),
}


def create_demo_stream(
    cycles: int = 40,
    *,
    garbage_prob: float = 0.15,
    corrupt_prob: float = 0.05,
    seed: int = 42,
) -> bytes:
    """Interleave frames from a few sensors with line noise and corrupted checksums."""

    rng = np.random.default_rng(seed)
    stream = bytearray()
    # receiver boot garbage
    stream.extend(rng.integers(0, 256, size=5, dtype=np.uint8).tobytes())
    for cycle in range(cycles):
        for sensor_id, (pressure_base, temp_base) in DEMO_SENSORS.items():
            drift = -0.2 * cycle if sensor_id == 0x33 else 0.0
            pressure = int(np.clip(round(pressure_base + drift + rng.normal(scale=0.6)), 0, 255))
            temperature = int(np.clip(round(temp_base + 0.3 * cycle + rng.normal(scale=1.0)), 0, 255))
            frame = bytearray(encode_frame(sensor_id, pressure, temperature))
            if rng.random() < corrupt_prob:
                frame[-1] ^= 1 << int(rng.integers(0, 8))
            if rng.random() < garbage_prob:
                stream.extend(rng.integers(0, 256, size=int(rng.integers(1, 4)), dtype=np.uint8).tobytes())
            stream.extend(frame)
    return bytes(stream)


def run_demo(out_dir: Path, chunk_size: int = FRAME_LENGTH * 2) -> dict[str, int]:
    out_dir.mkdir(parents=True, exist_ok=True)
    capture_path = out_dir / "demo_capture.bin"
    csv_path = out_dir / "demo_readings.csv"
    capture_path.write_bytes(create_demo_stream())

    ticks = itertools.count(1_700_000_000.0, 0.25)
    engine = SensorStateEngine()
    pipeline = ReadingPipeline(engine, csv_path, clock=lambda: next(ticks))
    decoder = FrameDecoder()
    try:
        with capture_path.open("rb") as handle:
            pipeline.process(decoder.iter_frames(iterate_binary_stream(handle, chunk_size)))
    finally:
        pipeline.close()

    stats = decoder.stats()
    summary = summarize_readings(load_readings_csv(csv_path))
    export_report(summary, out_dir, input_path=capture_path, decoder_stats=stats)
    return stats
