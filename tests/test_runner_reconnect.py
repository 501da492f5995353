from __future__ import annotations

import io
import logging
import queue

import serial

from tpmsmon.receiver.config import HostRuntime, MonitorConfig, load_config
from tpmsmon.receiver.frames import FrameDecoder, encode_frame
from tpmsmon.receiver.runner import (
    ByteSource,
    ConnectionEvent,
    ReaderThread,
    RfcommByteSource,
    SerialByteSource,
    TpmsHost,
    create_byte_source,
)
from tpmsmon.receiver.sensors import SensorStatus, TirePosition


class FakeByteSource(ByteSource):
    def __init__(self, chunks: list[bytes]):
        self.calls = 0
        self.closed = 0
        self._chunks = chunks
        self._pending: list[bytes] = []

    def open(self) -> None:
        self.calls += 1
        if self.calls == 1:
            raise serial.SerialException("mock disconnect")
        # Provide a fresh copy of chunks for each connection
        self._pending = list(self._chunks)

    def read(self, size: int) -> bytes:
        if self._pending:
            return self._pending.pop(0)[:size]
        return b""

    def close(self) -> None:
        self.closed += 1

    def describe(self) -> str:
        return "fake receiver"


def test_reader_reconnects_and_decodes():
    frame = encode_frame(0x21, 32, 75)
    source = FakeByteSource([b"\x00\x01" + frame[:3], frame[3:]])
    runtime = HostRuntime(
        queue_maxsize=4,
        reconnect_initial_sec=0.01,
        reconnect_max_sec=0.02,
        stats_log_interval=1,
        chunk_size=16,
    )
    events = []
    frame_queue: "queue.Queue" = queue.Queue()
    reader = ReaderThread(source, FrameDecoder(), runtime, frame_queue)
    reader.register_callback(lambda event, detail: events.append(event))
    reader.start()
    try:
        decoded = frame_queue.get(timeout=1.0)
        assert decoded.sensor_id == 0x21
        assert source.calls >= 2  # initial failure + successful reconnect
        assert ConnectionEvent.ERROR in events
        assert ConnectionEvent.CONNECTED in events
    finally:
        reader.stop()
        reader.join(timeout=1.0)
    assert not reader.is_alive()
    stats = reader.stats()
    assert stats["frames"] == 1
    assert stats["noise_bytes"] == 2


def test_create_byte_source_by_kind():
    cfg = load_config(overrides=["transport.port=/dev/ttyACM1", "transport.baudrate=19200"])
    source = create_byte_source(cfg.transport)
    assert isinstance(source, SerialByteSource)
    assert source.describe() == "USB at 19200 baud (/dev/ttyACM1)"
    cfg = load_config(
        overrides=["transport.kind=bluetooth", "transport.bluetooth_address=00:11:22:33:44:55"]
    )
    source = create_byte_source(cfg.transport)
    assert isinstance(source, RfcommByteSource)
    assert source.address == "00:11:22:33:44:55"


def test_host_assigns_configured_position_on_discovery():
    cfg = load_config(overrides=["positions.VFL=17"])
    host = TpmsHost(cfg)
    host._run_from_stream(io.BytesIO(encode_frame(17, 32, 75) + encode_frame(18, 32, 75)))
    assert host.engine.get(17).assigned_position is TirePosition.VEHICLE_FRONT_LEFT
    assert host.engine.get(18).assigned_position is TirePosition.UNASSIGNED
    assert host.engine.occupant(TirePosition.VEHICLE_FRONT_LEFT).sensor_id == 17


def test_host_logs_alarm_once_per_transition(caplog):
    host = TpmsHost(MonitorConfig())
    stream = encode_frame(5, 14, 75) * 3 + encode_frame(5, 32, 75)
    with caplog.at_level(logging.INFO, logger="tpmsmon.receiver.runner"):
        host._run_from_stream(io.BytesIO(stream))
    alarms = [record for record in caplog.records if "ALARM" in record.getMessage()]
    assert len(alarms) == 1
    assert "Sensor 5 pressure 14 PSI" in alarms[0].getMessage()
    assert host.engine.get(5).status is SensorStatus.NORMAL


def test_host_stream_writes_reading_log(tmp_path):
    cfg = load_config(overrides=[f"output_csv={tmp_path / 'readings.csv'}"])
    host = TpmsHost(cfg)
    host._run_from_stream(io.BytesIO(encode_frame(1, 30, 70) + b"\xff" + encode_frame(2, 55, 70)))
    lines = (tmp_path / "readings.csv").read_text(encoding="utf-8").splitlines()
    assert lines[0].startswith("received_at,sensor_id")
    assert len(lines) == 3
    assert lines[2].endswith("very_high_pressure,1")


def test_host_logs_checksum_failures(caplog):
    host = TpmsHost(MonitorConfig())
    corrupted = bytearray(encode_frame(6, 32, 75))
    corrupted[7] ^= 0x01
    with caplog.at_level(logging.INFO, logger="tpmsmon.receiver.runner"):
        host._run_from_stream(io.BytesIO(bytes(corrupted) + encode_frame(7, 32, 75)))
    messages = [record.getMessage() for record in caplog.records if record.levelno == logging.INFO]
    assert any("bad checksum" in message and "sensor 6" in message for message in messages)
    assert host.engine.get(6) is None
    assert host.engine.get(7) is not None


def test_reading_log_records_restored_position(tmp_path):
    cfg = load_config(overrides=["positions.VFL=17", f"output_csv={tmp_path / 'readings.csv'}"])
    host = TpmsHost(cfg)
    host._run_from_stream(io.BytesIO(encode_frame(17, 32, 75) + encode_frame(17, 31, 75)))
    rows = (tmp_path / "readings.csv").read_text(encoding="utf-8").splitlines()[1:]
    assert len(rows) == 2
    assert all(row.split(",")[2] == "VFL" for row in rows)
