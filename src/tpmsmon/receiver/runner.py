from __future__ import annotations

import enum
import logging
import queue
import socket
import sys
import threading
import time
from pathlib import Path
from typing import Any, BinaryIO, Callable, Dict, List, Optional

import serial
import typer

from .config import HostRuntime, MonitorConfig, TransportConfig, load_config
from .frames import FRAME_LENGTH, DecoderEvent, DecoderEventKind, Frame, FrameDecoder, iterate_binary_stream
from .processing import ReadingPipeline
from .sensors import SensorStateEngine, SensorStatus, SensorUpdate, TirePosition

logger = logging.getLogger(__name__)


class ByteSource:
    """A transport that yields raw receiver bytes in arbitrary chunks."""

    def open(self) -> None:
        raise NotImplementedError

    def read(self, size: int) -> bytes:
        """Return up to ``size`` bytes; an empty result means nothing arrived yet."""
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def describe(self) -> str:
        raise NotImplementedError


class SerialByteSource(ByteSource):
    """USB CDC or UART receiver, 8-N-1."""

    def __init__(self, port: str, baudrate: int = 9600, timeout: float = 1.0):
        self.port = port
        self.baudrate = baudrate
        self.timeout = timeout
        self._handle = None

    def open(self) -> None:
        self._handle = serial.Serial(
            port=self.port,
            baudrate=self.baudrate,
            bytesize=serial.EIGHTBITS,
            parity=serial.PARITY_NONE,
            stopbits=serial.STOPBITS_ONE,
            timeout=self.timeout,
        )

    def read(self, size: int) -> bytes:
        if self._handle is None:
            raise serial.SerialException(f"{self.port} is not open")
        return self._handle.read(size)

    def close(self) -> None:
        if self._handle is not None:
            try:
                self._handle.close()
            finally:
                self._handle = None

    def describe(self) -> str:
        return f"USB at {self.baudrate} baud ({self.port})"


class RfcommByteSource(ByteSource):
    """Bluetooth Serial Port Profile receiver over an RFCOMM socket."""

    def __init__(self, address: str, channel: int = 1, timeout: float = 1.0):
        self.address = address
        self.channel = channel
        self.timeout = timeout
        self._sock: Optional[socket.socket] = None

    def open(self) -> None:
        family = getattr(socket, "AF_BLUETOOTH", None)
        if family is None:
            raise OSError("Bluetooth sockets are not supported on this platform")
        sock = socket.socket(family, socket.SOCK_STREAM, socket.BTPROTO_RFCOMM)
        sock.settimeout(self.timeout)
        try:
            sock.connect((self.address, self.channel))
        except OSError:
            sock.close()
            raise
        self._sock = sock

    def read(self, size: int) -> bytes:
        if self._sock is None:
            raise ConnectionError(f"Bluetooth device {self.address} is not connected")
        try:
            data = self._sock.recv(size)
        except socket.timeout:
            return b""
        if not data:
            raise ConnectionError(f"Bluetooth device {self.address} closed the connection")
        return data

    def close(self) -> None:
        if self._sock is not None:
            try:
                self._sock.close()
            finally:
                self._sock = None

    def describe(self) -> str:
        return f"Bluetooth {self.address} (channel {self.channel})"


def create_byte_source(transport: TransportConfig) -> ByteSource:
    if transport.kind == "bluetooth":
        return RfcommByteSource(transport.bluetooth_address, transport.bluetooth_channel, transport.timeout)
    return SerialByteSource(transport.port, transport.baudrate, transport.timeout)


class ConnectionEvent(str, enum.Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class ReaderThread(threading.Thread):
    """
    Single reader of the byte source. Owns the frame decoder and hands
    validated frames to the host through a bounded queue.
    """

    def __init__(
        self,
        source: ByteSource,
        decoder: FrameDecoder,
        runtime: HostRuntime,
        frame_queue: "queue.Queue[Frame]",
    ) -> None:
        super().__init__(daemon=True)
        self.source = source
        self.decoder = decoder
        self.runtime = runtime
        self.queue = frame_queue
        self._stop_event = threading.Event()
        self._ready_event = threading.Event()
        self._dropped = 0
        self._reconnects = 0
        self._connected_once = False
        self.last_exception: Optional[Exception] = None
        self._callbacks: List[Callable[[ConnectionEvent, str], None]] = []
        self._log = logging.getLogger(__name__)

    def run(self) -> None:
        initial_delay = max(self.runtime.reconnect_initial_sec, 0.01)
        max_delay = max(self.runtime.reconnect_max_sec, initial_delay)
        chunk_size = max(self.runtime.chunk_size, 1)
        backoff = initial_delay
        while not self._stop_event.is_set():
            opened = False
            try:
                self.source.open()
                opened = True
                if self._connected_once:
                    self._reconnects += 1
                    self._log.info("Reconnected to %s", self.source.describe())
                else:
                    self._log.info("Connected to %s", self.source.describe())
                    self._connected_once = True
                self.last_exception = None
                backoff = initial_delay
                self.decoder.reset()
                self._ready_event.set()
                self._notify(ConnectionEvent.CONNECTED, self.source.describe())
                while not self._stop_event.is_set():
                    data = self.source.read(chunk_size)
                    if not data:
                        continue
                    for frame in self.decoder.feed(data):
                        self._emit(frame)
            except (serial.SerialException, OSError) as exc:
                self.last_exception = exc
                self._log.warning("Transport error (%s): %s", self.source.describe(), exc)
                self._notify(ConnectionEvent.ERROR, str(exc))
            finally:
                self._ready_event.clear()
                try:
                    self.source.close()
                except (serial.SerialException, OSError) as exc:
                    self._log.debug("Error closing %s: %s", self.source.describe(), exc)
                if opened:
                    self._notify(ConnectionEvent.DISCONNECTED, self.source.describe())
            if self._stop_event.is_set():
                break
            wait_time = min(backoff, max_delay)
            self._log.info("Reconnecting in %.1fs", wait_time)
            self._stop_event.wait(wait_time)
            backoff = min(backoff * 2, max_delay)

    def stop(self) -> None:
        self._stop_event.set()

    def wait_ready(self, timeout: float = 2.0) -> bool:
        return self._ready_event.wait(timeout)

    def register_callback(self, callback: Callable[[ConnectionEvent, str], None]) -> None:
        self._callbacks.append(callback)

    def _notify(self, event: ConnectionEvent, detail: str) -> None:
        for callback in self._callbacks:
            callback(event, detail)

    def stats(self) -> Dict[str, int]:
        stats = self.decoder.stats()
        stats["dropped"] = self._dropped
        stats["reconnects"] = self._reconnects
        return stats

    def _emit(self, frame: Frame) -> None:
        try:
            self.queue.put(frame, timeout=1.0)
        except queue.Full:
            self._dropped += 1
            self._log.warning("Frame queue full (%d), dropping frame", self.queue.qsize())


class TpmsHost:
    """Host-side orchestrator: transport, decoder, sensor engine and alarms."""

    def __init__(self, config: MonitorConfig, source: Optional[ByteSource] = None):
        self.config = config
        self.source = source
        self.engine = SensorStateEngine(config.thresholds.to_thresholds())
        self.pipeline = ReadingPipeline(self.engine, config.output_csv)
        self.decoder = FrameDecoder(capacity=FRAME_LENGTH * config.decoder.buffer_frames)
        self._pending_positions: Dict[int, TirePosition] = {
            sensor_id: position for position, sensor_id in config.positions.items()
        }
        self._last_status: Dict[int, SensorStatus] = {}
        self.engine.subscribe(self._on_update)
        self.decoder.register_callback(self._on_decoder_event)

    def _on_decoder_event(self, event: DecoderEvent) -> None:
        # overflows are already logged as warnings by the decoder
        if event.kind is DecoderEventKind.CHECKSUM_INVALID:
            logger.info("Dropped frame with bad checksum (%s): %s", event.detail, event.data.hex(" "))

    def _on_update(self, update: SensorUpdate) -> None:
        record = update.record
        if update.created and record.sensor_id in self._pending_positions:
            position = self._pending_positions.pop(record.sensor_id)
            record = self.engine.assign(record.sensor_id, position)
        previous = self._last_status.get(record.sensor_id)
        status = record.status
        self._last_status[record.sensor_id] = status
        if status is previous:
            return
        if record.is_alarm_condition:
            logger.warning("ALARM %s: %s", record.status_description, record.announcement_text)
        elif previous is not None:
            logger.info("Sensor %d status %s: %s", record.sensor_id, status.value, record.announcement_text)

    def run(self) -> None:
        if self.config.transport.port == "-":
            self._run_from_stream(sys.stdin.buffer)
            return

        source = self.source or create_byte_source(self.config.transport)
        frame_queue: "queue.Queue[Frame]" = queue.Queue(maxsize=self.config.host.queue_maxsize)
        reader = ReaderThread(source, self.decoder, self.config.host, frame_queue)
        reader.start()
        processed = 0
        interval_sec = max(float(self.config.host.stats_log_interval), 5.0)
        next_log = time.monotonic() + interval_sec

        def emit_stats() -> None:
            stats = reader.stats()
            active = self.engine.active_sensors(self.config.signal_timeout_sec)
            logger.info(
                "processed=%d sensors=%d active=%d frames=%d checksum_errors=%d overflows=%d "
                "noise_bytes=%d dropped=%d reconnects=%d",
                processed,
                len(self.engine.get_all()),
                len(active),
                stats.get("frames", 0),
                stats.get("checksum_errors", 0),
                stats.get("overflows", 0),
                stats.get("noise_bytes", 0),
                stats.get("dropped", 0),
                stats.get("reconnects", 0),
            )

        try:
            while True:
                try:
                    frame = frame_queue.get(timeout=1.0)
                except queue.Empty:
                    if time.monotonic() >= next_log:
                        emit_stats()
                        next_log = time.monotonic() + interval_sec
                    continue
                self.pipeline.process([frame])
                processed += 1
                if time.monotonic() >= next_log:
                    emit_stats()
                    next_log = time.monotonic() + interval_sec
        except KeyboardInterrupt:
            logger.info("Stopping host (Ctrl+C)")
        finally:
            reader.stop()
            reader.join(timeout=5)
            self.pipeline.close()
            emit_stats()

    def _run_from_stream(self, handle: BinaryIO) -> None:
        frames = self.decoder.iter_frames(iterate_binary_stream(handle, self.config.host.chunk_size))
        try:
            updates = self.pipeline.process(frames)
            stats = self.decoder.stats()
            logger.info(
                "Processed %d readings from %d sensors (checksum_errors=%d overflows=%d noise_bytes=%d)",
                len(updates),
                len(self.engine.get_all()),
                stats.get("checksum_errors", 0),
                stats.get("overflows", 0),
                stats.get("noise_bytes", 0),
            )
        finally:
            self.pipeline.close()


app = typer.Typer(add_completion=False, help="TPMS receiver host.")


@app.command()
def run(
    config_path: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to the monitor config JSON (defaults built in)."
    ),
    port: Optional[str] = typer.Option(
        None, "--port", "-p", help="Serial device. Use '-' to read a capture from stdin."
    ),
    baudrate: Optional[int] = typer.Option(None, "--baud", help="Serial baudrate (9600|19200|38400|115200)."),
    transport: Optional[str] = typer.Option(None, "--transport", "-t", help="Transport kind: usb|bluetooth."),
    bt_address: Optional[str] = typer.Option(None, "--bt-address", help="Bluetooth device address for SPP."),
    output_csv: Optional[Path] = typer.Option(
        None, "--log-csv", help="Write every reading to this CSV (replaced on each run)."
    ),
    override: Optional[List[str]] = typer.Option(
        None,
        "--set",
        help="Override config keys, e.g. --set thresholds.target_pressure=35 --set positions.VFL=17",
    ),
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level."),
) -> None:
    """Run the host: read the receiver, classify sensors, log alarms."""

    logging.basicConfig(
        level=log_level.upper(), format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    overrides: List[str] = []
    option_keys: Dict[str, Any] = {
        "transport.port": port,
        "transport.baudrate": baudrate,
        "transport.kind": transport,
        "transport.bluetooth_address": bt_address,
        "output_csv": output_csv,
    }
    for key, value in option_keys.items():
        if value is not None:
            overrides.append(f"{key}={value}")
    overrides.extend(override or [])
    try:
        cfg = load_config(config_path, overrides or None)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    host = TpmsHost(cfg)
    host.run()
