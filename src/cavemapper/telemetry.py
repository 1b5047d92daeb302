"""
Depth probe telemetry.

The sonar depth probe sends fixed-size binary frames. Only frames
carrying the depth marker (0x04 at offset 5) are interpreted; anything
else is logged and dropped here, so malformed bytes never reach the
detection engine.

Frame layout (offsets into the payload):
    5      marker, must be 0x04
    6-7    depth, big-endian uint16, centimeters
    12-13  water temperature, big-endian uint16, hundredths of °F (optional)
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol

import serial
import serial.tools.list_ports

logger = logging.getLogger("cavemapper.telemetry")
raw_logger = logging.getLogger("cavemapper.telemetry.raw")

DEPTH_MARKER = 0x04
MARKER_OFFSET = 5
MIN_PAYLOAD_LENGTH = 8
TEMPERATURE_PAYLOAD_LENGTH = 14


@dataclass(frozen=True)
class DepthReading:
    """A decoded depth probe frame."""
    depth_m: float
    temperature_c: Optional[float] = None
    timestamp: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "depth_m": self.depth_m,
            "temperature_c": self.temperature_c,
            "timestamp": self.timestamp,
        }


def _be_uint16(hi: int, lo: int) -> int:
    return (hi << 8) | lo


def decode_depth_payload(payload: bytes, timestamp: Optional[float] = None) -> Optional[DepthReading]:
    """
    Decode one probe payload.

    Args:
        payload: Raw frame bytes
        timestamp: Receive time to attach to the reading

    Returns:
        DepthReading, or None if the payload is too short or lacks the marker
    """
    data = bytes(payload)
    if len(data) < MIN_PAYLOAD_LENGTH:
        logger.debug(f"Depth payload too short ({len(data)} bytes)")
        return None
    if data[MARKER_OFFSET] != DEPTH_MARKER:
        logger.debug(f"Depth payload marker 0x{data[MARKER_OFFSET]:02X} != 0x{DEPTH_MARKER:02X}")
        return None

    depth_m = _be_uint16(data[6], data[7]) / 100.0

    temperature_c = None
    if len(data) >= TEMPERATURE_PAYLOAD_LENGTH:
        temp_f = _be_uint16(data[12], data[13]) / 100.0
        temperature_c = (temp_f - 32.0) * 5.0 / 9.0

    return DepthReading(depth_m=depth_m, temperature_c=temperature_c, timestamp=timestamp)


class DepthTelemetry:
    """
    Latest-value holder for probe readings.

    Thread-safe: a reader thread ingests while other threads poll.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._latest: Optional[DepthReading] = None
        self.accepted = 0
        self.rejected = 0

    def ingest(self, payload: bytes, timestamp: Optional[float] = None) -> Optional[DepthReading]:
        """
        Decode a payload and keep it if valid.

        Returns:
            The new reading, or None if the payload was rejected
        """
        reading = decode_depth_payload(payload, timestamp)
        with self._lock:
            if reading is None:
                self.rejected += 1
                return None
            self._latest = reading
            self.accepted += 1
        return reading

    def discard(self):
        """Count a frame dropped before decoding (e.g. truncated)."""
        with self._lock:
            self.rejected += 1

    @property
    def latest(self) -> Optional[DepthReading]:
        with self._lock:
            return self._latest

    @property
    def depth_m(self) -> Optional[float]:
        reading = self.latest
        return reading.depth_m if reading is not None else None


class ReconnectPolicy(Protocol):
    """Decides how long to wait before reconnect attempt number `attempt`."""

    def next_delay(self, attempt: int) -> Optional[float]:
        """Seconds to wait, or None to give up."""
        ...


class FixedDelayReconnect:
    """Retry after a constant delay, optionally a bounded number of times."""

    def __init__(self, delay_s: float = 2.0, max_attempts: Optional[int] = None):
        if delay_s < 0:
            raise ValueError(f"delay_s must be non-negative, got {delay_s}")
        self.delay_s = delay_s
        self.max_attempts = max_attempts

    def next_delay(self, attempt: int) -> Optional[float]:
        if self.max_attempts is not None and attempt >= self.max_attempts:
            return None
        return self.delay_s


class SerialDepthProbe:
    """
    Reader for a depth probe attached over a serial link.

    Example usage:
        telemetry = DepthTelemetry()
        probe = SerialDepthProbe("/dev/ttyUSB0", telemetry)
        probe.start(callback=lambda reading: print(reading.depth_m))
        ...
        probe.stop()
    """

    DEFAULT_BAUD = 115200
    DEFAULT_TIMEOUT = 1.0
    FRAME_SIZE = 20

    def __init__(
        self,
        port: Optional[str] = None,
        telemetry: Optional[DepthTelemetry] = None,
        baud: int = DEFAULT_BAUD,
        frame_size: int = FRAME_SIZE,
        reconnect: Optional[ReconnectPolicy] = None,
    ):
        """
        Initialize probe reader.

        Args:
            port: Serial port (e.g., '/dev/ttyUSB0'). If None, auto-detect.
            telemetry: Where decoded readings are kept
            baud: Baud rate
            frame_size: Bytes per probe frame
            reconnect: Policy applied after the port drops (default: every 2 s, forever)
        """
        self.port = port
        self.baud = baud
        self.frame_size = frame_size
        self.telemetry = telemetry or DepthTelemetry()
        self.reconnect = reconnect or FixedDelayReconnect()
        self.serial: Optional[serial.Serial] = None
        self._running = False
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._callback: Optional[Callable[[DepthReading], None]] = None

    @staticmethod
    def find_probe_ports() -> List[str]:
        """List serial ports that look like USB serial adapters."""
        ports = []
        for port in serial.tools.list_ports.comports():
            if "USB" in port.device or "ACM" in port.device:
                ports.append(port.device)
        return ports

    @property
    def is_connected(self) -> bool:
        return self.serial is not None and self.serial.is_open

    @property
    def is_running(self) -> bool:
        return self._running

    def connect(self, timeout: float = DEFAULT_TIMEOUT) -> bool:
        """
        Open the serial port.

        Returns:
            True if connection successful

        Raises:
            ConnectionError: if no port is found or it cannot be opened
        """
        if self.port is None:
            ports = self.find_probe_ports()
            if not ports:
                raise ConnectionError("No depth probe found. Specify the serial port manually.")
            self.port = ports[0]

        try:
            self.serial = serial.Serial(
                port=self.port,
                baudrate=self.baud,
                timeout=timeout,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
            )
            self.serial.reset_input_buffer()
        except serial.SerialException as e:
            self.serial = None
            raise ConnectionError(f"Failed to connect to {self.port}: {e}") from e

        logger.info(f"Depth probe connected on {self.port}")
        return True

    def _close_port(self):
        if self.serial is not None:
            if self.serial.is_open:
                self.serial.close()
            self.serial = None

    def disconnect(self):
        """Stop reading and close the port."""
        self.stop()
        self._close_port()

    def read_frame(self) -> Optional[DepthReading]:
        """
        Read and ingest one frame.

        Returns:
            The decoded reading, or None on timeout or a rejected frame

        Raises:
            serial.SerialException: if the port fails mid-read
        """
        if not self.is_connected:
            raise ConnectionError("Depth probe not connected")

        frame = self.serial.read(self.frame_size)
        if not frame:
            return None
        raw_logger.debug(frame.hex())
        if len(frame) < self.frame_size:
            # Partial frame after a timeout; resync on the next read
            self.serial.reset_input_buffer()
            self.telemetry.discard()
            return None
        return self.telemetry.ingest(frame, timestamp=time.monotonic())

    def start(self, callback: Optional[Callable[[DepthReading], None]] = None):
        """
        Start the background reader.

        Args:
            callback: Function called with each valid DepthReading
        """
        if self._running:
            return

        self._callback = callback
        self._running = True
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._read_loop, daemon=True)
        self._thread.start()

    def stop(self):
        """Stop the background reader."""
        self._running = False
        self._stop_event.set()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=2.0)
        self._thread = None
        self._callback = None

    def _read_loop(self):
        """Internal reader loop; reconnects according to the policy."""
        attempt = 0
        while self._running:
            if not self.is_connected:
                try:
                    self.connect()
                    attempt = 0
                except ConnectionError as e:
                    delay = self.reconnect.next_delay(attempt)
                    attempt += 1
                    if delay is None:
                        logger.error(f"Giving up on depth probe after {attempt} attempts: {e}")
                        self._running = False
                        break
                    logger.warning(f"{e}. Retrying in {delay:.1f}s")
                    self._stop_event.wait(delay)
                    continue

            try:
                reading = self.read_frame()
            except serial.SerialException as e:
                logger.warning(f"Depth probe disconnected: {e}")
                self._close_port()
                continue

            if reading is not None and self._callback:
                self._callback(reading)

    def __enter__(self):
        """Context manager entry."""
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()
        return False
