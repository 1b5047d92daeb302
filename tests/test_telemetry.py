"""Tests for depth probe telemetry."""

from unittest.mock import MagicMock, patch

import pytest
import serial

from cavemapper.telemetry import (
    DepthReading,
    DepthTelemetry,
    FixedDelayReconnect,
    ReconnectPolicy,
    SerialDepthProbe,
    decode_depth_payload,
)


def probe_frame(depth_cm=100, marker=0x04, temp_hundredths_f=None, size=20):
    """Build a probe frame with depth at bytes 6-7."""
    frame = bytearray(size)
    frame[0:2] = b"SF"
    frame[5] = marker
    frame[6] = (depth_cm >> 8) & 0xFF
    frame[7] = depth_cm & 0xFF
    if temp_hundredths_f is not None:
        frame[12] = (temp_hundredths_f >> 8) & 0xFF
        frame[13] = temp_hundredths_f & 0xFF
    return bytes(frame)


# =============================================================================
# Tests for Payload Decoding
# =============================================================================

class TestDecodeDepthPayload:
    """Tests for depth payload decoding."""

    def test_one_meter(self):
        reading = decode_depth_payload(bytes([0, 0, 0, 0, 0, 0x04, 0x00, 0x64]))
        assert reading is not None
        assert reading.depth_m == pytest.approx(1.00)
        assert reading.temperature_c is None

    def test_big_endian(self):
        # 0x0D05 = 3333 cm
        reading = decode_depth_payload(bytes([0, 0, 0, 0, 0, 0x04, 0x0D, 0x05]))
        assert reading.depth_m == pytest.approx(33.33)

    def test_wrong_marker_rejected(self):
        assert decode_depth_payload(bytes([0, 0, 0, 0, 0, 0x05, 0x00, 0x64])) is None

    def test_short_payload_rejected(self):
        assert decode_depth_payload(bytes([0, 0, 0, 0, 0, 0x04, 0x00])) is None
        assert decode_depth_payload(b"") is None

    def test_temperature_when_present(self):
        # 8000 hundredths = 80.00 °F
        reading = decode_depth_payload(probe_frame(depth_cm=250, temp_hundredths_f=8000))
        assert reading.depth_m == pytest.approx(2.5)
        assert reading.temperature_c == pytest.approx(26.667, abs=1e-3)

    def test_timestamp_attached(self):
        reading = decode_depth_payload(probe_frame(), timestamp=12.5)
        assert reading.timestamp == 12.5
        assert reading.to_dict()["timestamp"] == 12.5


class TestDepthTelemetry:
    """Tests for the latest-value holder."""

    def test_keeps_latest(self):
        telemetry = DepthTelemetry()
        telemetry.ingest(probe_frame(depth_cm=100))
        telemetry.ingest(probe_frame(depth_cm=420))
        assert telemetry.depth_m == pytest.approx(4.2)
        assert telemetry.accepted == 2

    def test_rejected_payload_leaves_depth_unchanged(self):
        telemetry = DepthTelemetry()
        telemetry.ingest(bytes([0, 0, 0, 0, 0, 0x04, 0x00, 0x64]))
        assert telemetry.ingest(bytes([0, 0, 0, 0, 0, 0x07, 0xFF, 0xFF])) is None

        assert telemetry.depth_m == pytest.approx(1.00)
        assert telemetry.rejected == 1

    def test_empty(self):
        telemetry = DepthTelemetry()
        assert telemetry.latest is None
        assert telemetry.depth_m is None

    def test_discard_counts(self):
        telemetry = DepthTelemetry()
        telemetry.discard()
        assert telemetry.rejected == 1


# =============================================================================
# Tests for Reconnect Policy
# =============================================================================

class TestFixedDelayReconnect:
    """Tests for the fixed-delay reconnect policy."""

    def test_default_retries_forever(self):
        policy = FixedDelayReconnect()
        assert policy.next_delay(0) == 2.0
        assert policy.next_delay(1000) == 2.0

    def test_bounded_attempts(self):
        policy = FixedDelayReconnect(delay_s=0.5, max_attempts=3)
        assert [policy.next_delay(i) for i in range(4)] == [0.5, 0.5, 0.5, None]

    def test_negative_delay(self):
        with pytest.raises(ValueError):
            FixedDelayReconnect(delay_s=-1.0)

    def test_custom_policy(self):
        """Any object with next_delay works as a policy."""

        class Backoff:
            def next_delay(self, attempt):
                return min(0.1 * 2 ** attempt, 5.0)

        policy: ReconnectPolicy = Backoff()
        probe = SerialDepthProbe(port="/dev/null", reconnect=policy)
        assert probe.reconnect.next_delay(3) == pytest.approx(0.8)


# =============================================================================
# Tests for Serial Probe
# =============================================================================

class TestSerialDepthProbe:
    """Tests for the serial depth probe reader."""

    def test_connect_and_read(self):
        port = MagicMock()
        port.is_open = True
        port.read.return_value = probe_frame(depth_cm=1234)

        with patch("cavemapper.telemetry.serial.Serial", return_value=port) as serial_cls:
            probe = SerialDepthProbe(port="/dev/ttyUSB0")
            assert probe.connect()
            reading = probe.read_frame()

        assert serial_cls.call_args.kwargs["port"] == "/dev/ttyUSB0"
        assert isinstance(reading, DepthReading)
        assert reading.depth_m == pytest.approx(12.34)
        assert probe.telemetry.depth_m == pytest.approx(12.34)
        port.read.assert_called_with(SerialDepthProbe.FRAME_SIZE)

    def test_connect_failure(self):
        with patch("cavemapper.telemetry.serial.Serial",
                   side_effect=serial.SerialException("no such port")):
            probe = SerialDepthProbe(port="/dev/ttyUSB9")
            with pytest.raises(ConnectionError, match="ttyUSB9"):
                probe.connect()
        assert not probe.is_connected

    def test_no_port_found(self):
        with patch("cavemapper.telemetry.serial.tools.list_ports.comports", return_value=[]):
            probe = SerialDepthProbe()
            with pytest.raises(ConnectionError, match="No depth probe found"):
                probe.connect()

    def test_find_probe_ports(self):
        usb = MagicMock(device="/dev/ttyUSB0")
        builtin = MagicMock(device="/dev/ttyS0")
        with patch("cavemapper.telemetry.serial.tools.list_ports.comports",
                   return_value=[usb, builtin]):
            assert SerialDepthProbe.find_probe_ports() == ["/dev/ttyUSB0"]

    def test_partial_frame_discarded(self):
        probe = SerialDepthProbe(port="/dev/ttyUSB0")
        probe.serial = MagicMock(is_open=True)
        probe.serial.read.return_value = probe_frame()[:9]

        assert probe.read_frame() is None
        assert probe.telemetry.rejected == 1
        probe.serial.reset_input_buffer.assert_called_once()

    def test_timeout_returns_none(self):
        probe = SerialDepthProbe(port="/dev/ttyUSB0")
        probe.serial = MagicMock(is_open=True)
        probe.serial.read.return_value = b""
        assert probe.read_frame() is None
        assert probe.telemetry.rejected == 0

    def test_read_without_connection(self):
        probe = SerialDepthProbe(port="/dev/ttyUSB0")
        with pytest.raises(ConnectionError):
            probe.read_frame()

    def test_gives_up_per_policy(self):
        with patch("cavemapper.telemetry.serial.Serial",
                   side_effect=serial.SerialException("unplugged")) as serial_cls:
            probe = SerialDepthProbe(port="/dev/ttyUSB0",
                                     reconnect=FixedDelayReconnect(delay_s=0.0, max_attempts=2))
            probe.start()
            probe._thread.join(timeout=5.0)

        assert not probe.is_running
        assert serial_cls.call_count == 3

    def test_callback_receives_readings(self):
        port = MagicMock()
        port.is_open = True
        received = []

        def read(size):
            if received:
                probe._running = False
            return probe_frame(depth_cm=300)

        port.read.side_effect = read

        with patch("cavemapper.telemetry.serial.Serial", return_value=port):
            probe = SerialDepthProbe(port="/dev/ttyUSB0")
            probe.start(callback=received.append)
            probe._thread.join(timeout=5.0)

        assert received[0].depth_m == pytest.approx(3.0)

    def test_reconnects_after_port_error(self):
        port = MagicMock()
        port.is_open = True
        reads = iter([serial.SerialException("glitch"), probe_frame(depth_cm=150)])
        received = []

        def read(size):
            item = next(reads, None)
            if item is None:
                probe._running = False
                return b""
            if isinstance(item, Exception):
                raise item
            return item

        port.read.side_effect = read

        with patch("cavemapper.telemetry.serial.Serial", return_value=port) as serial_cls:
            probe = SerialDepthProbe(port="/dev/ttyUSB0",
                                     reconnect=FixedDelayReconnect(delay_s=0.0))
            probe.start(callback=received.append)
            probe._thread.join(timeout=5.0)

        assert serial_cls.call_count == 2
        assert [r.depth_m for r in received] == [pytest.approx(1.5)]

    def test_context_manager(self):
        port = MagicMock()
        port.is_open = True
        with patch("cavemapper.telemetry.serial.Serial", return_value=port):
            with SerialDepthProbe(port="/dev/ttyUSB0") as probe:
                assert probe.is_connected
        port.close.assert_called_once()
        assert probe.serial is None
