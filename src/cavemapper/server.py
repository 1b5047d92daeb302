"""
WebSocket server for the cave survey odometer.

Exposes the detection coordinator over Flask-SocketIO: sensor samples and
control commands come in as socket events, rotations, calibration results
and depth readings go out as socket events. A mock mode synthesizes a
spinning wheel so the channel can be exercised without sensors.
"""

import logging
import math
import random
import threading
import time
from pathlib import Path
from typing import Optional

from flask import Flask, jsonify
from flask_cors import CORS
from flask_socketio import SocketIO

from .coordinator import CoordinatorConfig, DetectionCoordinator
from .detection import (
    CalibrationResult,
    DetectionMethod,
    InvalidThresholdOrder,
    RotationEvent,
    ScalarSample,
    ThresholdPair,
    VectorSample,
)
from .session_logger import get_session_logger, init_session_logger
from .settings import JsonFileStore, KeyValueStore, MemoryStore
from .telemetry import DepthReading, DepthTelemetry, SerialDepthProbe

logger = logging.getLogger(__name__)

app = Flask(__name__)
CORS(app)
socketio = SocketIO(app, cors_allowed_origins="*", async_mode="threading")

# Global state
coordinator: Optional[DetectionCoordinator] = None
store: Optional[KeyValueStore] = None
telemetry = DepthTelemetry()
probe: Optional[SerialDepthProbe] = None
mock_source: Optional["MockWheelSource"] = None
mock_mode: bool = False
watchdog_thread: Optional[threading.Thread] = None
watchdog_stop_event = threading.Event()


def state_payload() -> dict:
    """Full state for newly connected clients and get_state requests."""
    state = coordinator.snapshot().to_dict() if coordinator else {}
    state["mock_mode"] = mock_mode
    state["depth_m"] = telemetry.depth_m
    state["methods"] = [
        {"value": m.value, "label": m.label, "description": m.description}
        for m in DetectionMethod
    ]
    return state


def emit_error(message: str, kind: str = "error"):
    socketio.emit("error", {"kind": kind, "message": message})


@app.route("/state")
def get_state_route():
    """Current odometer state as JSON."""
    return jsonify(state_payload())


@app.route("/health")
def health():
    """Sensor and probe status."""
    unavailable = coordinator.check_sensor(time.monotonic()) if coordinator else None
    return jsonify({
        "sensor_ok": unavailable is None,
        "sensor_message": str(unavailable) if unavailable else None,
        "probe_connected": probe.is_connected if probe else False,
        "depth_frames_rejected": telemetry.rejected,
    })


# Coordinator callbacks
def on_rotation(event: RotationEvent, distance_m: float, rotation_count: int):
    """Callback when a rotation is counted - emit to all clients."""
    socketio.emit("rotation", {
        "timestamp": event.timestamp,
        "rotation_count": rotation_count,
        "distance_m": round(distance_m, 4),
    })

    session_logger = get_session_logger()
    if session_logger:
        session_logger.log_rotation(event, distance_m, coordinator.method)


def on_calibration(result: CalibrationResult):
    """Callback when a calibration completes, fails or is cancelled."""
    socketio.emit("calibration_result", result.to_dict())

    session_logger = get_session_logger()
    if session_logger:
        session_logger.log_calibration(result)

    if result.ok and store is not None:
        coordinator.save_state(store)


def on_depth_reading(reading: DepthReading):
    """Callback for each valid depth probe frame."""
    socketio.emit("depth", reading.to_dict())

    session_logger = get_session_logger()
    if session_logger:
        session_logger.log_depth(reading)


def setup_coordinator(new_coordinator: DetectionCoordinator,
                      new_store: Optional[KeyValueStore] = None):
    """Install the coordinator the socket handlers operate on."""
    global coordinator, store  # pylint: disable=global-statement

    coordinator = new_coordinator
    store = new_store
    coordinator.add_rotation_listener(on_rotation)
    coordinator.add_calibration_listener(on_calibration)


def _sample_time(data: dict) -> float:
    """Producer timestamp if supplied, else server receive time."""
    t = data.get("t")
    return float(t) if t is not None else time.monotonic()


# Socket handlers
@socketio.on("connect")
def handle_connect():
    """Handle client connection."""
    print("Client connected")
    socketio.emit("session_state", state_payload())


@socketio.on("disconnect")
def handle_disconnect():
    """Handle client disconnection."""
    print("Client disconnected")


@socketio.on("get_state")
def handle_get_state():
    """Get current odometer state."""
    socketio.emit("session_state", state_payload())


@socketio.on("select_method")
def handle_select_method(data):
    """Handle detection method change."""
    try:
        method = DetectionMethod(data.get("method"))
    except ValueError:
        emit_error(f"Unknown detection method: {data.get('method')!r}", "invalid_method")
        return

    previous = coordinator.method
    coordinator.select_method(method)
    if store is not None:
        coordinator.save_state(store)

    session_logger = get_session_logger()
    if session_logger and previous is not method:
        session_logger.log_method_change(previous, method)

    socketio.emit("method_changed", {"method": method.value, "label": method.label})


@socketio.on("start_calibration")
def handle_start_calibration(data=None):
    """Open a calibration window for the active method."""
    duration = (data or {}).get("duration")
    try:
        session = coordinator.start_calibration(float(duration) if duration is not None else None)
    except ValueError as e:
        emit_error(str(e), "invalid_duration")
        return
    socketio.emit("calibration_started", {
        "method": session.method.value,
        "duration": session.duration_s,
    })


@socketio.on("cancel_calibration")
def handle_cancel_calibration():
    """Abort the open calibration; the result is emitted by the listener."""
    coordinator.cancel_calibration()


@socketio.on("set_thresholds")
def handle_set_thresholds(data):
    """Install manually entered thresholds for a hysteresis method."""
    try:
        method = DetectionMethod(data.get("method", coordinator.method.value))
        if method is DetectionMethod.MAGNETIC_PCA:
            emit_error("PCA parameters can only be set by calibration", "invalid_method")
            return
        thresholds = ThresholdPair(low=float(data["low"]), high=float(data["high"]))
    except InvalidThresholdOrder as e:
        emit_error(str(e), "InvalidThresholdOrder")
        return
    except (KeyError, TypeError, ValueError) as e:
        emit_error(f"Invalid thresholds: {e}", "invalid_thresholds")
        return

    coordinator.install_parameters(method, thresholds)
    if store is not None:
        coordinator.save_state(store)
    socketio.emit("thresholds_changed", {"method": method.value, **thresholds.to_dict()})


@socketio.on("set_circumference")
def handle_set_circumference(data):
    """Change the wheel circumference (meters)."""
    try:
        coordinator.set_wheel_circumference(float(data["circumference_m"]))
    except (KeyError, TypeError, ValueError) as e:
        emit_error(f"Invalid circumference: {e}", "invalid_circumference")
        return
    if store is not None:
        coordinator.save_state(store)
    socketio.emit("session_state", state_payload())


@socketio.on("reset_distance")
def handle_reset_distance():
    """Start a new survey leg from zero."""
    coordinator.reset_distance()
    if store is not None:
        coordinator.save_state(store)
    socketio.emit("distance_reset", {"distance_m": 0.0})


@socketio.on("magnetometer_sample")
def handle_magnetometer_sample(data):
    """Feed one magnetometer reading (µT)."""
    try:
        sample = VectorSample(
            timestamp=_sample_time(data),
            x=float(data["x"]),
            y=float(data["y"]),
            z=float(data["z"]),
        )
    except (KeyError, TypeError, ValueError) as e:
        emit_error(f"Malformed magnetometer sample: {e}", "invalid_sample")
        return
    coordinator.feed_sample(sample)


@socketio.on("luminance_sample")
def handle_luminance_sample(data):
    """Feed one camera ROI brightness reading (0-1)."""
    try:
        sample = ScalarSample(timestamp=_sample_time(data), value=float(data["value"]))
    except (KeyError, TypeError, ValueError) as e:
        emit_error(f"Malformed luminance sample: {e}", "invalid_sample")
        return
    coordinator.feed_sample(sample)


@socketio.on("depth_payload")
def handle_depth_payload(data):
    """Decode a depth probe frame relayed by the client as hex."""
    try:
        payload = bytes.fromhex(data["hex"])
    except (KeyError, TypeError, ValueError):
        telemetry.discard()
        return
    reading = telemetry.ingest(payload, timestamp=time.monotonic())
    if reading is not None:
        on_depth_reading(reading)


# Sensor watchdog
def sensor_watchdog_loop(interval: float = 1.0):
    """Periodically report whether the active sensor is delivering samples."""
    last_ok = None
    while not watchdog_stop_event.wait(interval):
        unavailable = coordinator.check_sensor(time.monotonic())
        ok = unavailable is None
        if ok != last_ok:
            socketio.emit("sensor_status", {
                "ok": ok,
                "method": coordinator.method.value,
                "message": str(unavailable) if unavailable else None,
            })
            if unavailable:
                logger.warning(str(unavailable))
            last_ok = ok


def start_watchdog():
    global watchdog_thread  # pylint: disable=global-statement

    if watchdog_thread is not None:
        return
    watchdog_stop_event.clear()
    watchdog_thread = threading.Thread(target=sensor_watchdog_loop, daemon=True)
    watchdog_thread.start()


def stop_watchdog():
    global watchdog_thread  # pylint: disable=global-statement

    watchdog_stop_event.set()
    if watchdog_thread:
        watchdog_thread.join(timeout=2.0)
        watchdog_thread = None


class MockWheelSource:
    """
    Synthetic sensors for a wheel turning at a steady rate.

    The magnetometer sees the Earth field plus a magnet circling in a
    tilted plane; the camera sees a bright opening once per revolution.
    """

    EARTH_FIELD = (22.0, -4.0, 41.0)     # µT
    MAGNET_RADIUS = 30.0                 # µT
    OPENING_FRACTION = 0.2               # Fraction of a revolution the opening is visible

    def __init__(self, target: DetectionCoordinator, revolutions_per_second: float = 1.5,
                 magnetometer_hz: float = 50.0, camera_hz: float = 20.0,
                 noise: float = 0.5):
        self.target = target
        self.revolutions_per_second = revolutions_per_second
        self.magnetometer_hz = magnetometer_hz
        self.camera_hz = camera_hz
        self.noise = noise
        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._start_time = 0.0

        # Orthonormal basis of the magnet's plane, tilted against the device axes
        tilt = math.radians(25.0)
        self._axis_a = (1.0, 0.0, 0.0)
        self._axis_b = (0.0, math.cos(tilt), math.sin(tilt))

    def angle_at(self, t: float) -> float:
        return 2.0 * math.pi * self.revolutions_per_second * (t - self._start_time)

    def magnetometer_sample(self, t: float) -> VectorSample:
        theta = self.angle_at(t)
        c, s = math.cos(theta), math.sin(theta)
        components = [
            self.EARTH_FIELD[i]
            + self.MAGNET_RADIUS * (c * self._axis_a[i] + s * self._axis_b[i])
            + random.gauss(0.0, self.noise)
            for i in range(3)
        ]
        return VectorSample(t, *components)

    def luminance_sample(self, t: float) -> ScalarSample:
        fraction = (self.angle_at(t) / (2.0 * math.pi)) % 1.0
        value = 0.85 if fraction < self.OPENING_FRACTION else 0.12
        value += random.gauss(0.0, 0.01)
        return ScalarSample(t, min(1.0, max(0.0, value)))

    def start(self):
        """Start generating samples."""
        if self._running:
            return
        self._running = True
        self._start_time = time.monotonic()
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()
        print(f"Mock wheel started at {self.revolutions_per_second:.2f} rev/s")

    def stop(self):
        """Stop generating samples."""
        self._running = False
        if self._thread:
            self._thread.join(timeout=2.0)
            self._thread = None

    def _run(self):
        mag_period = 1.0 / self.magnetometer_hz
        cam_period = 1.0 / self.camera_hz
        next_mag = next_cam = time.monotonic()
        while self._running:
            now = time.monotonic()
            if now >= next_mag:
                self.target.feed_sample(self.magnetometer_sample(now))
                next_mag += mag_period
            if now >= next_cam:
                self.target.feed_sample(self.luminance_sample(now))
                next_cam += cam_period
            time.sleep(max(0.0, min(next_mag, next_cam) - time.monotonic()))


def start_probe(port: Optional[str]):
    """Start reading the depth probe in the background."""
    global probe  # pylint: disable=global-statement

    probe = SerialDepthProbe(port=port, telemetry=telemetry)
    probe.start(callback=on_depth_reading)


def stop_probe():
    global probe  # pylint: disable=global-statement

    if probe:
        probe.disconnect()
        probe = None


def main():
    """Run the server."""
    global mock_source, mock_mode  # pylint: disable=global-statement
    import argparse  # pylint: disable=import-outside-toplevel

    parser = argparse.ArgumentParser(description="Cave Mapper Odometer Server")
    parser.add_argument(
        "--mock", "-m", action="store_true", help="Run in mock mode with a synthetic wheel"
    )
    parser.add_argument(
        "--mock-rate", type=float, default=1.5,
        help="Mock wheel speed in revolutions per second (default: 1.5)"
    )
    parser.add_argument(
        "--host", default="0.0.0.0", help="Host to bind to (default: 0.0.0.0)"
    )
    parser.add_argument(
        "--web-port", type=int, default=8080, help="Web server port (default: 8080)"
    )
    parser.add_argument(
        "--method",
        choices=[m.value for m in DetectionMethod],
        help="Detection method (default: last used, else magnetic)"
    )
    parser.add_argument(
        "--circumference", type=float,
        help="Wheel circumference in meters (default: last used, else 0.1178)"
    )
    parser.add_argument(
        "--settings",
        help="Settings file (default: ~/.cavemapper/settings.json)"
    )
    parser.add_argument(
        "--no-persist", action="store_true",
        help="Keep settings in memory only"
    )
    parser.add_argument("--probe-port", help="Serial port for the depth probe")
    parser.add_argument(
        "--session-location", "-l", default="cave",
        help="Location identifier for session logs (e.g. cave or passage name)"
    )
    parser.add_argument(
        "--log-dir",
        help="Directory for session logs (default: ~/cavemapper_sessions)"
    )
    parser.add_argument(
        "--no-logging", action="store_true",
        help="Disable session logging"
    )
    parser.add_argument("--debug", "-d", action="store_true", help="Enable verbose detector logging")
    args = parser.parse_args()

    print("=" * 50)
    print("  Cave Mapper Odometer Server")
    print("=" * 50)
    print()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    settings_store = MemoryStore() if args.no_persist else JsonFileStore(
        Path(args.settings) if args.settings else None
    )
    new_coordinator = DetectionCoordinator(CoordinatorConfig())
    new_coordinator.load_state(settings_store)
    if args.method:
        new_coordinator.select_method(DetectionMethod(args.method))
    if args.circumference:
        new_coordinator.set_wheel_circumference(args.circumference)
    setup_coordinator(new_coordinator, settings_store)

    if not args.no_logging and not args.mock:
        init_session_logger(
            log_dir=Path(args.log_dir) if args.log_dir else None,
            location=args.session_location,
            enabled=True
        )
        print(f"Session logging enabled (location: {args.session_location})")
    else:
        init_session_logger(enabled=False)
        if args.no_logging:
            print("Session logging DISABLED")

    session_logger = get_session_logger()
    if session_logger:
        session_logger.start_session(
            method=new_coordinator.method,
            wheel_circumference_m=new_coordinator.wheel_circumference_m,
            probe_port=args.probe_port,
            config={"mock": args.mock},
        )

    mock_mode = args.mock
    if args.mock:
        mock_source = MockWheelSource(new_coordinator, revolutions_per_second=args.mock_rate)
        mock_source.start()
        print("Running in MOCK mode - no sensors required")

    if args.probe_port:
        start_probe(args.probe_port)

    start_watchdog()

    print(f"Method: {new_coordinator.method.label}, "
          f"circumference: {new_coordinator.wheel_circumference_m:.4f} m")
    print(f"Server starting at http://{args.host}:{args.web_port}")
    print()

    try:
        socketio.run(app, host=args.host, port=args.web_port, debug=False, allow_unsafe_werkzeug=True)
    finally:
        stop_watchdog()
        if mock_source:
            mock_source.stop()
        stop_probe()
        new_coordinator.save_state(settings_store)
        if session_logger:
            session_logger.end_session()


if __name__ == "__main__":
    main()
