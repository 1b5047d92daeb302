"""Tests for the WebSocket server."""

import pytest

from cavemapper import server
from cavemapper.coordinator import CoordinatorConfig, DetectionCoordinator
from cavemapper.detection import DetectionMethod, RotationEvent, ThresholdPair
from cavemapper.session_logger import init_session_logger
from cavemapper.settings import MemoryStore, parameters_key


@pytest.fixture
def coordinator():
    coordinator = DetectionCoordinator(CoordinatorConfig(wheel_circumference_m=0.5))
    store = MemoryStore()
    server.setup_coordinator(coordinator, store)
    init_session_logger(enabled=False)
    return coordinator


@pytest.fixture
def client(coordinator):
    client = server.socketio.test_client(server.app)
    yield client
    client.disconnect()


def events_named(client, name):
    return [e["args"][0] if e["args"] else None
            for e in client.get_received() if e["name"] == name]


# =============================================================================
# Tests for Socket Events
# =============================================================================

class TestSocketEvents:
    """Tests for the socket event channel."""

    def test_connect_sends_state(self, client):
        states = events_named(client, "session_state")
        assert states
        assert states[0]["method"] == "magnetic"
        assert len(states[0]["methods"]) == 3
        assert states[0]["signal_quality"] is None

    def test_select_method(self, client, coordinator):
        client.get_received()
        client.emit("select_method", {"method": "optical"})

        assert coordinator.method is DetectionMethod.OPTICAL
        changed = events_named(client, "method_changed")
        assert changed == [{"method": "optical", "label": "Optical"}]
        assert server.store.get("detectionMethod") == "optical"

    def test_select_unknown_method(self, client, coordinator):
        client.get_received()
        client.emit("select_method", {"method": "sonar"})

        assert coordinator.method is DetectionMethod.MAGNETIC_THRESHOLD
        errors = events_named(client, "error")
        assert errors[0]["kind"] == "invalid_method"

    def test_thresholds_and_luminance_rotations(self, client, coordinator):
        client.emit("select_method", {"method": "optical"})
        client.emit("set_thresholds", {"method": "optical", "low": 0.2, "high": 0.8})
        assert coordinator.current_thresholds() == ThresholdPair(0.2, 0.8)
        assert server.store.get(parameters_key("optical")) == {"low": 0.2, "high": 0.8}
        client.get_received()

        t = 0.0
        for _ in range(3):
            for value in (0.9, 0.1):
                client.emit("luminance_sample", {"t": t, "value": value})
                t += 0.1

        rotations = events_named(client, "rotation")
        assert [r["rotation_count"] for r in rotations] == [1, 2, 3]
        assert rotations[-1]["distance_m"] == pytest.approx(1.5)

    def test_rotation_payload_uses_listener_count(self, client, coordinator):
        """The emitted count comes with the distance, not from a later read."""
        client.get_received()
        server.on_rotation(RotationEvent(1.0), 2.5, 5)

        rotation = events_named(client, "rotation")[0]
        assert rotation["rotation_count"] == 5
        assert rotation["distance_m"] == pytest.approx(2.5)
        assert coordinator.rotation_count == 0

    def test_inverted_thresholds_reported(self, client, coordinator):
        client.get_received()
        client.emit("set_thresholds", {"method": "magnetic", "low": 60, "high": 40})

        errors = events_named(client, "error")
        assert errors[0]["kind"] == "InvalidThresholdOrder"
        assert coordinator.current_thresholds() is None

    def test_magnetometer_samples(self, client, coordinator):
        client.emit("set_thresholds", {"method": "magnetic", "low": 40, "high": 60})
        client.get_received()
        for i, z in enumerate([30, 70, 30]):
            client.emit("magnetometer_sample", {"t": i * 0.02, "x": 0, "y": 0, "z": z})

        assert coordinator.rotation_count == 1
        assert len(events_named(client, "rotation")) == 1

    def test_malformed_sample(self, client, coordinator):
        client.get_received()
        client.emit("magnetometer_sample", {"t": 0.0, "x": 1.0})
        assert events_named(client, "error")[0]["kind"] == "invalid_sample"

    def test_calibration_cycle(self, client, coordinator):
        client.emit("select_method", {"method": "optical"})
        client.get_received()

        client.emit("start_calibration", {"duration": 1.0})
        assert coordinator.is_calibrating
        assert events_named(client, "calibration_started") == [{"method": "optical", "duration": 1.0}]

        client.emit("cancel_calibration")
        results = events_named(client, "calibration_result")
        assert results[0]["ok"] is False
        assert results[0]["error"] == "Cancelled"

    def test_reset_distance(self, client, coordinator):
        client.emit("set_thresholds", {"method": "magnetic", "low": 40, "high": 60})
        for i, z in enumerate([70, 30]):
            client.emit("magnetometer_sample", {"t": i * 0.02, "x": 0, "y": 0, "z": z})
        client.emit("reset_distance")

        assert coordinator.current_distance() == 0.0
        assert server.store.get("rotationCount") == 0

    def test_set_circumference(self, client, coordinator):
        client.emit("set_circumference", {"circumference_m": 0.2})
        assert coordinator.wheel_circumference_m == pytest.approx(0.2)

    def test_depth_payload(self, client):
        client.get_received()
        client.emit("depth_payload", {"hex": "00000000000400c8"})
        depth = events_named(client, "depth")
        assert depth[0]["depth_m"] == pytest.approx(2.0)

        client.emit("depth_payload", {"hex": "0000000000050064"})
        assert events_named(client, "depth") == []
        assert server.telemetry.depth_m == pytest.approx(2.0)


# =============================================================================
# Tests for HTTP Routes and Mock Source
# =============================================================================

class TestRoutes:
    """Tests for the JSON routes."""

    def test_state_route(self, coordinator):
        response = server.app.test_client().get("/state")
        assert response.status_code == 200
        assert response.get_json()["wheel_circumference_m"] == pytest.approx(0.5)

    def test_health_route(self, coordinator):
        response = server.app.test_client().get("/health")
        data = response.get_json()
        assert data["sensor_ok"] is False
        assert data["probe_connected"] is False


class TestMockWheelSource:
    """Tests for the synthetic wheel."""

    def test_optical_revolutions(self, coordinator):
        coordinator.select_method(DetectionMethod.OPTICAL)
        coordinator.install_parameters(DetectionMethod.OPTICAL, ThresholdPair(0.3, 0.7))
        source = server.MockWheelSource(coordinator, revolutions_per_second=1.5)

        for i in range(40):
            coordinator.feed_sample(source.luminance_sample(i * 0.1))

        assert coordinator.rotation_count == 6

    def test_pca_calibration_on_mock_field(self, coordinator):
        coordinator.select_method(DetectionMethod.MAGNETIC_PCA)
        source = server.MockWheelSource(coordinator, revolutions_per_second=1.5, noise=0.0)
        coordinator.start_calibration(duration=2.0)

        i = 0
        while coordinator.is_calibrating:
            coordinator.feed_sample(source.magnetometer_sample(i * 0.02))
            i += 1

        result = coordinator.snapshot().last_calibration
        assert result.ok
        assert result.parameters.expected_revolutions == pytest.approx(3.0, abs=0.05)
