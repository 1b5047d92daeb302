"""Tests for settings persistence and session logging."""

import json
import logging
from unittest.mock import patch

import pytest

from cavemapper.detection import (
    CalibrationResult,
    DegenerateRange,
    DetectionMethod,
    RotationEvent,
    ThresholdPair,
)
from cavemapper.session_logger import SessionLogger, get_session_logger, init_session_logger
from cavemapper.settings import JsonFileStore, MemoryStore, parameters_key
from cavemapper.telemetry import DepthReading


# =============================================================================
# Tests for Settings Stores
# =============================================================================

class TestMemoryStore:
    """Tests for the in-process store."""

    def test_get_set_delete(self):
        store = MemoryStore({"a": 1})
        assert store.get("a") == 1
        assert store.get("missing", "default") == "default"
        store.set("b", [1, 2])
        store.delete("a")
        store.delete("never-set")
        assert store.as_dict() == {"b": [1, 2]}

    def test_update(self):
        store = MemoryStore({"a": 1, "b": 2})
        store.update({"a": 10, "c": 3}, removed=["b", "never-set"])
        assert store.as_dict() == {"a": 10, "c": 3}

    def test_parameters_key(self):
        assert parameters_key("optical") == "calibration.optical"


class TestJsonFileStore:
    """Tests for the JSON file store."""

    def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "nested" / "settings.json"
        JsonFileStore(path).set("detectionMethod", "magnetic_pca")
        assert JsonFileStore(path).get("detectionMethod") == "magnetic_pca"

    def test_delete(self, tmp_path):
        path = tmp_path / "settings.json"
        store = JsonFileStore(path)
        store.set("rotationCount", 12)
        store.delete("rotationCount")
        assert JsonFileStore(path).get("rotationCount") is None

    def test_update_writes_once(self, tmp_path):
        path = tmp_path / "settings.json"
        store = JsonFileStore(path)
        store.set("calibration.optical", {"low": 0.2, "high": 0.8})

        with patch.object(store, "_write", wraps=store._write) as write:
            store.update({"detectionMethod": "optical", "rotationCount": 7},
                         removed=["calibration.optical"])
        assert write.call_count == 1
        assert json.loads(path.read_text()) == {"detectionMethod": "optical", "rotationCount": 7}

    def test_unchanged_update_skips_write(self, tmp_path):
        store = JsonFileStore(tmp_path / "settings.json")
        store.update({"rotationCount": 7})
        with patch.object(store, "_write", wraps=store._write) as write:
            store.update({"rotationCount": 7}, removed=["missing"])
        assert write.call_count == 0

    def test_corrupt_file_ignored(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text("{not json")
        store = JsonFileStore(path)
        assert store.get("anything") is None
        store.set("rotationCount", 3)
        assert json.loads(path.read_text()) == {"rotationCount": 3}

    def test_non_object_ignored(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text("[1, 2, 3]")
        assert JsonFileStore(path).get("0") is None

    def test_reload(self, tmp_path):
        path = tmp_path / "settings.json"
        store = JsonFileStore(path)
        store.set("wheelCircumference", 0.1178)
        path.write_text(json.dumps({"wheelCircumference": 0.2}))
        store.reload()
        assert store.get("wheelCircumference") == 0.2


# =============================================================================
# Tests for Session Logger
# =============================================================================

def read_entries(path):
    with open(path) as f:
        return [json.loads(line) for line in f]


class TestSessionLogger:
    """Tests for JSONL survey session logs."""

    def test_full_session(self, tmp_path):
        session_logger = SessionLogger(log_dir=tmp_path, location="ginnie")
        session_id = session_logger.start_session(
            method=DetectionMethod.OPTICAL, wheel_circumference_m=0.314
        )
        assert session_id
        assert session_logger.session_path.name == f"survey_{session_id}_ginnie.jsonl"

        session_logger.log_rotation(RotationEvent(1.5), 0.314, DetectionMethod.OPTICAL)
        session_logger.log_calibration(CalibrationResult(DetectionMethod.OPTICAL, ThresholdPair(0.3, 0.7)))
        session_logger.log_calibration(
            CalibrationResult.failed(DetectionMethod.OPTICAL, DegenerateRange("flat"))
        )
        session_logger.log_method_change(DetectionMethod.OPTICAL, DetectionMethod.MAGNETIC_PCA)
        session_logger.log_depth(DepthReading(depth_m=12.3))
        session_logger.log_error("probe timeout", {"port": "/dev/ttyUSB0"})
        session_logger.end_session()

        entries = read_entries(session_logger.session_path)
        types = [e["type"] for e in entries]
        assert types == [
            "session_start", "rotation", "calibration", "calibration",
            "method_change", "depth", "error", "session_end",
        ]
        assert entries[0]["method"] == "optical"
        assert entries[1]["distance_m"] == pytest.approx(0.314)
        assert entries[3]["error"] == "DegenerateRange"
        assert entries[-1]["stats"] == {
            "rotations": 1,
            "calibrations": 1,
            "calibration_failures": 1,
            "depth_readings": 1,
            "errors": 1,
        }
        assert entries[-1]["distance_m"] == pytest.approx(0.314)

    def test_raw_probe_log(self, tmp_path):
        session_logger = SessionLogger(log_dir=tmp_path)
        session_logger.start_session(method=DetectionMethod.MAGNETIC_THRESHOLD,
                                     wheel_circumference_m=0.1178)
        logging.getLogger("cavemapper.telemetry.raw").debug("53460000000400640000")
        session_logger.end_session()

        assert "53460000000400640000" in session_logger.raw_path.read_text()
        assert not logging.getLogger("cavemapper.telemetry.raw").handlers

    def test_disabled_writes_nothing(self, tmp_path):
        session_logger = SessionLogger(log_dir=tmp_path / "logs", enabled=False)
        assert session_logger.start_session(DetectionMethod.OPTICAL, 0.1) == ""
        session_logger.log_rotation(RotationEvent(0.0), 0.1, DetectionMethod.OPTICAL)
        session_logger.end_session()

        assert not (tmp_path / "logs").exists()
        assert session_logger.stats["rotations"] == 0

    def test_global_instance(self, tmp_path):
        created = init_session_logger(log_dir=tmp_path, enabled=False)
        assert get_session_logger() is created
