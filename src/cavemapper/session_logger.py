"""
Survey session logs.

One JSON-lines file per survey run records every counted rotation,
calibration outcome, method switch and depth reading, so a dive can be
reconstructed afterwards. Raw probe frames go to a companion text log.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, TextIO

from .detection import CalibrationResult, DetectionMethod, RotationEvent
from .telemetry import DepthReading

logger = logging.getLogger(__name__)

RAW_PROBE_LOGGER = "cavemapper.telemetry.raw"
STAT_KEYS = ("rotations", "calibrations", "calibration_failures", "depth_readings", "errors")


@dataclass
class SessionMetadata:
    """Header written as the first line of a survey log."""
    session_id: str
    start_time: str
    method: str
    wheel_circumference_m: float
    probe_port: Optional[str] = None
    config: Dict[str, Any] = field(default_factory=dict)


class SessionLogger:
    """
    Writes one survey run to disk.

    Files, named by start time:
        survey_<id>_<location>.jsonl   entries, one JSON object per line
        probe_raw_<id>.log             raw depth probe frames

    Every entry carries "ts" (wall clock) and "type", one of session_start,
    rotation, calibration, method_change, depth, error or session_end.
    A disabled logger accepts every call and writes nothing.
    """

    DEFAULT_LOG_DIR = Path.home() / "cavemapper_sessions"

    def __init__(self, log_dir: Optional[Path] = None, location: str = "cave",
                 enabled: bool = True):
        self.log_dir = Path(log_dir) if log_dir else self.DEFAULT_LOG_DIR
        self.location = location
        self.enabled = enabled

        self._id: Optional[str] = None
        self._jsonl: Optional[TextIO] = None
        self._jsonl_path: Optional[Path] = None
        self._raw_file_path: Optional[Path] = None
        self._raw_handler: Optional[logging.FileHandler] = None
        self._counts: Dict[str, int] = dict.fromkeys(STAT_KEYS, 0)
        self._distance_m = 0.0

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start_session(self, method: DetectionMethod, wheel_circumference_m: float,
                      probe_port: Optional[str] = None,
                      config: Optional[Dict[str, Any]] = None) -> str:
        """
        Open the log files for a new run.

        Returns:
            The session ID, or "" when logging is disabled
        """
        if not self.enabled:
            return ""

        started = datetime.now()
        self._id = started.strftime("%Y%m%d_%H%M%S")
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self._jsonl_path = self.log_dir / f"survey_{self._id}_{self.location}.jsonl"
        self._raw_file_path = self.log_dir / f"probe_raw_{self._id}.log"

        self._jsonl = self._jsonl_path.open("w")
        self._attach_raw_handler()
        self._counts = dict.fromkeys(STAT_KEYS, 0)
        self._distance_m = 0.0

        header = SessionMetadata(
            session_id=self._id,
            start_time=started.isoformat(),
            method=method.value,
            wheel_circumference_m=wheel_circumference_m,
            probe_port=probe_port,
            config=dict(config or {}),
        )
        self._append("session_start", asdict(header))
        logger.info(f"Survey log: {self._jsonl_path}")
        return self._id

    def end_session(self):
        """Write the summary line and close the files."""
        if self._jsonl is None:
            return

        self._append("session_end", {
            "end_time": datetime.now().isoformat(),
            "stats": dict(self._counts),
            "distance_m": self._distance_m,
        })
        self._jsonl.close()
        self._jsonl = None
        self._detach_raw_handler()

        logger.info(f"Survey log closed after {self._counts['rotations']} rotations "
                    f"({self._distance_m:.2f} m): {self._jsonl_path}")

    def _attach_raw_handler(self):
        self._detach_raw_handler()
        handler = logging.FileHandler(self._raw_file_path)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter("%(asctime)s %(message)s"))
        raw = logging.getLogger(RAW_PROBE_LOGGER)
        raw.setLevel(logging.DEBUG)
        raw.addHandler(handler)
        self._raw_handler = handler

    def _detach_raw_handler(self):
        if self._raw_handler is None:
            return
        logging.getLogger(RAW_PROBE_LOGGER).removeHandler(self._raw_handler)
        self._raw_handler.close()
        self._raw_handler = None

    def _append(self, kind: str, fields: Dict[str, Any], count: Optional[str] = None):
        if not self.enabled or self._jsonl is None:
            return
        if count is not None:
            self._counts[count] += 1
        line = {"ts": datetime.now().isoformat(), "type": kind}
        line.update(fields)
        self._jsonl.write(json.dumps(line) + "\n")
        self._jsonl.flush()

    # =========================================================================
    # Entries
    # =========================================================================

    def log_rotation(self, event: RotationEvent, distance_m: float, method: DetectionMethod):
        if self._jsonl is None:
            return
        self._distance_m = distance_m
        self._append("rotation", {
            "rotation_number": self._counts["rotations"] + 1,
            "sample_ts": event.timestamp,
            "distance_m": distance_m,
            "method": method.value,
        }, count="rotations")

    def log_calibration(self, result: CalibrationResult):
        count = "calibrations" if result.ok else "calibration_failures"
        self._append("calibration", result.to_dict(), count=count)

    def log_method_change(self, previous: DetectionMethod, method: DetectionMethod,
                          source: str = "user"):
        self._append("method_change", {"from": previous.value, "to": method.value, "source": source})

    def log_depth(self, reading: DepthReading):
        self._append("depth", reading.to_dict(), count="depth_readings")

    def log_error(self, message: str, context: Optional[Dict[str, Any]] = None):
        self._append("error", {"error": message, "context": dict(context or {})}, count="errors")

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def session_id(self) -> Optional[str]:
        return self._id

    @property
    def session_path(self) -> Optional[Path]:
        """Path of the JSON-lines survey log."""
        return self._jsonl_path

    @property
    def raw_path(self) -> Optional[Path]:
        """Path of the raw probe frame log."""
        return self._raw_file_path

    @property
    def stats(self) -> Dict[str, int]:
        return dict(self._counts)


_session_logger: Optional[SessionLogger] = None


def get_session_logger() -> Optional[SessionLogger]:
    """The process-wide session logger, if one was initialized."""
    return _session_logger


def init_session_logger(log_dir: Optional[Path] = None, location: str = "cave",
                        enabled: bool = True) -> SessionLogger:
    """Create the process-wide session logger, replacing any previous one."""
    global _session_logger  # pylint: disable=global-statement
    _session_logger = SessionLogger(log_dir=log_dir, location=location, enabled=enabled)
    return _session_logger
