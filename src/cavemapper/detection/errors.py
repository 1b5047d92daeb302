"""
Error kinds for the detection engine.

Calibrators raise these; the coordinator catches them and reports them to
callers as values, so none of them ends a survey.
"""


class DetectionError(Exception):
    """Base class for all detection engine errors."""


class InsufficientSamples(DetectionError):
    """Calibration window captured fewer samples than required."""

    def __init__(self, captured: int, required: int):
        self.captured = captured
        self.required = required
        super().__init__(f"Not enough calibration samples: {captured} < {required}")


class DegenerateRange(DetectionError):
    """No usable signal contrast (scalar) or rotation plane (vector)."""


class Cancelled(DetectionError):
    """Calibration aborted before its window elapsed."""


class InvalidThresholdOrder(DetectionError, ValueError):
    """Supplied thresholds violate low < high or are not finite."""


class SensorUnavailable(DetectionError):
    """No samples are arriving for the active detection method."""

    def __init__(self, method_label: str, silent_for: float = None):
        self.method_label = method_label
        self.silent_for = silent_for
        if silent_for is None:
            message = f"No samples received yet for {method_label}"
        else:
            message = f"No samples for {method_label} in {silent_for:.1f}s"
        super().__init__(message)
