"""
Two-threshold hysteresis detectors.

Both the magnetic threshold detector and the optical brightness detector
reduce each sample to a scalar and run it through the same state machine:
a rotation is counted only after the signal has crossed both thresholds,
so noise hovering around one of them cannot double count.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from .types import (
    DetectionMethod,
    HysteresisSide,
    RotationEvent,
    Sample,
    ScalarSample,
    ThresholdPair,
    TriggerEdge,
    VectorSample,
)

logger = logging.getLogger("cavemapper.detection.hysteresis")

# Perceived brightness weights (ITU-R BT.601)
LUMA_WEIGHTS = (0.299, 0.587, 0.114)


def magnetic_magnitude(vectors) -> np.ndarray:
    """
    Scalar projection used by the magnetic threshold detector.

    Full-vector magnitude, applied identically during calibration and
    live detection.

    Args:
        vectors: (N, 3) array-like of field readings

    Returns:
        (N,) array of magnitudes
    """
    data = np.asarray(vectors, dtype=np.float64).reshape(-1, 3)
    return np.sqrt(np.sum(data * data, axis=1))


def roi_luminance(frame: np.ndarray, roi_fraction: float = 0.3, step: int = 2) -> Optional[float]:
    """
    Average perceived brightness of the central region of a camera frame.

    Args:
        frame: HxWx3 (BGR) or HxWx4 (BGRA) uint8 image
        roi_fraction: Width/height of the centred ROI as a fraction of the frame
        step: Sample every `step`-th row and column

    Returns:
        Brightness normalized to 0-1, or None if the ROI is empty
    """
    if frame.ndim != 3 or frame.shape[2] < 3:
        raise ValueError(f"Expected a BGR or BGRA frame, got shape {frame.shape}")

    height, width = frame.shape[:2]
    roi_w = int(width * roi_fraction)
    roi_h = int(height * roi_fraction)
    if roi_w == 0 or roi_h == 0:
        return None

    x0 = (width - roi_w) // 2
    y0 = (height - roi_h) // 2
    roi = frame[y0:y0 + roi_h:step, x0:x0 + roi_w:step, :3].astype(np.float64)

    # BGR channel order
    r_w, g_w, b_w = LUMA_WEIGHTS
    luma = roi[..., 2] * r_w + roi[..., 1] * g_w + roi[..., 0] * b_w
    return float(np.mean(luma) / 255.0)


@dataclass
class HysteresisState:
    """Mutable state of a hysteresis detector."""
    side: HysteresisSide = HysteresisSide.BETWEEN
    armed: bool = False


class HysteresisStateMachine:
    """
    Reusable two-threshold state machine.

    Comparisons are strict: a value equal to a threshold has not crossed
    it. With TriggerEdge.FALLING, the machine arms when the value rises
    above `high` and fires when it next falls below `low`. RISING is the
    mirror image. Without thresholds it tracks nothing and never fires.
    """

    def __init__(self, thresholds: Optional[ThresholdPair] = None,
                 trigger_edge: TriggerEdge = TriggerEdge.FALLING):
        self.thresholds = thresholds
        self.trigger_edge = trigger_edge
        self.state = HysteresisState()

    def classify(self, value: float) -> HysteresisSide:
        if self.thresholds is None:
            return HysteresisSide.BETWEEN
        if value > self.thresholds.high:
            return HysteresisSide.ABOVE_HIGH
        if value < self.thresholds.low:
            return HysteresisSide.BELOW_LOW
        return HysteresisSide.BETWEEN

    def update(self, value: float) -> bool:
        """
        Feed one scalar value.

        Returns:
            True if this value completed a rotation
        """
        if self.thresholds is None:
            return False

        side = self.classify(value)
        self.state.side = side

        if self.trigger_edge is TriggerEdge.FALLING:
            arm_side, fire_side = HysteresisSide.ABOVE_HIGH, HysteresisSide.BELOW_LOW
        else:
            arm_side, fire_side = HysteresisSide.BELOW_LOW, HysteresisSide.ABOVE_HIGH

        if side is arm_side:
            self.state.armed = True
        elif side is fire_side and self.state.armed:
            self.state.armed = False
            return True
        return False

    def configure(self, thresholds: Optional[ThresholdPair]):
        """Install new thresholds and return to the initial state."""
        self.thresholds = thresholds
        self.reset()

    def reset(self):
        self.state = HysteresisState()


class MagneticThresholdDetector:
    """
    Rotation detector thresholding the magnetometer field magnitude.

    A magnet on the wheel sweeps past the phone once per revolution,
    producing one peak in field magnitude.
    """

    method = DetectionMethod.MAGNETIC_THRESHOLD

    def __init__(self, thresholds: Optional[ThresholdPair] = None,
                 trigger_edge: TriggerEdge = TriggerEdge.FALLING):
        self._machine = HysteresisStateMachine(thresholds, trigger_edge)
        self.last_magnitude: Optional[float] = None

    def feed(self, sample: Sample) -> Optional[RotationEvent]:
        if not isinstance(sample, VectorSample):
            return None
        magnitude = sample.magnitude
        self.last_magnitude = magnitude
        if self._machine.update(magnitude):
            logger.debug(f"Rotation at t={sample.timestamp:.3f} (|B|={magnitude:.1f} µT)")
            return RotationEvent(timestamp=sample.timestamp)
        return None

    def reset(self):
        self._machine.reset()
        self.last_magnitude = None

    def configure(self, parameters: Optional[ThresholdPair]):
        self._machine.configure(parameters)
        self.last_magnitude = None

    @property
    def parameters(self) -> Optional[ThresholdPair]:
        return self._machine.thresholds

    @property
    def is_calibrated(self) -> bool:
        return self._machine.thresholds is not None

    @property
    def state(self) -> HysteresisState:
        return self._machine.state


class OpticalBrightnessDetector:
    """
    Rotation detector driven by camera ROI brightness.

    The wheel has an opening that lets the flashlight reflection through
    once per revolution. A rotation is counted when brightness falls
    below `low` (occluded) after having risen above `high` (opening
    visible). Frames closer together than `min_frame_interval` are
    dropped, capping processing at 20 fps by default.
    """

    method = DetectionMethod.OPTICAL

    def __init__(self, thresholds: Optional[ThresholdPair] = None,
                 trigger_edge: TriggerEdge = TriggerEdge.FALLING,
                 min_frame_interval: float = 0.05):
        self._machine = HysteresisStateMachine(thresholds, trigger_edge)
        self.min_frame_interval = min_frame_interval
        self._last_processed: Optional[float] = None
        self.current_brightness: Optional[float] = None
        self.frames_dropped = 0

    def feed(self, sample: Sample) -> Optional[RotationEvent]:
        if not isinstance(sample, ScalarSample):
            return None

        if (self._last_processed is not None
                and sample.timestamp - self._last_processed < self.min_frame_interval):
            self.frames_dropped += 1
            return None
        self._last_processed = sample.timestamp
        self.current_brightness = sample.value

        if self._machine.update(sample.value):
            logger.debug(f"Rotation at t={sample.timestamp:.3f} (brightness={sample.value:.3f})")
            return RotationEvent(timestamp=sample.timestamp)
        return None

    def reset(self):
        self._machine.reset()
        self._last_processed = None
        self.current_brightness = None

    def configure(self, parameters: Optional[ThresholdPair]):
        self._machine.configure(parameters)
        self._last_processed = None
        self.current_brightness = None

    @property
    def parameters(self) -> Optional[ThresholdPair]:
        return self._machine.thresholds

    @property
    def is_calibrated(self) -> bool:
        return self._machine.thresholds is not None

    @property
    def state(self) -> HysteresisState:
        return self._machine.state
