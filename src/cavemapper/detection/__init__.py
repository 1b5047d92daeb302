"""
Wheel rotation detection engine.

Three interchangeable detectors turn sensor samples into rotation events:

- Magnetic threshold: hysteresis on the magnetometer field magnitude
- Magnetic PCA: phase tracking in the calibrated rotation plane,
  robust to phone orientation
- Optical: hysteresis on camera ROI brightness

Usage:
    from cavemapper.detection import DetectionMethod, create_detector

    detector = create_detector(DetectionMethod.OPTICAL, ThresholdPair(0.3, 0.7))
    event = detector.feed(ScalarSample(timestamp=t, value=brightness))
"""

from .types import (
    SampleKind,
    DetectionMethod,
    HysteresisSide,
    TriggerEdge,
    VectorSample,
    ScalarSample,
    Sample,
    ThresholdPair,
    PCAReference,
    DetectorParameters,
    RotationEvent,
    CalibrationResult,
    parameters_from_dict,
)

from .errors import (
    DetectionError,
    InsufficientSamples,
    DegenerateRange,
    Cancelled,
    InvalidThresholdOrder,
    SensorUnavailable,
)

from .buffer import SampleBuffer

from .calibration import (
    CalibrationConfig,
    CalibrationSession,
    ThresholdCalibrator,
    DEFAULT_CALIBRATION_SECONDS,
)

from .hysteresis import (
    HysteresisStateMachine,
    MagneticThresholdDetector,
    OpticalBrightnessDetector,
    magnetic_magnitude,
    roi_luminance,
)

from .pca import MagneticPCADetector, fit_rotation_plane, wrap_angle

from .detector import RotationDetector, create_detector

__all__ = [
    # Types
    "SampleKind",
    "DetectionMethod",
    "HysteresisSide",
    "TriggerEdge",
    "VectorSample",
    "ScalarSample",
    "Sample",
    "ThresholdPair",
    "PCAReference",
    "DetectorParameters",
    "RotationEvent",
    "CalibrationResult",
    "parameters_from_dict",
    # Errors
    "DetectionError",
    "InsufficientSamples",
    "DegenerateRange",
    "Cancelled",
    "InvalidThresholdOrder",
    "SensorUnavailable",
    # Buffer
    "SampleBuffer",
    # Calibration
    "CalibrationConfig",
    "CalibrationSession",
    "ThresholdCalibrator",
    "DEFAULT_CALIBRATION_SECONDS",
    # Detectors
    "HysteresisStateMachine",
    "MagneticThresholdDetector",
    "OpticalBrightnessDetector",
    "MagneticPCADetector",
    "RotationDetector",
    "create_detector",
    "magnetic_magnitude",
    "roi_luminance",
    "fit_rotation_plane",
    "wrap_angle",
]
