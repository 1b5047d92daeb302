"""
Data types for wheel rotation detection.

These types represent the raw sensor samples fed to the detectors,
the calibrated parameters each detector needs, and the rotation
events they emit.
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple, Union

from .errors import InvalidThresholdOrder


class SampleKind(Enum):
    """Shape of the raw reading a detection method consumes."""
    VECTOR = "vector"
    SCALAR = "scalar"


class DetectionMethod(Enum):
    """Wheel rotation detection strategies."""
    MAGNETIC_THRESHOLD = "magnetic"
    MAGNETIC_PCA = "magnetic_pca"
    OPTICAL = "optical"

    @property
    def sample_kind(self) -> SampleKind:
        """Which sensor stream this method listens to."""
        if self is DetectionMethod.OPTICAL:
            return SampleKind.SCALAR
        return SampleKind.VECTOR

    @property
    def label(self) -> str:
        return {
            DetectionMethod.MAGNETIC_THRESHOLD: "Magnetic",
            DetectionMethod.MAGNETIC_PCA: "Magnetic (PCA Phase)",
            DetectionMethod.OPTICAL: "Optical",
        }[self]

    @property
    def description(self) -> str:
        return {
            DetectionMethod.MAGNETIC_THRESHOLD:
                "Uses magnetometer to detect wheel rotations with threshold-based peak detection",
            DetectionMethod.MAGNETIC_PCA:
                "Uses PCA phase tracking to measure 2π advances in magnetometer signal. "
                "Most robust to phone orientation.",
            DetectionMethod.OPTICAL:
                "Uses camera and flashlight to detect wheel rotations",
        }[self]


class HysteresisSide(Enum):
    """Where the last sample fell relative to a ThresholdPair."""
    ABOVE_HIGH = "above_high"
    BELOW_LOW = "below_low"
    BETWEEN = "between"


class TriggerEdge(Enum):
    """Which completed swing of a hysteresis detector counts as a rotation."""
    FALLING = "falling"  # above high, then below low
    RISING = "rising"    # below low, then above high


@dataclass(frozen=True)
class VectorSample:
    """
    A single magnetometer reading.

    Attributes:
        timestamp: Seconds on the producer's monotonic clock
        x, y, z: Field components in microtesla
    """
    timestamp: float
    x: float
    y: float
    z: float

    @property
    def kind(self) -> SampleKind:
        return SampleKind.VECTOR

    @property
    def vector(self) -> Tuple[float, float, float]:
        return (self.x, self.y, self.z)

    @property
    def magnitude(self) -> float:
        return math.sqrt(self.x * self.x + self.y * self.y + self.z * self.z)


@dataclass(frozen=True)
class ScalarSample:
    """
    A single luminance reading from the camera ROI.

    Attributes:
        timestamp: Seconds on the producer's monotonic clock
        value: Normalized brightness, 0.0 (dark) to 1.0 (saturated)
    """
    timestamp: float
    value: float

    @property
    def kind(self) -> SampleKind:
        return SampleKind.SCALAR


Sample = Union[VectorSample, ScalarSample]


@dataclass(frozen=True)
class ThresholdPair:
    """
    Low/high thresholds for a hysteresis detector.

    Raises:
        InvalidThresholdOrder: if either bound is not finite or low >= high
    """
    low: float
    high: float

    def __post_init__(self):
        if not (math.isfinite(self.low) and math.isfinite(self.high)):
            raise InvalidThresholdOrder(f"Thresholds must be finite: low={self.low}, high={self.high}")
        if self.low >= self.high:
            raise InvalidThresholdOrder(f"Low threshold {self.low} must be below high threshold {self.high}")

    @property
    def band(self) -> float:
        """Width of the hysteresis band."""
        return self.high - self.low

    def to_dict(self) -> dict:
        return {"low": self.low, "high": self.high}

    @classmethod
    def from_dict(cls, data: dict) -> "ThresholdPair":
        return cls(low=float(data["low"]), high=float(data["high"]))


Vector3 = Tuple[float, float, float]


@dataclass(frozen=True)
class PCAReference:
    """
    Calibrated rotation plane for the PCA phase detector.

    Computed wholesale from one calibration window and never mutated.

    Attributes:
        center: Mean field over the calibration window (Earth field + offsets)
        basis_u: First principal axis of the rotation plane (unit vector)
        basis_v: Second principal axis, oriented so forward rotation increases phase
        reference_phase: Angle of the first calibration sample in the plane (radians)
        expected_revolutions: Revolutions observed during calibration
        median_radius: Typical projected magnitude in the plane (microtesla)
        planarity: (λ1 + λ2) / (λ1 + λ2 + λ3) of the calibration covariance
    """
    center: Vector3
    basis_u: Vector3
    basis_v: Vector3
    reference_phase: float
    expected_revolutions: float
    median_radius: float
    planarity: float

    @property
    def normal(self) -> Vector3:
        """Normal of the rotation plane (u × v)."""
        u, v = self.basis_u, self.basis_v
        return (
            u[1] * v[2] - u[2] * v[1],
            u[2] * v[0] - u[0] * v[2],
            u[0] * v[1] - u[1] * v[0],
        )

    def to_dict(self) -> dict:
        return {
            "center": list(self.center),
            "basis_u": list(self.basis_u),
            "basis_v": list(self.basis_v),
            "reference_phase": self.reference_phase,
            "expected_revolutions": self.expected_revolutions,
            "median_radius": self.median_radius,
            "planarity": self.planarity,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PCAReference":
        return cls(
            center=tuple(float(c) for c in data["center"]),
            basis_u=tuple(float(c) for c in data["basis_u"]),
            basis_v=tuple(float(c) for c in data["basis_v"]),
            reference_phase=float(data["reference_phase"]),
            expected_revolutions=float(data["expected_revolutions"]),
            median_radius=float(data["median_radius"]),
            planarity=float(data["planarity"]),
        )


DetectorParameters = Union[ThresholdPair, PCAReference]


def parameters_from_dict(method: DetectionMethod, data: dict) -> DetectorParameters:
    """Rebuild persisted parameters for a detection method."""
    if method is DetectionMethod.MAGNETIC_PCA:
        return PCAReference.from_dict(data)
    return ThresholdPair.from_dict(data)


@dataclass(frozen=True)
class RotationEvent:
    """One full wheel rotation observed at `timestamp`."""
    timestamp: float


@dataclass
class CalibrationResult:
    """
    Outcome of a calibration session.

    Failures are reported here rather than raised so detection can carry
    on with the previous parameters.
    """
    method: DetectionMethod
    parameters: Optional[DetectorParameters] = None
    error: Optional[Exception] = None
    sample_count: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None and self.parameters is not None

    @property
    def error_kind(self) -> Optional[str]:
        """Class name of the failure, e.g. 'DegenerateRange'."""
        return type(self.error).__name__ if self.error is not None else None

    @classmethod
    def failed(cls, method: DetectionMethod, error: Exception, sample_count: int = 0) -> "CalibrationResult":
        """Factory for a calibration that installed nothing."""
        return cls(method=method, parameters=None, error=error, sample_count=sample_count)

    def to_dict(self) -> dict:
        return {
            "method": self.method.value,
            "ok": self.ok,
            "error": self.error_kind,
            "message": str(self.error) if self.error is not None else None,
            "parameters": self.parameters.to_dict() if self.parameters is not None else None,
            "sample_count": self.sample_count,
        }
