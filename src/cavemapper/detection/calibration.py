"""
Calibration of detector parameters from a short training run.

The operator rotates the wheel steadily for a fixed window (10 s by
default) while samples are captured into a SampleBuffer. Scalar streams
yield a ThresholdPair centred between the observed extremes; vector
streams yield a PCAReference describing the rotation plane.
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional

import numpy as np

from .buffer import SampleBuffer
from .errors import DegenerateRange, InsufficientSamples
from .hysteresis import magnetic_magnitude
from .pca import fit_rotation_plane
from .types import (
    DetectionMethod,
    DetectorParameters,
    PCAReference,
    Sample,
    ThresholdPair,
)

logger = logging.getLogger("cavemapper.detection.calibration")

DEFAULT_CALIBRATION_SECONDS = 10.0


@dataclass(frozen=True)
class CalibrationConfig:
    """Calibration parameters for one detection method."""

    duration_s: float = DEFAULT_CALIBRATION_SECONDS
    expected_rate_hz: float = 50.0     # Magnetometer update rate
    min_fill_fraction: float = 0.5     # Fraction of expected samples required

    # Hysteresis band placement between observed min and max
    low_fraction: float = 0.25
    high_fraction: float = 0.75
    noise_floor: float = 1.0           # Minimum max-min contrast (signal units)

    # Rotation plane quality (PCA path)
    min_variance: float = 0.5          # Second eigenvalue floor (µT²)
    min_planarity: float = 0.7
    min_radius_ratio: float = 0.2      # Projected magnitude floor vs median
    min_revolutions: float = 1.0

    def min_samples(self, duration_s: Optional[float] = None) -> int:
        """Samples required for a window of `duration_s` seconds."""
        duration = self.duration_s if duration_s is None else duration_s
        return max(2, math.ceil(self.expected_rate_hz * duration * self.min_fill_fraction))

    @classmethod
    def for_method(cls, method: DetectionMethod) -> "CalibrationConfig":
        """Defaults tuned for the sensor behind each detection method."""
        if method is DetectionMethod.OPTICAL:
            # Camera frames are throttled to 20 fps; luminance is normalized 0-1
            return cls(expected_rate_hz=20.0, noise_floor=0.02)
        return cls()


class ThresholdCalibrator:
    """
    Derives detector parameters from a calibration buffer.

    Raises InsufficientSamples or DegenerateRange; callers decide whether
    to keep their previous parameters.
    """

    def __init__(self, config: Optional[CalibrationConfig] = None):
        self.config = config or CalibrationConfig()

    def calibrate_scalar(self, values, duration_s: Optional[float] = None) -> ThresholdPair:
        """
        Compute hysteresis thresholds from scalar samples.

        Args:
            values: Sequence of scalar readings captured during calibration
            duration_s: Window length the samples were captured over

        Returns:
            ThresholdPair at low_fraction / high_fraction of the observed range
        """
        cfg = self.config
        data = np.asarray(values, dtype=np.float64)
        required = cfg.min_samples(duration_s)
        if data.size < required:
            raise InsufficientSamples(int(data.size), required)

        lo = float(np.min(data))
        hi = float(np.max(data))
        spread = hi - lo
        if spread < cfg.noise_floor:
            raise DegenerateRange(
                f"Signal range {spread:.4f} below noise floor {cfg.noise_floor}"
            )

        pair = ThresholdPair(
            low=lo + cfg.low_fraction * spread,
            high=lo + cfg.high_fraction * spread,
        )
        logger.info(f"Threshold calibration: min={lo:.3f} max={hi:.3f} "
                    f"-> low={pair.low:.3f} high={pair.high:.3f} ({data.size} samples)")
        return pair

    def calibrate_vectors(self, vectors, duration_s: Optional[float] = None) -> PCAReference:
        """
        Compute the rotation plane reference from 3-vector samples.

        Args:
            vectors: (N, 3) array-like of magnetometer readings
            duration_s: Window length the samples were captured over
        """
        cfg = self.config
        data = np.asarray(vectors, dtype=np.float64).reshape(-1, 3)
        required = cfg.min_samples(duration_s)
        if len(data) < required:
            raise InsufficientSamples(len(data), required)

        reference = fit_rotation_plane(
            data,
            min_variance=cfg.min_variance,
            min_planarity=cfg.min_planarity,
            min_radius_ratio=cfg.min_radius_ratio,
            min_revolutions=cfg.min_revolutions,
        )
        logger.info(f"PCA calibration: planarity={reference.planarity:.3f} "
                    f"radius={reference.median_radius:.2f} "
                    f"revolutions={reference.expected_revolutions:.2f} ({len(data)} samples)")
        return reference

    def calibrate(
        self,
        method: DetectionMethod,
        buffer: SampleBuffer,
        duration_s: Optional[float] = None,
    ) -> DetectorParameters:
        """Dispatch a filled calibration buffer to the right derivation."""
        if method is DetectionMethod.MAGNETIC_PCA:
            return self.calibrate_vectors(buffer.vectors(), duration_s)
        if method is DetectionMethod.MAGNETIC_THRESHOLD:
            vectors = buffer.vectors()
            return self.calibrate_scalar(magnetic_magnitude(vectors), duration_s)
        return self.calibrate_scalar(buffer.values(), duration_s)


class CalibrationSession:
    """
    A single open calibration window.

    The window starts at the timestamp of the first sample routed to it
    and completes once a sample at or beyond start + duration arrives.
    The buffer keeps twice the duration, so the completing sample does
    not evict the first ones unless it follows a gap longer than the
    whole duration.
    """

    def __init__(self, method: DetectionMethod, duration_s: float = DEFAULT_CALIBRATION_SECONDS):
        if duration_s <= 0:
            raise ValueError(f"Calibration duration must be positive, got {duration_s}")
        self.method = method
        self.duration_s = duration_s
        self.buffer = SampleBuffer(window_seconds=2.0 * duration_s)
        self.started_at: Optional[float] = None
        self._last_timestamp: Optional[float] = None

    def add(self, sample: Sample) -> bool:
        """
        Capture a sample.

        Returns:
            True once the calibration window has fully elapsed
        """
        if self.started_at is None:
            self.started_at = sample.timestamp
        if self.buffer.append(sample):
            self._last_timestamp = sample.timestamp
        return self.is_complete

    @property
    def elapsed(self) -> float:
        if self.started_at is None or self._last_timestamp is None:
            return 0.0
        return self._last_timestamp - self.started_at

    @property
    def progress(self) -> float:
        """Fraction of the window captured, 0.0 to 1.0."""
        return min(self.elapsed / self.duration_s, 1.0)

    @property
    def is_complete(self) -> bool:
        return self.elapsed >= self.duration_s

    @property
    def sample_count(self) -> int:
        return len(self.buffer)

    def __repr__(self):
        return (f"<CalibrationSession({self.method.value}, "
                f"{self.progress:.0%} of {self.duration_s}s, samples={self.sample_count})>")


