"""
PCA phase-tracking rotation detection.

A magnet on the wheel makes the magnetometer vector trace a loop in
some plane whose orientation depends on how the phone is mounted.
Rather than thresholding a single axis, this detector finds that plane
with principal component analysis, projects each sample into it and
tracks the rotation angle. Each full 2π of forward phase is one
revolution, whatever the device orientation.

Pipeline:
1. Calibration: covariance of centred samples -> two dominant
   eigenvectors span the rotation plane
2. Orient the plane so the calibration rotation runs at positive phase
3. Live: subtract a slowly adapting field baseline, project, atan2,
   unwrap by shortest angular delta
4. Emit an event for every full 2π of forward phase since activation,
   while the signal stays in the calibrated plane
"""

import logging
import math
from typing import Optional, Tuple

import numpy as np

from .buffer import SampleBuffer
from .errors import DegenerateRange
from .types import (
    DetectionMethod,
    PCAReference,
    RotationEvent,
    Sample,
    VectorSample,
)

logger = logging.getLogger("cavemapper.detection.pca")

TWO_PI = 2.0 * math.pi

# Absorbs float drift when a trace lands exactly on a 2π boundary
PHASE_TOLERANCE = 1e-9


def wrap_angle(angle: float) -> float:
    """Wrap an angle into (-π, π]."""
    wrapped = angle - TWO_PI * math.floor((angle + math.pi) / TWO_PI)
    if wrapped <= -math.pi:
        wrapped += TWO_PI
    return wrapped


def fit_rotation_plane(
    vectors: np.ndarray,
    min_variance: float = 0.5,
    min_planarity: float = 0.7,
    min_radius_ratio: float = 0.2,
    min_revolutions: float = 1.0,
) -> PCAReference:
    """
    Fit the dominant rotation plane of a calibration window.

    Args:
        vectors: (N, 3) magnetometer readings, in time order
        min_variance: Floor for the second eigenvalue (µT²)
        min_planarity: Floor for (λ1 + λ2) / Σλ
        min_radius_ratio: Every projected magnitude must exceed this
            fraction of the median magnitude
        min_revolutions: Revolutions the window must contain

    Returns:
        PCAReference oriented so the calibration rotation is forward

    Raises:
        DegenerateRange: if the samples do not define a stable plane
    """
    data = np.asarray(vectors, dtype=np.float64).reshape(-1, 3)
    if len(data) < 3:
        raise DegenerateRange(f"Need at least 3 samples to fit a plane, got {len(data)}")

    center = data.mean(axis=0)
    centered = data - center
    covariance = centered.T @ centered / len(data)

    # eigh returns ascending eigenvalues for the symmetric covariance
    eigenvalues, eigenvectors = np.linalg.eigh(covariance)
    order = np.argsort(eigenvalues)[::-1]
    eigenvalues = np.clip(eigenvalues[order], 0.0, None)
    eigenvectors = eigenvectors[:, order]

    if eigenvalues[1] < min_variance:
        raise DegenerateRange(
            f"Field variance too low to define a rotation plane "
            f"(λ1={eigenvalues[0]:.3f}, λ2={eigenvalues[1]:.3f} µT²)"
        )

    planarity = float((eigenvalues[0] + eigenvalues[1]) / eigenvalues.sum())
    if planarity < min_planarity:
        raise DegenerateRange(f"Rotation is not planar enough (planarity={planarity:.3f})")

    basis_u = eigenvectors[:, 0]
    basis_v = eigenvectors[:, 1]

    coords_u = centered @ basis_u
    coords_v = centered @ basis_v
    radius = np.hypot(coords_u, coords_v)
    median_radius = float(np.median(radius))
    if median_radius <= 0.0 or float(radius.min()) < min_radius_ratio * median_radius:
        raise DegenerateRange(
            f"Projected field passes too close to the plane centre "
            f"(min={float(radius.min()):.3f}, median={median_radius:.3f} µT)"
        )

    phases = np.unwrap(np.arctan2(coords_v, coords_u))
    net_phase = float(phases[-1] - phases[0])
    if net_phase < 0.0:
        # Forward wheel motion should advance the phase
        basis_v = -basis_v
        coords_v = -coords_v
        net_phase = -net_phase

    revolutions = net_phase / TWO_PI
    if revolutions < min_revolutions:
        raise DegenerateRange(
            f"Only {revolutions:.2f} revolutions observed during calibration "
            f"(need {min_revolutions:.1f})"
        )

    return PCAReference(
        center=tuple(float(c) for c in center),
        basis_u=tuple(float(c) for c in basis_u),
        basis_v=tuple(float(c) for c in basis_v),
        reference_phase=float(math.atan2(coords_v[0], coords_u[0])),
        expected_revolutions=revolutions,
        median_radius=median_radius,
        planarity=planarity,
    )


class MagneticPCADetector:
    """
    Orientation-robust rotation detector tracking phase in the PCA plane.

    Live samples are centred on a slow exponential moving baseline seeded
    from the calibrated centre, so a heading change that shifts the static
    field is absorbed over a few revolutions. The baseline adapts ten times
    slower while the wheel is paused.

    Each (re)activation starts counting from the first valid sample: a
    full 2π of forward travel is needed before the first event. Backward
    motion lowers the accumulated phase, and that ground has to be covered
    again before the next event, so events already emitted are never
    retracted. Phase does not accumulate while the signal has stayed out
    of the calibrated plane for longer than the grace period.
    """

    method = DetectionMethod.MAGNETIC_PCA

    def __init__(
        self,
        reference: Optional[PCAReference] = None,
        min_radius_ratio: float = 0.2,
        quality_window_s: float = 2.0,
        baseline_alpha: float = 0.01,
        pause_slowdown: float = 0.1,
        motion_threshold: float = 0.05,
        pause_after_s: float = 0.5,
        min_planarity: float = 0.7,
        planarity_grace_s: float = 0.5,
    ):
        """
        Initialize PCA detector.

        Args:
            reference: Calibrated rotation plane, or None while uncalibrated
            min_radius_ratio: Samples projecting closer than this fraction of
                the calibrated median radius are skipped (angle undefined)
            quality_window_s: Span of the live window used for signal quality
            baseline_alpha: EMA coefficient of the field baseline per sample
            pause_slowdown: Factor applied to baseline_alpha while paused
            motion_threshold: Per-sample phase change (rad) that counts as motion
            pause_after_s: Time without motion before the wheel counts as paused
            min_planarity: Signal quality below which counting is suspended
            planarity_grace_s: How long quality may stay low before suspending
        """
        self.reference = reference
        self.min_radius_ratio = min_radius_ratio
        self.baseline_alpha = baseline_alpha
        self.pause_slowdown = pause_slowdown
        self.motion_threshold = motion_threshold
        self.pause_after_s = pause_after_s
        self.min_planarity = min_planarity
        self.planarity_grace_s = planarity_grace_s
        self._quality_buffer = SampleBuffer(window_seconds=quality_window_s)
        self.samples_skipped = 0
        self.samples_gated = 0
        self._reset_phase()

    def _reset_phase(self):
        self._last_angle: Optional[float] = None
        self._phase = 0.0
        self._next_boundary = TWO_PI
        self._last_motion_at: Optional[float] = None
        self._quality_low_since: Optional[float] = None
        self._quality: Optional[float] = None
        self._baseline = (
            np.array(self.reference.center, dtype=np.float64) if self.reference is not None else None
        )

    def _in_motion(self, timestamp: float) -> bool:
        return (self._last_motion_at is not None
                and timestamp - self._last_motion_at <= self.pause_after_s)

    def _update_baseline(self, sample: VectorSample) -> np.ndarray:
        alpha = self.baseline_alpha
        if not self._in_motion(sample.timestamp):
            alpha *= self.pause_slowdown
        field = np.array(sample.vector, dtype=np.float64)
        self._baseline = alpha * field + (1.0 - alpha) * self._baseline
        return field - self._baseline

    def _signal_valid(self, timestamp: float) -> bool:
        self._quality = self.signal_quality()
        if self._quality is None or self._quality >= self.min_planarity:
            self._quality_low_since = None
            return True
        if self._quality_low_since is None:
            self._quality_low_since = timestamp
        return timestamp - self._quality_low_since <= self.planarity_grace_s

    def feed(self, sample: Sample) -> Optional[RotationEvent]:
        if not isinstance(sample, VectorSample) or self.reference is None:
            return None

        self._quality_buffer.append(sample)
        ref = self.reference
        corrected = self._update_baseline(sample)
        u = float(np.dot(corrected, ref.basis_u))
        v = float(np.dot(corrected, ref.basis_v))

        if math.hypot(u, v) < self.min_radius_ratio * ref.median_radius:
            self.samples_skipped += 1
            return None

        angle = math.atan2(v, u)

        if self._last_angle is None:
            # Counting starts here: the first event needs a full revolution
            self._last_angle = angle
            self._phase = wrap_angle(angle - ref.reference_phase)
            self._next_boundary = self._phase + TWO_PI
            return None

        delta = wrap_angle(angle - self._last_angle)
        self._last_angle = angle
        if abs(delta) > self.motion_threshold:
            self._last_motion_at = sample.timestamp

        if not self._signal_valid(sample.timestamp):
            self.samples_gated += 1
            return None

        self._phase += delta
        if self._phase + PHASE_TOLERANCE >= self._next_boundary:
            self._next_boundary += TWO_PI
            logger.debug(f"Rotation at t={sample.timestamp:.3f} (phase={self._phase:.3f} rad)")
            return RotationEvent(timestamp=sample.timestamp)
        return None

    def reset(self):
        self._quality_buffer.clear()
        self.samples_skipped = 0
        self.samples_gated = 0
        self._reset_phase()

    def configure(self, parameters: Optional[PCAReference]):
        """Install a new reference; phase tracking starts over."""
        self.reference = parameters
        self.reset()

    @property
    def parameters(self) -> Optional[PCAReference]:
        return self.reference

    @property
    def is_calibrated(self) -> bool:
        return self.reference is not None

    @property
    def accumulated_phase(self) -> float:
        """Unwrapped phase in radians, relative to the calibration origin."""
        return self._phase

    @property
    def pending_fraction(self) -> float:
        """Progress toward the next rotation event; negative after backing up."""
        return (self._phase - (self._next_boundary - TWO_PI)) / TWO_PI

    @property
    def baseline(self) -> Optional[Tuple[float, float, float]]:
        """Current estimate of the static field being removed."""
        if self._baseline is None:
            return None
        return tuple(float(c) for c in self._baseline)

    @property
    def last_quality(self) -> Optional[float]:
        """Signal quality as of the most recent counted sample."""
        return self._quality

    def signal_quality(self) -> Optional[float]:
        """
        Fraction of recent field variance lying in the calibrated plane.

        Drops toward zero when the phone has been re-oriented since
        calibration. None until enough live samples are buffered.
        """
        if self.reference is None:
            return None
        data = self._quality_buffer.vectors()
        if len(data) < 3:
            return None

        centered = data - data.mean(axis=0)
        total = float(np.sum(centered * centered))
        if total <= 0.0:
            return None
        basis = np.array([self.reference.basis_u, self.reference.basis_v])
        in_plane = float(np.sum((centered @ basis.T) ** 2))
        return in_plane / total
