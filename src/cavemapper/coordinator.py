"""
Detection coordinator.

Owns the one active rotation detector, routes samples to it (or to an
open calibration session), and turns rotation events into survey
distance. Producers on different threads call `feed_sample`; a single
re-entrant lock serializes feeding, method switches and calibration so
no sample is processed against a half-reset detector.

Callers observe state either by pulling `snapshot()` or by registering
listeners, which are always invoked outside the lock.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .detection import (
    CalibrationConfig,
    CalibrationResult,
    CalibrationSession,
    Cancelled,
    DetectionError,
    DetectionMethod,
    DetectorParameters,
    MagneticPCADetector,
    PCAReference,
    RotationDetector,
    RotationEvent,
    Sample,
    SampleKind,
    SensorUnavailable,
    ThresholdCalibrator,
    ThresholdPair,
    create_detector,
    parameters_from_dict,
)
from .settings import (
    KEY_CIRCUMFERENCE,
    KEY_METHOD,
    KEY_ROTATION_COUNT,
    KeyValueStore,
    parameters_key,
)

logger = logging.getLogger("cavemapper.coordinator")

# 11.78 cm measuring wheel
DEFAULT_WHEEL_CIRCUMFERENCE_M = 0.1178

RotationListener = Callable[[RotationEvent, float, int], None]
CalibrationListener = Callable[[CalibrationResult], None]


def _default_calibration_configs() -> Dict[DetectionMethod, CalibrationConfig]:
    return {method: CalibrationConfig.for_method(method) for method in DetectionMethod}


@dataclass
class CoordinatorConfig:
    """Configuration for the detection coordinator."""

    wheel_circumference_m: float = DEFAULT_WHEEL_CIRCUMFERENCE_M
    default_method: DetectionMethod = DetectionMethod.MAGNETIC_THRESHOLD
    sensor_timeout_s: float = 2.0          # Silence before a sensor is reported unavailable
    min_frame_interval: float = 0.05       # Optical throttle (20 fps)
    pca_quality_window_s: float = 2.0
    calibration: Dict[DetectionMethod, CalibrationConfig] = field(
        default_factory=_default_calibration_configs
    )

    def calibration_for(self, method: DetectionMethod) -> CalibrationConfig:
        return self.calibration.get(method) or CalibrationConfig.for_method(method)


@dataclass(frozen=True)
class CoordinatorSnapshot:
    """Point-in-time view of the coordinator, safe to hand to other threads."""
    method: DetectionMethod
    rotation_count: int
    distance_m: float
    wheel_circumference_m: float
    is_calibrated: bool
    calibrating: bool
    calibration_progress: Optional[float]
    parameters: Optional[DetectorParameters]
    last_calibration: Optional[CalibrationResult]
    last_rotation_at: Optional[float]
    samples_ignored: int
    signal_quality: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "method": self.method.value,
            "method_label": self.method.label,
            "rotation_count": self.rotation_count,
            "distance_m": self.distance_m,
            "wheel_circumference_m": self.wheel_circumference_m,
            "is_calibrated": self.is_calibrated,
            "calibrating": self.calibrating,
            "calibration_progress": self.calibration_progress,
            "parameters": self.parameters.to_dict() if self.parameters is not None else None,
            "last_calibration": (
                self.last_calibration.to_dict() if self.last_calibration is not None else None
            ),
            "last_rotation_at": self.last_rotation_at,
            "samples_ignored": self.samples_ignored,
            "signal_quality": self.signal_quality,
        }


class DetectionCoordinator:
    """
    Single entry point for the detection engine.

    Usage:
        coordinator = DetectionCoordinator(CoordinatorConfig(wheel_circumference_m=0.314))
        coordinator.select_method(DetectionMethod.OPTICAL)
        coordinator.install_parameters(DetectionMethod.OPTICAL, ThresholdPair(0.2, 0.8))
        coordinator.feed_sample(ScalarSample(timestamp=t, value=brightness))
        print(coordinator.current_distance())
    """

    def __init__(self, config: Optional[CoordinatorConfig] = None,
                 method: Optional[DetectionMethod] = None):
        self.config = config or CoordinatorConfig()
        if self.config.wheel_circumference_m <= 0:
            raise ValueError(
                f"Wheel circumference must be positive, got {self.config.wheel_circumference_m}"
            )

        self._lock = threading.RLock()
        self._method = method or self.config.default_method
        self._parameters: Dict[DetectionMethod, DetectorParameters] = {}
        self._detector = self._build_detector(self._method)
        self._wheel_circumference_m = self.config.wheel_circumference_m

        self._rotation_count = 0
        self._last_rotation_at: Optional[float] = None
        self._calibration: Optional[CalibrationSession] = None
        self._last_calibration: Optional[CalibrationResult] = None
        self._last_sample_at: Dict[SampleKind, float] = {}
        self._samples_ignored = 0

        self._rotation_listeners: List[RotationListener] = []
        self._calibration_listeners: List[CalibrationListener] = []

    def _build_detector(self, method: DetectionMethod) -> RotationDetector:
        kwargs: Dict[str, Any] = {}
        if method is DetectionMethod.OPTICAL:
            kwargs["min_frame_interval"] = self.config.min_frame_interval
        elif method is DetectionMethod.MAGNETIC_PCA:
            kwargs["min_radius_ratio"] = self.config.calibration_for(method).min_radius_ratio
            kwargs["quality_window_s"] = self.config.pca_quality_window_s
            kwargs["min_planarity"] = self.config.calibration_for(method).min_planarity
        return create_detector(method, self._parameters.get(method), **kwargs)

    # =========================================================================
    # Sample path
    # =========================================================================

    def feed_sample(self, sample: Sample) -> Optional[RotationEvent]:
        """
        Route one sample to the open calibration session or the active detector.

        Returns:
            The RotationEvent this sample completed, if any
        """
        event = None
        distance = 0.0
        count = 0
        completed: Optional[CalibrationResult] = None

        with self._lock:
            self._last_sample_at[sample.kind] = sample.timestamp
            session = self._calibration

            if session is not None and sample.kind is session.method.sample_kind:
                if session.add(sample):
                    completed = self._finish_calibration_locked()
            elif sample.kind is self._method.sample_kind:
                event = self._detector.feed(sample)
                if event is not None:
                    self._rotation_count += 1
                    self._last_rotation_at = event.timestamp
                    distance = self._distance_locked()
                    count = self._rotation_count
            else:
                self._samples_ignored += 1

        if completed is not None:
            self._notify_calibration(completed)
        if event is not None:
            for listener in list(self._rotation_listeners):
                listener(event, distance, count)
        return event

    # =========================================================================
    # Method selection
    # =========================================================================

    def select_method(self, method: DetectionMethod) -> Optional[CalibrationResult]:
        """
        Switch the active detection method.

        The new detector starts from its initial state with the last
        parameters known for that method. The rotation count is kept.
        An open calibration is cancelled.

        Returns:
            The cancelled calibration's result, if one was open
        """
        with self._lock:
            cancelled = self._cancel_locked()
            previous = self._method
            self._method = method
            self._detector = self._build_detector(method)

        if previous is not method:
            logger.info(f"Detection method: {previous.label} -> {method.label}")
        if cancelled is not None:
            self._notify_calibration(cancelled)
        return cancelled

    @property
    def method(self) -> DetectionMethod:
        return self._method

    @property
    def detector(self) -> RotationDetector:
        """The active detector. Read-only use; feed through the coordinator."""
        return self._detector

    # =========================================================================
    # Calibration
    # =========================================================================

    def start_calibration(self, duration: Optional[float] = None) -> CalibrationSession:
        """
        Open a calibration window for the active method.

        Until the window elapses, samples of that method's kind fill the
        session buffer instead of reaching the live detector. Starting a
        new calibration cancels any open one.
        """
        with self._lock:
            cancelled = self._cancel_locked()
            if duration is None:
                duration = self.config.calibration_for(self._method).duration_s
            session = CalibrationSession(self._method, duration)
            self._calibration = session

        logger.info(f"Calibration started: {session.method.label} for {duration:.1f}s")
        if cancelled is not None:
            self._notify_calibration(cancelled)
        return session

    def cancel_calibration(self) -> Optional[CalibrationResult]:
        """
        Abort the open calibration. Previous parameters stay installed.

        Returns:
            A failed CalibrationResult carrying Cancelled, or None if no
            calibration was open
        """
        with self._lock:
            cancelled = self._cancel_locked()
        if cancelled is not None:
            self._notify_calibration(cancelled)
        return cancelled

    def _cancel_locked(self) -> Optional[CalibrationResult]:
        session = self._calibration
        if session is None:
            return None
        self._calibration = None
        result = CalibrationResult.failed(
            session.method,
            Cancelled(f"{session.method.label} calibration cancelled at {session.progress:.0%}"),
            sample_count=session.sample_count,
        )
        self._last_calibration = result
        logger.info(str(result.error))
        return result

    def _finish_calibration_locked(self) -> CalibrationResult:
        session = self._calibration
        self._calibration = None
        method = session.method
        calibrator = ThresholdCalibrator(self.config.calibration_for(method))

        try:
            parameters = calibrator.calibrate(method, session.buffer, session.duration_s)
        except DetectionError as e:
            logger.warning(f"{method.label} calibration failed: {e}")
            result = CalibrationResult.failed(method, e, sample_count=session.sample_count)
            # Keep previous parameters; drop state that predates the window
            self._detector.reset()
        else:
            self._parameters[method] = parameters
            self._detector.configure(parameters)
            result = CalibrationResult(method, parameters, sample_count=session.sample_count)
            logger.info(f"{method.label} calibration complete ({session.sample_count} samples)")

        self._last_calibration = result
        return result

    @property
    def calibration(self) -> Optional[CalibrationSession]:
        """The open calibration session, if any."""
        return self._calibration

    @property
    def is_calibrating(self) -> bool:
        return self._calibration is not None

    # =========================================================================
    # Parameters
    # =========================================================================

    def current_thresholds(self, method: Optional[DetectionMethod] = None) -> Optional[DetectorParameters]:
        """Last parameters installed for `method` (default: active method)."""
        with self._lock:
            return self._parameters.get(method or self._method)

    def install_parameters(self, method: DetectionMethod, parameters: Optional[DetectorParameters]):
        """
        Install externally supplied (or persisted) parameters for a method.

        Passing None clears them, leaving the method uncalibrated.

        Raises:
            TypeError: if the parameter type does not fit the method
        """
        expected = PCAReference if method is DetectionMethod.MAGNETIC_PCA else ThresholdPair
        if parameters is not None and not isinstance(parameters, expected):
            raise TypeError(f"{method.label} expects {expected.__name__}, "
                            f"got {type(parameters).__name__}")

        with self._lock:
            if parameters is None:
                self._parameters.pop(method, None)
            else:
                self._parameters[method] = parameters
            if method is self._method:
                self._detector.configure(parameters)

    # =========================================================================
    # Distance
    # =========================================================================

    def _distance_locked(self) -> float:
        return self._rotation_count * self._wheel_circumference_m

    def current_distance(self) -> float:
        """Survey distance in meters."""
        with self._lock:
            return self._distance_locked()

    @property
    def rotation_count(self) -> int:
        return self._rotation_count

    @property
    def wheel_circumference_m(self) -> float:
        return self._wheel_circumference_m

    def set_wheel_circumference(self, circumference_m: float):
        if circumference_m <= 0:
            raise ValueError(f"Wheel circumference must be positive, got {circumference_m}")
        with self._lock:
            self._wheel_circumference_m = circumference_m

    def reset_distance(self):
        """Start a new survey leg from zero."""
        with self._lock:
            self._rotation_count = 0
            self._last_rotation_at = None
            self._detector.reset()
        logger.info("Rotation count reset")

    # =========================================================================
    # Health and state
    # =========================================================================

    def check_sensor(self, now: float) -> Optional[SensorUnavailable]:
        """
        Report whether the active method's sensor is delivering samples.

        Args:
            now: Current time on the same clock as sample timestamps

        Returns:
            SensorUnavailable if nothing arrived within sensor_timeout_s,
            otherwise None
        """
        with self._lock:
            method = self._method
            last = self._last_sample_at.get(method.sample_kind)
        if last is None:
            return SensorUnavailable(method.label)
        silent_for = now - last
        if silent_for > self.config.sensor_timeout_s:
            return SensorUnavailable(method.label, silent_for)
        return None

    def snapshot(self) -> CoordinatorSnapshot:
        with self._lock:
            session = self._calibration
            return CoordinatorSnapshot(
                method=self._method,
                rotation_count=self._rotation_count,
                distance_m=self._distance_locked(),
                wheel_circumference_m=self._wheel_circumference_m,
                is_calibrated=self._detector.is_calibrated,
                calibrating=session is not None,
                calibration_progress=session.progress if session is not None else None,
                parameters=self._parameters.get(self._method),
                last_calibration=self._last_calibration,
                last_rotation_at=self._last_rotation_at,
                samples_ignored=self._samples_ignored,
                signal_quality=self._signal_quality_locked(),
            )

    def _signal_quality_locked(self) -> Optional[float]:
        # Only the PCA detector measures how planar the live signal is
        if isinstance(self._detector, MagneticPCADetector):
            return self._detector.signal_quality()
        return None

    # =========================================================================
    # Listeners
    # =========================================================================

    def add_rotation_listener(self, listener: RotationListener):
        """
        Call `listener(event, distance_m, rotation_count)` after every rotation.

        Distance and count are captured together under the lock, so they
        always describe the same rotation.
        """
        self._rotation_listeners.append(listener)

    def remove_rotation_listener(self, listener: RotationListener):
        if listener in self._rotation_listeners:
            self._rotation_listeners.remove(listener)

    def add_calibration_listener(self, listener: CalibrationListener):
        """Call `listener(result)` when a calibration completes, fails or is cancelled."""
        self._calibration_listeners.append(listener)

    def remove_calibration_listener(self, listener: CalibrationListener):
        if listener in self._calibration_listeners:
            self._calibration_listeners.remove(listener)

    def _notify_calibration(self, result: CalibrationResult):
        for listener in list(self._calibration_listeners):
            listener(result)

    # =========================================================================
    # Persistence
    # =========================================================================

    def save_state(self, store: KeyValueStore):
        """Write method, parameters, rotation count and circumference in one update."""
        with self._lock:
            values: Dict[str, Any] = {
                KEY_METHOD: self._method.value,
                KEY_ROTATION_COUNT: self._rotation_count,
                KEY_CIRCUMFERENCE: self._wheel_circumference_m,
            }
            removed = []
            for method in DetectionMethod:
                parameters = self._parameters.get(method)
                if parameters is None:
                    removed.append(parameters_key(method.value))
                else:
                    values[parameters_key(method.value)] = parameters.to_dict()
        store.update(values, removed)

    def load_state(self, store: KeyValueStore):
        """
        Restore state written by `save_state`.

        Unreadable entries are logged and skipped; whatever is valid is
        still applied.
        """
        with self._lock:
            for method in DetectionMethod:
                data = store.get(parameters_key(method.value))
                if data is None:
                    continue
                try:
                    self._parameters[method] = parameters_from_dict(method, data)
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Ignoring stored {method.label} parameters: {e}")

            method_value = store.get(KEY_METHOD)
            if method_value is not None:
                try:
                    self._method = DetectionMethod(method_value)
                except ValueError:
                    logger.warning(f"Ignoring unknown stored detection method: {method_value!r}")

            count = store.get(KEY_ROTATION_COUNT)
            if isinstance(count, int) and count >= 0:
                self._rotation_count = count

            circumference = store.get(KEY_CIRCUMFERENCE)
            if isinstance(circumference, (int, float)) and circumference > 0:
                self._wheel_circumference_m = float(circumference)

            self._detector = self._build_detector(self._method)

        logger.info(f"Restored state: method={self._method.value}, "
                    f"rotations={self._rotation_count}, "
                    f"calibrated={[m.value for m in self._parameters]}")
