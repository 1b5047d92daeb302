"""
Common detector interface and factory.

All detectors share the same shape: feed a sample, maybe get a
RotationEvent back. The coordinator only ever talks to this interface,
so adding a detection method means adding a class and an entry in
`create_detector`.
"""

from typing import Optional, Protocol, runtime_checkable

from .hysteresis import MagneticThresholdDetector, OpticalBrightnessDetector
from .pca import MagneticPCADetector
from .types import DetectionMethod, DetectorParameters, RotationEvent, Sample


@runtime_checkable
class RotationDetector(Protocol):
    """Interface every rotation detector implements."""

    method: DetectionMethod

    def feed(self, sample: Sample) -> Optional[RotationEvent]:
        """
        Process one sample.

        Samples of the wrong kind are ignored. At most one event is
        emitted per sample.
        """
        ...

    def reset(self) -> None:
        """Clear transient detection state, keeping parameters."""
        ...

    def configure(self, parameters: Optional[DetectorParameters]) -> None:
        """Install (or clear) calibrated parameters and reset state."""
        ...

    @property
    def parameters(self) -> Optional[DetectorParameters]:
        ...

    @property
    def is_calibrated(self) -> bool:
        ...


def create_detector(
    method: DetectionMethod,
    parameters: Optional[DetectorParameters] = None,
    **kwargs,
) -> RotationDetector:
    """
    Factory function to create a rotation detector.

    Args:
        method: Detection method to build a detector for
        parameters: Calibrated thresholds or PCA reference, if known
        **kwargs: Arguments passed to detector constructor

    Returns:
        Configured RotationDetector instance
    """
    detectors = {
        DetectionMethod.MAGNETIC_THRESHOLD: MagneticThresholdDetector,
        DetectionMethod.MAGNETIC_PCA: MagneticPCADetector,
        DetectionMethod.OPTICAL: OpticalBrightnessDetector,
    }

    if method not in detectors:
        raise ValueError(f"Unknown detection method: {method}. "
                         f"Available: {[m.value for m in detectors]}")

    return detectors[method](parameters, **kwargs)
