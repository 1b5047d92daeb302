"""Thread-safe, time-windowed buffer of recent sensor samples."""

import logging
import threading
from collections import deque
from typing import Deque, List, Optional

import numpy as np

from .types import Sample, ScalarSample, VectorSample

logger = logging.getLogger("cavemapper.detection.buffer")


class SampleBuffer:
    """
    Bounded, time-ordered container of recent samples.

    Samples older than `window_seconds` (measured against the newest
    sample) are evicted on append. Used for calibration windows and for
    the PCA detector's live quality window.
    """

    def __init__(self, window_seconds: float, max_samples: Optional[int] = None):
        """
        Initialize buffer.

        Args:
            window_seconds: Time span to retain, in seconds
            max_samples: Optional hard cap on retained samples
        """
        if window_seconds <= 0:
            raise ValueError(f"window_seconds must be positive, got {window_seconds}")
        self.window_seconds = window_seconds
        self._lock = threading.Lock()
        self._samples: Deque[Sample] = deque(maxlen=max_samples)
        self._rejected = 0

    def append(self, sample: Sample) -> bool:
        """
        Add a sample, evicting anything that fell out of the window.

        Returns:
            False if the sample is older than the newest one held (rejected)
        """
        with self._lock:
            if self._samples and sample.timestamp < self._samples[-1].timestamp:
                self._rejected += 1
                logger.debug(f"Out-of-order sample rejected: {sample.timestamp:.3f} "
                             f"< {self._samples[-1].timestamp:.3f}")
                return False

            self._samples.append(sample)
            cutoff = sample.timestamp - self.window_seconds
            while self._samples[0].timestamp < cutoff:
                self._samples.popleft()
            return True

    def samples(self) -> List[Sample]:
        """Ordered snapshot of the retained samples."""
        with self._lock:
            return list(self._samples)

    def values(self) -> np.ndarray:
        """Scalar values as a 1-D array (scalar samples only)."""
        with self._lock:
            return np.array([s.value for s in self._samples if isinstance(s, ScalarSample)],
                            dtype=np.float64)

    def vectors(self) -> np.ndarray:
        """Vector samples as an (N, 3) array."""
        with self._lock:
            data = [s.vector for s in self._samples if isinstance(s, VectorSample)]
        return np.array(data, dtype=np.float64).reshape(-1, 3)

    def clear(self):
        with self._lock:
            self._samples.clear()

    @property
    def span(self) -> float:
        """Seconds between oldest and newest retained sample."""
        with self._lock:
            if len(self._samples) < 2:
                return 0.0
            return self._samples[-1].timestamp - self._samples[0].timestamp

    @property
    def rejected(self) -> int:
        """Number of out-of-order samples refused so far."""
        return self._rejected

    def __len__(self) -> int:
        with self._lock:
            return len(self._samples)

    def __repr__(self):
        return f"<SampleBuffer(window={self.window_seconds}s, samples={len(self)})>"
