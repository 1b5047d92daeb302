"""Cave Mapper - wheel odometry for underwater cave surveys."""

__version__ = "0.1.0"

from .coordinator import CoordinatorConfig, CoordinatorSnapshot, DetectionCoordinator
from .detection import (
    DetectionMethod,
    RotationEvent,
    ScalarSample,
    ThresholdPair,
    PCAReference,
    VectorSample,
)
from .settings import JsonFileStore, MemoryStore
from .telemetry import DepthTelemetry, FixedDelayReconnect, SerialDepthProbe, decode_depth_payload

__all__ = [
    "DetectionCoordinator",
    "CoordinatorConfig",
    "CoordinatorSnapshot",
    "DetectionMethod",
    "RotationEvent",
    "ScalarSample",
    "VectorSample",
    "ThresholdPair",
    "PCAReference",
    "JsonFileStore",
    "MemoryStore",
    "DepthTelemetry",
    "FixedDelayReconnect",
    "SerialDepthProbe",
    "decode_depth_payload",
]
