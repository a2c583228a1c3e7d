"""Local runtime for three-graph ONNX vision-language models."""

from .config import QuantizationConfig, RuntimeConfig
from .engine import VisionLanguageRuntime
from .errors import (
    GenerationCancelled,
    GraphLoadError,
    ImageTokenMismatchError,
    MerlinError,
    TransportError,
)
from .lfm.runtime import CancellationToken, DecodeResult, GenerationMetrics

__all__ = [
    "CancellationToken",
    "DecodeResult",
    "GenerationCancelled",
    "GenerationMetrics",
    "GraphLoadError",
    "ImageTokenMismatchError",
    "MerlinError",
    "QuantizationConfig",
    "RuntimeConfig",
    "TransportError",
    "VisionLanguageRuntime",
]
