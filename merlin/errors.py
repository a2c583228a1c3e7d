"""Exception types raised by the Merlin runtime.

Transport and graph-construction failures abort ``load``/``generate``. Cache
write failures and cache corruption never reach callers: the artifact cache
logs them and degrades to a network fetch. Image-token mismatches are only
raised when strict checking is requested.
"""

from __future__ import annotations

from typing import Optional


class MerlinError(Exception):
    """Base class for every error raised by Merlin."""


class TransportError(MerlinError):
    """A network fetch failed or returned a non-success status."""

    def __init__(self, url: str, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.url = url
        self.status = status


class CacheCorruptionError(MerlinError):
    """A cached artifact could not be read back in full."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"Cached artifact for {url} is corrupt: {reason}")
        self.url = url
        self.reason = reason


class CacheWriteError(MerlinError):
    """Persisting an artifact failed. Never propagated past the downloader."""


class GraphLoadError(MerlinError):
    """Constructing one of the computation graphs failed."""

    def __init__(self, graph: str, message: str) -> None:
        super().__init__(f"Failed to load {graph}: {message}")
        self.graph = graph


class ImageLoadError(MerlinError):
    """An image reference could not be decoded."""


class ImageTokenMismatchError(MerlinError):
    """The number of image markers differs from the number of embedding rows."""

    def __init__(self, markers: int, rows: int) -> None:
        super().__init__(
            f"Image token mismatch: {markers} <image> tokens vs {rows} embeddings"
        )
        self.markers = markers
        self.rows = rows


class CacheLayoutError(MerlinError):
    """Decoder outputs do not line up with the generation cache slots."""


class GenerationCancelled(MerlinError):
    """Generation was aborted while a graph was executing."""


class RuntimeNotLoadedError(MerlinError):
    """An operation needs a loaded model but none is loaded."""


__all__ = [
    "CacheCorruptionError",
    "CacheLayoutError",
    "CacheWriteError",
    "GenerationCancelled",
    "GraphLoadError",
    "ImageLoadError",
    "ImageTokenMismatchError",
    "MerlinError",
    "RuntimeNotLoadedError",
    "TransportError",
]
