"""Download and local caching of model artifacts."""

from .cache import SAFETY_MARGIN, ArtifactCache, CacheInfo
from .download import LARGE_FILE_THRESHOLD, Downloader, RemoteFile, is_remote

__all__ = [
    "ArtifactCache",
    "CacheInfo",
    "Downloader",
    "LARGE_FILE_THRESHOLD",
    "RemoteFile",
    "SAFETY_MARGIN",
    "is_remote",
]
