"""Local artifact store for downloaded model and tokenizer files.

Entries are addressed by the URL they were fetched from. Each entry lives in
its own directory named after ``sha256(url)`` and holds the body (under the
URL's file name) plus a ``meta.json`` sidecar recording the URL and the body
length. An entry is only served when its body can be read back in full and
matches the recorded length; anything else is treated as corruption, deleted,
and reported as a miss.

Writes are best-effort. A write that would leave less than
``safety_margin`` bytes of headroom is skipped, and filesystem errors are
logged rather than raised, so a full or read-only disk never fails a fetch.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, NamedTuple, Optional, Sequence
from urllib.parse import urlsplit

from merlin.config import MiB
from merlin.errors import CacheCorruptionError, CacheWriteError


_LOGGER = logging.getLogger(__name__)

SAFETY_MARGIN = 100 * MiB
_META_NAME = "meta.json"
_SPILL_SUFFIX = ".spill"
_VERSION_RE = re.compile(r"^(?P<prefix>.+)-v(?P<version>\d+)$")


@dataclass(frozen=True, slots=True)
class CacheInfo:
    """Bytes held by the cache and bytes still available to it."""

    used: int
    available: int


class CacheEntry(NamedTuple):
    url: str
    size: int
    path: Path


def url_key(url: str) -> str:
    return hashlib.sha256(url.encode("utf-8")).hexdigest()


def url_filename(url: str) -> str:
    name = Path(urlsplit(url).path).name
    return name or "body"


class ArtifactCache:
    """Directory-backed cache of fetched artifacts, keyed by source URL."""

    def __init__(
        self,
        root: Path,
        name: str,
        *,
        max_bytes: Optional[int] = None,
        safety_margin: int = SAFETY_MARGIN,
    ) -> None:
        if max_bytes is not None and max_bytes < 0:
            raise ValueError("max_bytes must be non-negative")
        self.root = Path(root)
        self.name = name
        self.max_bytes = max_bytes
        self.safety_margin = safety_margin

    @property
    def directory(self) -> Path:
        return self.root / self.name

    @property
    def spill_directory(self) -> Path:
        """Scratch area for large bodies that could not be admitted."""

        return self.root / f"{self.name}{_SPILL_SUFFIX}"

    def _entry_dir(self, url: str) -> Path:
        return self.directory / url_key(url)

    # ------------------------------------------------------------------
    # Reads

    def _entry(self, url: str) -> Optional[CacheEntry]:
        entry_dir = self._entry_dir(url)
        meta_path = entry_dir / _META_NAME
        if not meta_path.exists():
            return None
        try:
            meta = json.loads(meta_path.read_text(encoding="utf-8"))
            size = int(meta["size"])
            body = entry_dir / str(meta["file"])
            if meta.get("url") != url:
                raise CacheCorruptionError(url, "metadata URL mismatch")
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise CacheCorruptionError(url, f"unreadable metadata ({exc})") from exc
        return CacheEntry(url=url, size=size, path=body)

    def lookup(self, url: str) -> Optional[bytes]:
        """Return the cached body for ``url``, or ``None`` on a miss.

        The body is materialised in full before it is returned. A body that
        cannot be read, or whose length disagrees with the sidecar, is
        deleted and reported as a miss.
        """

        try:
            entry = self._entry(url)
            if entry is None:
                return None
            try:
                body = entry.path.read_bytes()
            except OSError as exc:
                raise CacheCorruptionError(url, f"unreadable body ({exc})") from exc
            if len(body) != entry.size:
                raise CacheCorruptionError(
                    url, f"expected {entry.size} bytes, read {len(body)}"
                )
        except CacheCorruptionError as exc:
            _LOGGER.warning("%s; deleting entry", exc)
            self.delete(url)
            return None
        _LOGGER.debug("Cache hit %s (%.1f MB)", entry.path.name, len(body) / MiB)
        return body

    def lookup_path(self, url: str) -> Optional[Path]:
        """Like :meth:`lookup` but returns the body path without reading it."""

        try:
            entry = self._entry(url)
            if entry is None:
                return None
            try:
                actual = entry.path.stat().st_size
            except OSError as exc:
                raise CacheCorruptionError(url, f"unreadable body ({exc})") from exc
            if not entry.path.is_file() or actual != entry.size:
                raise CacheCorruptionError(
                    url, f"expected {entry.size} bytes, found {actual}"
                )
        except CacheCorruptionError as exc:
            _LOGGER.warning("%s; deleting entry", exc)
            self.delete(url)
            return None
        return entry.path

    def contains(self, url: str) -> bool:
        return self.lookup_path(url) is not None

    def missing(self, urls: Sequence[str]) -> List[str]:
        """Return the subset of ``urls`` without a valid entry, in order."""

        return [url for url in urls if not self.contains(url)]

    # ------------------------------------------------------------------
    # Quota

    def used_bytes(self) -> int:
        total = 0
        if not self.directory.is_dir():
            return 0
        for path in self.directory.rglob("*"):
            try:
                if path.is_file():
                    total += path.stat().st_size
            except OSError:
                continue
        return total

    def _disk_free(self) -> int:
        probe = self.root
        while not probe.exists() and probe != probe.parent:
            probe = probe.parent
        return shutil.disk_usage(probe).free

    def available_bytes(self, *, include_disk: bool = True) -> int:
        """Bytes the cache may still grow by.

        The budget is the smaller of the configured ``max_bytes`` headroom and
        the free space on the cache's filesystem.
        """

        limits = []
        if self.max_bytes is not None:
            limits.append(max(self.max_bytes - self.used_bytes(), 0))
        if include_disk:
            limits.append(self._disk_free())
        if not limits:
            return 0
        return min(limits)

    def has_room(self, size: Optional[int], *, include_disk: bool = True) -> bool:
        if not size:
            # Unknown length; nothing to check against.
            return True
        if not include_disk and self.max_bytes is None:
            return True
        return self.available_bytes(include_disk=include_disk) >= size + self.safety_margin

    def info(self) -> CacheInfo:
        return CacheInfo(used=self.used_bytes(), available=self.available_bytes())

    # ------------------------------------------------------------------
    # Writes

    def _commit(self, url: str, staged: Path, size: int) -> Path:
        entry_dir = self._entry_dir(url)
        body = entry_dir / url_filename(url)
        os.replace(staged, body)
        meta = {"url": url, "size": size, "file": body.name}
        meta_tmp = entry_dir / f"{_META_NAME}.partial"
        meta_tmp.write_text(json.dumps(meta), encoding="utf-8")
        os.replace(meta_tmp, entry_dir / _META_NAME)
        return body

    def put(self, url: str, body: bytes, *, size: Optional[int] = None) -> bool:
        """Store ``body`` under ``url``. Returns ``False`` if the write was skipped."""

        declared = size if size else len(body)
        if not self.has_room(declared):
            _LOGGER.info(
                "Cache skip %s: need %.2f GB, have %.2f GB",
                url_filename(url),
                (declared + self.safety_margin) / 1e9,
                self.available_bytes() / 1e9,
            )
            return False
        try:
            self._write_entry(url, [body])
        except CacheWriteError as exc:
            _LOGGER.warning("Cache write error for %s: %s", url_filename(url), exc)
            return False
        _LOGGER.debug("Cached %s", url_filename(url))
        return True

    def put_file(self, url: str, source: Path) -> Optional[Path]:
        """Move an already-downloaded file into the cache.

        Returns the entry's body path, or ``None`` (leaving ``source`` in
        place) when the quota check or the move fails.
        """

        size = source.stat().st_size
        if not self.has_room(size, include_disk=False):
            _LOGGER.info("Cache skip %s: quota exhausted", url_filename(url))
            return None
        entry_dir = self._entry_dir(url)
        try:
            self.delete(url)
            entry_dir.mkdir(parents=True, exist_ok=True)
            return self._commit(url, source, size)
        except OSError as exc:
            _LOGGER.warning("Cache write error for %s: %s", url_filename(url), exc)
            shutil.rmtree(entry_dir, ignore_errors=True)
            return None

    def _write_entry(self, url: str, chunks: Iterable[bytes]) -> Path:
        entry_dir = self._entry_dir(url)
        staged: Optional[Path] = None
        try:
            self.delete(url)
            entry_dir.mkdir(parents=True, exist_ok=True)
            fd, name = tempfile.mkstemp(dir=entry_dir, suffix=".partial")
            staged = Path(name)
            written = 0
            with os.fdopen(fd, "wb") as fp:
                for chunk in chunks:
                    fp.write(chunk)
                    written += len(chunk)
            return self._commit(url, staged, written)
        except OSError as exc:
            shutil.rmtree(entry_dir, ignore_errors=True)
            raise CacheWriteError(str(exc)) from exc

    def spill_path(self, url: str) -> Path:
        path = self.spill_directory / url_key(url) / url_filename(url)
        path.parent.mkdir(parents=True, exist_ok=True)
        return path

    # ------------------------------------------------------------------
    # Removal

    def delete(self, url: str) -> bool:
        entry_dir = self._entry_dir(url)
        if not entry_dir.exists():
            return False
        shutil.rmtree(entry_dir, ignore_errors=True)
        return not entry_dir.exists()

    def clear(self) -> bool:
        """Delete the whole namespace. Returns ``True`` if anything was removed."""

        removed = False
        for directory in (self.directory, self.spill_directory):
            if directory.exists():
                shutil.rmtree(directory, ignore_errors=True)
                removed = True
        _LOGGER.info("Model cache %s", "cleared" if removed else "already empty")
        return removed

    def prune_stale(self) -> List[str]:
        """Remove sibling namespaces that carry an older or newer version tag."""

        match = _VERSION_RE.match(self.name)
        if match is None or not self.root.is_dir():
            return []
        prefix = match.group("prefix")
        removed: List[str] = []
        for candidate in sorted(self.root.iterdir()):
            other = _VERSION_RE.match(candidate.name.removesuffix(_SPILL_SUFFIX))
            if other is None or other.group("prefix") != prefix:
                continue
            if candidate.name in (self.name, self.spill_directory.name):
                continue
            shutil.rmtree(candidate, ignore_errors=True)
            removed.append(candidate.name)
        if removed:
            _LOGGER.info("Cleared old caches %s (keeping %s)", removed, self.name)
        return removed


__all__ = [
    "ArtifactCache",
    "CacheEntry",
    "CacheInfo",
    "SAFETY_MARGIN",
    "url_filename",
    "url_key",
]
