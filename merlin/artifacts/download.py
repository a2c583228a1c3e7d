"""Chunked HTTP downloads backed by the artifact cache.

``fetch`` returns a fully buffered body and is used for graph files,
tokenizer documents, and weight shards below the large-file threshold.
``fetch_to_path`` streams the body straight to disk chunk by chunk and is used
for shards too large to hold in process memory.

Transport failures (connection errors, non-success statuses) raise
:class:`~merlin.errors.TransportError` after retrying server errors with
exponential backoff. Caching is best-effort: a failed cache write is logged
and the fetched body is still returned.
"""

from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import Callable, Iterator, List, NamedTuple, Optional

import httpx

from merlin.config import GiB, MiB
from merlin.errors import MerlinError, TransportError

from .cache import ArtifactCache, url_filename


_LOGGER = logging.getLogger(__name__)

_DEBUG_ENV = "MERLIN_DEBUG_DOWNLOADS"

LARGE_FILE_THRESHOLD = 2 * GiB
DEFAULT_CHUNK_SIZE = 1 * MiB

ProgressCallback = Callable[[int, int], None]


def _trace(msg: str, *args: object) -> None:
    level = logging.INFO if os.getenv(_DEBUG_ENV) else logging.DEBUG
    _LOGGER.log(level, msg, *args)


def is_remote(url: str) -> bool:
    return url.startswith("http://") or url.startswith("https://")


def _content_length(response: httpx.Response) -> Optional[int]:
    raw = response.headers.get("content-length")
    if not raw:
        return None
    try:
        value = int(raw)
    except ValueError:
        return None
    return value if value > 0 else None


class RemoteFile(NamedTuple):
    """A probed resource and its declared size, if the server exposed one."""

    url: str
    size: Optional[int]


class Downloader:
    """Fetches artifacts over HTTP, consulting an :class:`ArtifactCache` first."""

    def __init__(
        self,
        cache: ArtifactCache,
        *,
        client: Optional[httpx.Client] = None,
        attempts: int = 3,
        backoff_s: float = 0.5,
        timeout_s: float = 60.0,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if attempts <= 0:
            raise ValueError("attempts must be positive")
        self.cache = cache
        self._owns_client = client is None
        self._client = client or httpx.Client(follow_redirects=True, timeout=timeout_s)
        self._attempts = attempts
        self._backoff_s = backoff_s
        self._chunk_size = chunk_size
        self._sleep = sleep

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "Downloader":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Transport

    def _backoff(self, attempt: int) -> None:
        self._sleep(self._backoff_s * (2**attempt))

    def _open_stream(self, url: str) -> httpx.Response:
        last_error: Optional[Exception] = None
        for attempt in range(self._attempts):
            final = attempt == self._attempts - 1
            try:
                request = self._client.build_request("GET", url)
                response = self._client.send(request, stream=True, follow_redirects=True)
            except httpx.HTTPError as exc:
                last_error = exc
                if not final:
                    self._backoff(attempt)
                continue
            if response.status_code >= 500 and not final:
                response.close()
                self._backoff(attempt)
                continue
            if not response.is_success:
                response.close()
                raise TransportError(
                    url,
                    f"Fetch failed: {response.status_code} for {url}",
                    status=response.status_code,
                )
            return response
        raise TransportError(url, f"Fetch failed for {url}: {last_error}") from last_error

    def _iter_body(
        self,
        url: str,
        response: httpx.Response,
        on_progress: Optional[ProgressCallback],
    ) -> Iterator[bytes]:
        total = _content_length(response)
        received = 0
        try:
            for chunk in response.iter_bytes(self._chunk_size):
                received += len(chunk)
                if total and on_progress is not None:
                    on_progress(received, total)
                yield chunk
        except httpx.HTTPError as exc:
            raise TransportError(url, f"Download interrupted for {url}: {exc}") from exc

    def probe(self, url: str) -> Optional[RemoteFile]:
        """Check that ``url`` exists and discover its size.

        Uses a HEAD request, retrying server errors. Servers that refuse HEAD
        are asked again with a streamed GET whose body is never read. Returns
        ``None`` when the resource does not exist.
        """

        if not is_remote(url):
            path = Path(url)
            return RemoteFile(url, path.stat().st_size) if path.is_file() else None

        for attempt in range(self._attempts):
            final = attempt == self._attempts - 1
            try:
                response = self._client.head(url, follow_redirects=True)
            except httpx.HTTPError:
                if final:
                    break
                self._backoff(attempt)
                continue
            if response.is_success:
                return RemoteFile(url, _content_length(response))
            if response.status_code in (404, 410):
                return None
            if response.status_code >= 500 and not final:
                self._backoff(attempt)
                continue
            break

        try:
            response = self._open_stream(url)
        except TransportError as exc:
            if exc.status is not None and 400 <= exc.status < 500:
                return None
            raise
        try:
            return RemoteFile(url, _content_length(response))
        finally:
            response.close()

    # ------------------------------------------------------------------
    # Fetching

    def fetch(
        self,
        url: str,
        on_progress: Optional[ProgressCallback] = None,
        *,
        use_cache: bool = True,
    ) -> bytes:
        """Return the body of ``url``, from the cache when a valid entry exists."""

        if not is_remote(url):
            try:
                return Path(url).read_bytes()
            except OSError as exc:
                raise TransportError(url, f"Failed to read {url}: {exc}") from exc

        if use_cache:
            cached = self.cache.lookup(url)
            if cached is not None:
                return cached

        _trace("Fetching %s", url_filename(url))
        response = self._open_stream(url)
        try:
            total = _content_length(response)
            chunks: List[bytes] = list(self._iter_body(url, response, on_progress))
        finally:
            response.close()
        body = b"".join(chunks)

        if use_cache:
            self._try_cache(url, body, total)
        return body

    def _try_cache(self, url: str, body: bytes, total: Optional[int]) -> None:
        try:
            self.cache.put(url, body, size=total)
        except (OSError, MerlinError) as exc:
            _LOGGER.warning("Cache write error for %s: %s", url_filename(url), exc)

    def fetch_to_path(
        self,
        url: str,
        on_progress: Optional[ProgressCallback] = None,
        *,
        expected_size: Optional[int] = None,
    ) -> Path:
        """Stream ``url`` to disk without buffering it, returning the file path.

        The body lands in the cache when the quota admits it, otherwise it
        stays in the cache's spill directory. A spilled body from an earlier
        call is reused when its length matches ``expected_size`` (or when no
        size is known, since spill files only appear once fully written).
        """

        if not is_remote(url):
            return Path(url)

        cached = self.cache.lookup_path(url)
        if cached is not None:
            return cached

        destination = self.cache.spill_path(url)
        if destination.is_file():
            if expected_size is None or destination.stat().st_size == expected_size:
                _trace("Reusing spilled %s", destination)
                stored = self.cache.put_file(url, destination)
                return stored if stored is not None else destination
            _LOGGER.warning("Discarding incomplete spill file %s", destination)
            destination.unlink(missing_ok=True)

        partial = destination.with_name(destination.name + ".partial")
        _trace("Streaming %s to %s", url_filename(url), destination)
        response = self._open_stream(url)
        try:
            with partial.open("wb") as fp:
                for chunk in self._iter_body(url, response, on_progress):
                    fp.write(chunk)
            os.replace(partial, destination)
        except BaseException:
            partial.unlink(missing_ok=True)
            raise
        finally:
            response.close()

        stored = self.cache.put_file(url, destination)
        return stored if stored is not None else destination


__all__ = [
    "DEFAULT_CHUNK_SIZE",
    "Downloader",
    "LARGE_FILE_THRESHOLD",
    "ProgressCallback",
    "RemoteFile",
    "is_remote",
]
