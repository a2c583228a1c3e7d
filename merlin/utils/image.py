"""Decoding image references into 8-bit sRGB pyvips images."""

from __future__ import annotations

import base64
import binascii
from pathlib import Path
from typing import Callable, Optional

import numpy as np
import pyvips

from merlin.errors import ImageLoadError


FetchBytes = Callable[[str], bytes]


def load_image(reference: str, fetch: Optional[FetchBytes] = None) -> pyvips.Image:
    """Decode ``reference`` into an sRGB image.

    ``reference`` may be a ``data:image/...;base64,`` URL, an ``http(s)://``
    URL (read through ``fetch``), or a local file path.
    """

    if reference.startswith("data:"):
        return load_vips_from_base64(reference)
    if reference.startswith(("http://", "https://")):
        if fetch is None:
            raise ImageLoadError(f"No fetcher available for remote image {reference}")
        return load_vips_from_bytes(fetch(reference))

    path = Path(reference).expanduser()
    try:
        raw = path.read_bytes()
    except OSError as exc:
        raise ImageLoadError(f"Cannot read image {reference}: {exc}") from exc
    return load_vips_from_bytes(raw)


def load_vips_from_base64(data: str) -> pyvips.Image:
    """Decode a base64 string (raw or ``data:image/...``) into a pyvips image."""

    if data.startswith("data:"):
        header, _, payload = data.partition(",")
        if not header.startswith("data:image") or not payload:
            raise ImageLoadError("Invalid image data URL")
        if ";base64" not in header:
            raise ImageLoadError("Only base64-encoded data URLs are supported")
        raw = _b64decode(payload)
    else:
        raw = _b64decode(data)
    return load_vips_from_bytes(raw)


def load_vips_from_bytes(raw: bytes) -> pyvips.Image:
    try:
        image = pyvips.Image.new_from_buffer(raw, "", access="sequential")
        return ensure_srgb(image)
    except pyvips.Error as exc:
        raise ImageLoadError("Invalid image payload") from exc


def ensure_srgb(image: pyvips.Image) -> pyvips.Image:
    """Return an image in 8-bit sRGB without alpha."""

    if image.hasalpha():
        # Composite over black so transparent regions do not leak colour.
        image = image.flatten(background=[0, 0, 0])

    try:
        if image.interpretation not in ("srgb", "rgb", "b-w"):
            image = image.colourspace("srgb")
    except pyvips.Error:
        # Images without a convertible interpretation keep their bands.
        pass

    if image.format != "uchar":
        image = image.cast("uchar")

    if image.bands == 1:
        image = image.bandjoin([image, image])
    elif image.bands > 3:
        image = image.extract_band(0, n=3)
    return image.copy_memory()


def vips_to_uint8_numpy(image: pyvips.Image) -> np.ndarray:
    """Convert a pyvips image into a HxWxC uint8 NumPy array."""

    memory = image.write_to_memory()
    array = np.frombuffer(memory, dtype=np.uint8)
    return array.reshape(image.height, image.width, image.bands)


def _b64decode(payload: str) -> bytes:
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ImageLoadError("Invalid base64 image data") from exc


__all__ = [
    "ensure_srgb",
    "load_image",
    "load_vips_from_base64",
    "load_vips_from_bytes",
    "vips_to_uint8_numpy",
]
