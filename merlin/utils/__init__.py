"""Image decoding helpers."""

from .image import ensure_srgb, load_image, vips_to_uint8_numpy

__all__ = ["ensure_srgb", "load_image", "vips_to_uint8_numpy"]
