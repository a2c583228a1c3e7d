"""Image tiling and patch extraction for the LFM vision encoder."""

from __future__ import annotations

from typing import Tuple

import numpy as np
import pyvips

from merlin.utils.image import vips_to_uint8_numpy


TILE_SIZE = 512
PATCH_SIZE = 16

IMAGENET_MEAN = np.array([0.485, 0.456, 0.406], dtype=np.float32)
IMAGENET_STD = np.array([0.229, 0.224, 0.225], dtype=np.float32)


def compute_grid(width: int, height: int, tile_size: int = TILE_SIZE) -> Tuple[int, int]:
    """Return ``(rows, cols)`` of tiles for an image of the given size.

    Small images use a single tile; wide images get two columns, tall images
    two rows, and everything else a 2x2 grid.
    """

    if width <= 0 or height <= 0:
        raise ValueError("image dimensions must be positive")
    if width <= tile_size and height <= tile_size:
        return (1, 1)
    aspect = width / height
    if aspect > 1.5:
        return (1, 2)
    if aspect < 0.67:
        return (2, 1)
    return (2, 2)


def tile_image(image: pyvips.Image, tile_size: int = TILE_SIZE) -> np.ndarray:
    """Resize ``image`` onto its tile grid and split it into square tiles.

    Returns a ``[tiles, tile_size, tile_size, 3]`` uint8 array in row-major
    tile order.
    """

    rows, cols = compute_grid(image.width, image.height, tile_size)
    target_h, target_w = rows * tile_size, cols * tile_size
    resized = image.resize(target_w / image.width, vscale=target_h / image.height)
    canvas = fit_to(vips_to_uint8_numpy(resized), target_h, target_w)

    tiles = canvas.reshape(rows, tile_size, cols, tile_size, canvas.shape[2])
    return np.ascontiguousarray(tiles.transpose(0, 2, 1, 3, 4)).reshape(
        rows * cols, tile_size, tile_size, canvas.shape[2]
    )


def fit_to(array: np.ndarray, height: int, width: int) -> np.ndarray:
    """Crop or edge-pad an HxWxC array to exactly ``height`` x ``width``."""

    # Resampling may round a dimension off by a pixel.
    array = array[:height, :width]
    pad_h = height - array.shape[0]
    pad_w = width - array.shape[1]
    if pad_h or pad_w:
        array = np.pad(array, ((0, pad_h), (0, pad_w), (0, 0)), mode="edge")
    return array


def patchify(tiles: np.ndarray, patch_size: int = PATCH_SIZE) -> np.ndarray:
    """Normalise uint8 tiles and flatten them into patch vectors.

    ``[tiles, H, W, 3]`` becomes ``[tiles, (H/p)*(W/p), p*p*3]`` float32, with
    patches in row-major order and each patch flattened as (row, col, channel).
    """

    n, height, width, channels = tiles.shape
    if height % patch_size or width % patch_size:
        raise ValueError(f"tile size {height}x{width} is not a multiple of {patch_size}")
    pixels = (tiles.astype(np.float32) / 255.0 - IMAGENET_MEAN) / IMAGENET_STD
    gh, gw = height // patch_size, width // patch_size
    patches = pixels.reshape(n, gh, patch_size, gw, patch_size, channels)
    patches = patches.transpose(0, 1, 3, 2, 4, 5)
    return np.ascontiguousarray(
        patches.reshape(n, gh * gw, patch_size * patch_size * channels), dtype=np.float32
    )


__all__ = [
    "IMAGENET_MEAN",
    "IMAGENET_STD",
    "PATCH_SIZE",
    "TILE_SIZE",
    "compute_grid",
    "fit_to",
    "patchify",
    "tile_image",
]
