"""Image preprocessing with a small worker pool.

Decoding, resizing and patch extraction for several images can run in
parallel while the image embedder consumes the results in input order.
"""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from typing import NamedTuple, Optional

import numpy as np

from merlin.utils.image import FetchBytes, load_image

from .image_crops import PATCH_SIZE, TILE_SIZE, patchify, tile_image


class PreprocessedImage(NamedTuple):
    """Encoder inputs for one image.

    ``pixel_values`` is ``[tiles, patches, patch_dim]`` float32;
    ``pixel_attention_mask`` ``[tiles, patches]`` int64 (all ones);
    ``spatial_shapes`` ``[tiles, 2]`` int64 patch-grid height and width.
    """

    pixel_values: np.ndarray
    pixel_attention_mask: np.ndarray
    spatial_shapes: np.ndarray

    @property
    def num_tiles(self) -> int:
        return int(self.pixel_values.shape[0])


def encoder_inputs(tiles: np.ndarray, patch_size: int = PATCH_SIZE) -> PreprocessedImage:
    """Build encoder inputs from ``[tiles, H, W, 3]`` uint8 tiles."""

    pixel_values = patchify(tiles, patch_size)
    n_tiles, n_patches = pixel_values.shape[:2]
    grid = (tiles.shape[1] // patch_size, tiles.shape[2] // patch_size)
    return PreprocessedImage(
        pixel_values=pixel_values,
        pixel_attention_mask=np.ones((n_tiles, n_patches), dtype=np.int64),
        spatial_shapes=np.tile(np.array(grid, dtype=np.int64), (n_tiles, 1)),
    )


class ImagePreprocessor:
    """Turns image references into encoder inputs.

    Usage:
        preprocessor = ImagePreprocessor(fetch=downloader.fetch)
        futures = [preprocessor.submit(ref) for ref in refs]
        inputs = [f.result() for f in futures]
        preprocessor.shutdown()
    """

    def __init__(
        self,
        fetch: Optional[FetchBytes] = None,
        *,
        num_workers: int = 4,
        tile_size: int = TILE_SIZE,
        patch_size: int = PATCH_SIZE,
    ) -> None:
        self._fetch = fetch
        self._tile_size = tile_size
        self._patch_size = patch_size
        self._executor = ThreadPoolExecutor(
            max_workers=num_workers,
            thread_name_prefix="merlin-img",
        )

    def preprocess(self, reference: str) -> PreprocessedImage:
        image = load_image(reference, self._fetch)
        tiles = tile_image(image, self._tile_size)
        return encoder_inputs(tiles, self._patch_size)

    def submit(self, reference: str) -> Future[PreprocessedImage]:
        return self._executor.submit(self.preprocess, reference)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


__all__ = ["ImagePreprocessor", "PreprocessedImage", "encoder_inputs"]
