"""Image embedding cache and the text/image embedding composer."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, NamedTuple, Optional, Sequence

import numpy as np

from merlin.errors import ImageTokenMismatchError

from .image_preprocessor import ImagePreprocessor, PreprocessedImage
from .weights import GraphHandle


_LOGGER = logging.getLogger(__name__)

IMAGE_FEATURES = "image_features"


class ImageEmbeddings(NamedTuple):
    embeddings: Optional[np.ndarray]
    total_tokens: int
    tokens_per_image: List[int]


@dataclass(frozen=True)
class ImageCacheEntry:
    embeddings: np.ndarray
    num_tokens: int


def _freeze(array: np.ndarray) -> np.ndarray:
    array.setflags(write=False)
    return array


class ImageEmbedder:
    """Runs the image-patch embedder and memoises results per image reference.

    Entries live until :meth:`clear` is called, which callers do when a
    conversation ends. Cached arrays are read-only and returned without copying.
    """

    def __init__(self, graph: GraphHandle, preprocessor: ImagePreprocessor) -> None:
        self._graph = graph
        self._preprocessor = preprocessor
        self._cache: Dict[str, ImageCacheEntry] = {}

    def __len__(self) -> int:
        return len(self._cache)

    def cached(self, reference: str) -> Optional[ImageCacheEntry]:
        return self._cache.get(reference)

    def clear(self) -> None:
        self._cache.clear()

    def _embed(self, inputs: PreprocessedImage) -> np.ndarray:
        output = IMAGE_FEATURES if IMAGE_FEATURES in self._graph.output_names else None
        outputs = self._graph.run(
            {
                "pixel_values": inputs.pixel_values,
                "pixel_attention_mask": inputs.pixel_attention_mask,
                "spatial_shapes": inputs.spatial_shapes,
            },
            output_names=[output] if output else None,
        )
        features = np.asarray(outputs[output or self._graph.output_names[0]], dtype=np.float32)
        # Some exports keep a leading batch axis.
        return features.reshape(-1, features.shape[-1])

    def get_image_embeddings(self, images: Sequence[str]) -> ImageEmbeddings:
        """Embed ``images`` in order, reusing cached results.

        Uncached images are preprocessed in parallel and embedded one at a
        time. The returned rows are the per-image embeddings concatenated in
        input order.
        """

        if not images:
            return ImageEmbeddings(None, 0, [])

        pending = {
            ref: self._preprocessor.submit(ref)
            for ref in dict.fromkeys(images)
            if ref not in self._cache
        }
        hits = len(images) - len(pending)
        try:
            for ref, future in pending.items():
                features = _freeze(self._embed(future.result()))
                self._cache[ref] = ImageCacheEntry(features, int(features.shape[0]))
                _LOGGER.debug("Embedded image into %d tokens", features.shape[0])
        finally:
            for future in pending.values():
                future.cancel()
        if hits and pending:
            _LOGGER.debug("Image embeddings: %d cached, %d computed", hits, len(pending))

        entries = [self._cache[ref] for ref in images]
        tokens_per_image = [entry.num_tokens for entry in entries]
        if len(entries) == 1:
            combined = entries[0].embeddings
        else:
            combined = _freeze(np.concatenate([entry.embeddings for entry in entries], axis=0))
        return ImageEmbeddings(combined, sum(tokens_per_image), tokens_per_image)


def build_combined_embeddings(
    sequence: Sequence[int],
    text_embeddings: np.ndarray,
    image_embeddings: Optional[np.ndarray],
    image_token_id: Optional[int],
    *,
    strict: bool = False,
) -> np.ndarray:
    """Overwrite the embedding at each image-marker position with image rows.

    The k-th marker (in sequence order) receives row k of ``image_embeddings``.
    When the marker count and row count differ, the shorter count is used and
    a warning is logged, or :class:`ImageTokenMismatchError` is raised when
    ``strict`` is set. The result always has the shape of ``text_embeddings``.
    """

    if text_embeddings.ndim != 3 or text_embeddings.shape[1] != len(sequence):
        raise ValueError(
            f"text embeddings {text_embeddings.shape} do not match sequence of {len(sequence)}"
        )
    rows = 0 if image_embeddings is None else int(image_embeddings.shape[0])
    if image_token_id is None:
        positions = np.empty(0, dtype=np.int64)
    else:
        positions = np.flatnonzero(np.asarray(sequence, dtype=np.int64) == image_token_id)
    if positions.size == 0 and rows == 0:
        return text_embeddings

    if positions.size != rows:
        if strict:
            raise ImageTokenMismatchError(int(positions.size), rows)
        _LOGGER.warning(
            "Image token mismatch: %d <image> tokens vs %d embeddings", positions.size, rows
        )
    count = min(int(positions.size), rows)
    if count == 0:
        return text_embeddings
    if image_embeddings.shape[-1] != text_embeddings.shape[-1]:
        raise ValueError(
            f"image embedding width {image_embeddings.shape[-1]} != "
            f"text embedding width {text_embeddings.shape[-1]}"
        )

    combined = np.array(text_embeddings, copy=True)
    combined[0, positions[:count]] = image_embeddings[:count].astype(combined.dtype, copy=False)
    return combined


__all__ = [
    "IMAGE_FEATURES",
    "ImageCacheEntry",
    "ImageEmbedder",
    "ImageEmbeddings",
    "build_combined_embeddings",
]
