"""Tests for the per-generation decoder cache."""

from __future__ import annotations

import numpy as np
import pytest

from merlin.errors import CacheLayoutError
from merlin.kv_cache import (
    AttentionSlot,
    ConvSlot,
    GenerationCache,
    conv_output_name,
    is_cache_input,
    kv_output_name,
)
from merlin.lfm.config import ModelConfig


CONFIG = ModelConfig(hidden_size=6, num_kv_heads=2, head_dim=3, conv_cache_len=2)
INPUTS = [
    "inputs_embeds",
    "attention_mask",
    "past_conv.0",
    "past_key_values.1.key",
    "past_key_values.1.value",
    "past_conv.2",
]


def present(cache: GenerationCache, new_tokens: int, fill: float = 1.0):
    """Decoder outputs that grow every attention slot by ``new_tokens``."""

    outputs = {}
    for layer, slot in cache:
        if isinstance(slot, ConvSlot):
            outputs[conv_output_name(layer)] = np.full_like(slot.state, fill)
        else:
            shape = list(slot.key.shape)
            shape[2] += new_tokens
            outputs[kv_output_name(layer, "key")] = np.full(shape, fill, np.float32)
            outputs[kv_output_name(layer, "value")] = np.full(shape, fill, np.float32)
    return outputs


class TestFromDecoder:
    """Slot discovery from declared inputs."""

    def test_initial_shapes(self) -> None:
        cache = GenerationCache.from_decoder(INPUTS, CONFIG)

        assert len(cache) == 3
        assert isinstance(cache[0], ConvSlot)
        assert cache[0].state.shape == (1, 6, 2)
        assert not cache[0].state.any()
        assert isinstance(cache[1], AttentionSlot)
        assert cache[1].key.shape == (1, 2, 0, 3)
        assert cache.seq_len == 0

    def test_dtype_follows_declared_input(self) -> None:
        cache = GenerationCache.from_decoder(INPUTS, CONFIG, lambda name: np.dtype(np.float16))
        assert cache[1].value.dtype == np.float16
        assert cache[2].state.dtype == np.float16

    def test_feeds_use_past_names(self) -> None:
        feeds = GenerationCache.from_decoder(INPUTS, CONFIG).feeds()
        assert sorted(feeds) == sorted(name for name in INPUTS if is_cache_input(name))

    def test_output_names_use_present_names(self) -> None:
        names = GenerationCache.from_decoder(INPUTS, CONFIG).output_names()
        assert names == ["present_conv.0", "present.1.key", "present.1.value", "present_conv.2"]

    def test_layer_cannot_be_both_kinds(self) -> None:
        with pytest.raises(CacheLayoutError):
            GenerationCache.from_decoder(["past_conv.1", "past_key_values.1.key", "past_key_values.1.value"], CONFIG)

    def test_attention_needs_key_and_value(self) -> None:
        with pytest.raises(CacheLayoutError):
            GenerationCache.from_decoder(["past_key_values.0.key"], CONFIG)


class TestUpdate:
    """Replacing slots from decoder outputs."""

    def test_attention_grows_conv_keeps_shape(self) -> None:
        cache = GenerationCache.from_decoder(INPUTS, CONFIG)

        cache.update(present(cache, 5), 5)
        cache.update(present(cache, 1, fill=2.0), 1)

        assert cache.seq_len == 6
        assert cache[0].state.shape == (1, 6, 2)
        assert float(cache[2].state.max()) == 2.0

    def test_missing_output_leaves_cache_untouched(self) -> None:
        cache = GenerationCache.from_decoder(INPUTS, CONFIG)
        outputs = present(cache, 2)
        del outputs["present_conv.2"]

        with pytest.raises(CacheLayoutError, match="present_conv.2"):
            cache.update(outputs, 2)
        assert cache.seq_len == 0

    def test_wrong_growth_rejected(self) -> None:
        cache = GenerationCache.from_decoder(INPUTS, CONFIG)
        with pytest.raises(CacheLayoutError):
            cache.update(present(cache, 2), 3)

    def test_conv_shape_checked(self) -> None:
        cache = GenerationCache.from_decoder(INPUTS, CONFIG)
        outputs = present(cache, 1)
        outputs["present_conv.0"] = np.zeros((1, 6, 3), np.float32)
        with pytest.raises(CacheLayoutError):
            cache.update(outputs, 1)
