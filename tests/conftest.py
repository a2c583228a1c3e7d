"""Shared fixtures: a tiny tokenizer and fake graph sessions."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Sequence

import numpy as np
import pytest
from tokenizers import Tokenizer, models, pre_tokenizers

from merlin.lfm.config import ModelConfig, SpecialTokens
from merlin.lfm.text import (
    TOKENIZER_CONFIG_DOCUMENT,
    TOKENIZER_DOCUMENT,
    InMemoryDocumentResolver,
    TextTokenizer,
    load_tokenizer,
)
from merlin.lfm.weights import GraphHandle


HIDDEN = 8
KV_HEADS = 2
HEAD_DIM = 4
CONV_LEN = 3
CONV_LAYERS = (0, 2)
ATTN_LAYERS = (1,)

WORDS = [
    "[UNK]",
    "user",
    "assistant",
    "system",
    "hello",
    "world",
    "describe",
    "this",
    "the",
    "cat",
    "is",
    "here",
]
SPECIALS = [
    "<|startoftext|>",
    "<|im_start|>",
    "<|im_end|>",
    "<image>",
    "<|image_start|>",
    "<|image_end|>",
    "<|image_split|>",
]


def build_tokenizer_json(specials: Sequence[str] = SPECIALS) -> str:
    tokenizer = Tokenizer(models.WordLevel({w: i for i, w in enumerate(WORDS)}, unk_token="[UNK]"))
    tokenizer.pre_tokenizer = pre_tokenizers.Whitespace()
    tokenizer.add_special_tokens(list(specials))
    return tokenizer.to_str()


def build_documents(
    specials: Sequence[str] = SPECIALS, eos_token: object = "<|im_end|>"
) -> Dict[str, str]:
    return {
        TOKENIZER_DOCUMENT: build_tokenizer_json(specials),
        TOKENIZER_CONFIG_DOCUMENT: json.dumps(
            {"eos_token": eos_token, "bos_token": "<|startoftext|>"}
        ),
    }


@pytest.fixture
def tokenizer_documents() -> Dict[str, str]:
    return build_documents()


@pytest.fixture
def tokenizer_and_special(tokenizer_documents):
    return load_tokenizer(InMemoryDocumentResolver(tokenizer_documents))


@pytest.fixture
def text_tokenizer(tokenizer_and_special) -> TextTokenizer:
    return tokenizer_and_special[0]


@pytest.fixture
def special_tokens(tokenizer_and_special) -> SpecialTokens:
    return tokenizer_and_special[1]


@pytest.fixture
def model_config(special_tokens) -> ModelConfig:
    return ModelConfig(
        hidden_size=HIDDEN,
        num_kv_heads=KV_HEADS,
        head_dim=HEAD_DIM,
        conv_cache_len=CONV_LEN,
        special_tokens=special_tokens,
    )


# ---------------------------------------------------------------------------
# Fake sessions


@dataclass
class FakeArg:
    name: str
    type: str = "tensor(float)"


class FakeSession:
    """Stands in for an ``onnxruntime.InferenceSession``."""

    def __init__(
        self,
        inputs: Mapping[str, str],
        outputs: Sequence[str],
        compute: Callable[[Dict[str, np.ndarray], object], Dict[str, np.ndarray]],
    ) -> None:
        self._inputs = dict(inputs)
        self._outputs = list(outputs)
        self._compute = compute
        self.calls: List[Dict[str, np.ndarray]] = []

    def get_inputs(self) -> List[FakeArg]:
        return [FakeArg(name, kind) for name, kind in self._inputs.items()]

    def get_outputs(self) -> List[FakeArg]:
        return [FakeArg(name) for name in self._outputs]

    def run(self, names, feeds, run_options=None):
        self.calls.append(dict(feeds))
        produced = self._compute(dict(feeds), run_options)
        return [produced[name] for name in names]


def text_embed_session() -> FakeSession:
    """Embeds token id ``t`` as a row filled with ``float(t)``."""

    def compute(feeds, _):
        ids = feeds["input_ids"]
        assert ids.dtype == np.int64
        return {"inputs_embeds": np.repeat(ids[..., None].astype(np.float32), HIDDEN, axis=-1)}

    return FakeSession({"input_ids": "tensor(int64)"}, ["inputs_embeds"], compute)


def image_embed_session(tokens_per_tile: int = 4, fill: float = 100.0) -> FakeSession:
    """Emits ``tokens_per_tile`` rows per tile, all equal to ``fill``."""

    def compute(feeds, _):
        pixel_values = feeds["pixel_values"]
        assert feeds["pixel_attention_mask"].dtype == np.int64
        assert feeds["spatial_shapes"].shape == (pixel_values.shape[0], 2)
        rows = pixel_values.shape[0] * tokens_per_tile
        return {"image_features": np.full((rows, HIDDEN), fill, dtype=np.float32)}

    return FakeSession(
        {
            "pixel_values": "tensor(float)",
            "pixel_attention_mask": "tensor(int64)",
            "spatial_shapes": "tensor(int64)",
        },
        ["image_features"],
        compute,
    )


def decoder_inputs() -> Dict[str, str]:
    inputs = {"inputs_embeds": "tensor(float)", "attention_mask": "tensor(int64)"}
    for layer in sorted(CONV_LAYERS + ATTN_LAYERS):
        if layer in CONV_LAYERS:
            inputs[f"past_conv.{layer}"] = "tensor(float)"
        else:
            inputs[f"past_key_values.{layer}.key"] = "tensor(float)"
            inputs[f"past_key_values.{layer}.value"] = "tensor(float)"
    return inputs


def decoder_outputs() -> List[str]:
    outputs = ["logits"]
    for layer in sorted(CONV_LAYERS + ATTN_LAYERS):
        if layer in CONV_LAYERS:
            outputs.append(f"present_conv.{layer}")
        else:
            outputs.append(f"present.{layer}.key")
            outputs.append(f"present.{layer}.value")
    return outputs


class ScriptedDecoder:
    """Decoder whose argmax follows ``script`` step by step.

    The step index is derived from the attention cache length, so every
    generation starting from an empty cache replays the same script.
    """

    def __init__(self, script: Sequence[int], vocab_size: int = 32) -> None:
        self.script = list(script)
        self.vocab_size = vocab_size
        self._prompt_len = 0
        self.session = FakeSession(decoder_inputs(), decoder_outputs(), self._compute)

    @property
    def calls(self) -> List[Dict[str, np.ndarray]]:
        return self.session.calls

    def _compute(self, feeds, run_options):
        embeds = feeds["inputs_embeds"]
        n = embeds.shape[1]
        past = feeds[f"past_key_values.{ATTN_LAYERS[0]}.key"].shape[2]
        assert feeds["attention_mask"].shape == (1, past + n)
        if past == 0:
            self._prompt_len = n
            step = 0
        else:
            step = past - self._prompt_len + 1
        token = self.script[min(step, len(self.script) - 1)]

        logits = np.zeros((1, n, self.vocab_size), dtype=np.float32)
        logits[0, -1, token] = 1.0
        out = {"logits": logits}
        for layer in CONV_LAYERS:
            out[f"present_conv.{layer}"] = feeds[f"past_conv.{layer}"] + 1.0
        for layer in ATTN_LAYERS:
            for kind in ("key", "value"):
                past_kv = feeds[f"past_key_values.{layer}.{kind}"]
                grown = np.zeros((1, KV_HEADS, n, HEAD_DIM), dtype=np.float32)
                out[f"present.{layer}.{kind}"] = np.concatenate([past_kv, grown], axis=2)
        return out


@pytest.fixture
def make_decoder() -> Callable[..., ScriptedDecoder]:
    return ScriptedDecoder


@pytest.fixture
def text_embed_graph() -> GraphHandle:
    return GraphHandle("embed_tokens", text_embed_session())


@pytest.fixture
def make_image_graph() -> Callable[..., GraphHandle]:
    def _make(tokens_per_tile: int = 4, fill: float = 100.0) -> GraphHandle:
        return GraphHandle("embed_images", image_embed_session(tokens_per_tile, fill))

    return _make


# ---------------------------------------------------------------------------
# On-disk model directory


@pytest.fixture
def model_dir(tmp_path: Path, tokenizer_documents) -> Path:
    """A local model directory laid out like a published export."""

    root = tmp_path / "model"
    (root / "onnx").mkdir(parents=True)
    for name, text in tokenizer_documents.items():
        (root / name).write_text(text, encoding="utf-8")
    (root / "config.json").write_text(
        json.dumps(
            {
                "text_config": {
                    "hidden_size": HIDDEN,
                    "num_attention_heads": HIDDEN // HEAD_DIM,
                    "num_key_value_heads": KV_HEADS,
                    "conv_L_cache": CONV_LEN,
                }
            }
        ),
        encoding="utf-8",
    )
    for stem in ("embed_tokens_fp16", "embed_images_q8", "decoder_q4"):
        (root / "onnx" / f"{stem}.onnx").write_bytes(b"graph:" + stem.encode())
    (root / "onnx" / "decoder_q4.onnx_data").write_bytes(b"\x00" * 64)
    return root


@pytest.fixture
def cache_dir(tmp_path: Path) -> Path:
    return tmp_path / "cache"
