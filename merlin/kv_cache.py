"""Per-generation decoder state for hybrid convolution/attention models.

The decoder carries two kinds of recurrent state between steps:

* convolution layers keep a fixed window of the last ``K-1`` hidden states
  (``[1, hidden, K-1]``), replaced wholesale every step;
* attention layers keep key and value tensors
  (``[1, kv_heads, seq_len, head_dim]``) whose sequence axis grows by the
  number of tokens fed in that step.

Slots are discovered once from the decoder's declared input names and keyed
by logical layer index. The mapping between slot and graph tensor names lives
only in this module.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, Mapping, Sequence, Tuple, Union

import numpy as np

from merlin.errors import CacheLayoutError
from merlin.lfm.config import ModelConfig


_PAST_CONV_RE = re.compile(r"^past_conv\.(\d+)$")
_PAST_KV_RE = re.compile(r"^past_key_values\.(\d+)\.(key|value)$")


def conv_input_name(layer: int) -> str:
    return f"past_conv.{layer}"


def conv_output_name(layer: int) -> str:
    return f"present_conv.{layer}"


def kv_input_name(layer: int, kind: str) -> str:
    return f"past_key_values.{layer}.{kind}"


def kv_output_name(layer: int, kind: str) -> str:
    return f"present.{layer}.{kind}"


def is_cache_input(name: str) -> bool:
    return bool(_PAST_CONV_RE.match(name) or _PAST_KV_RE.match(name))


@dataclass(frozen=True, slots=True)
class ConvSlot:
    state: np.ndarray


@dataclass(frozen=True, slots=True)
class AttentionSlot:
    key: np.ndarray
    value: np.ndarray

    @property
    def seq_len(self) -> int:
        return int(self.key.shape[2])


CacheSlot = Union[ConvSlot, AttentionSlot]


def _float32(_: str) -> np.dtype:
    return np.dtype(np.float32)


class GenerationCache:
    """Decoder state for one generation; discarded when the generation ends."""

    def __init__(self, slots: Mapping[int, CacheSlot]) -> None:
        self._slots: Dict[int, CacheSlot] = dict(sorted(slots.items()))

    @classmethod
    def from_decoder(
        cls,
        input_names: Sequence[str],
        config: ModelConfig,
        input_dtype: Callable[[str], np.dtype] = _float32,
    ) -> "GenerationCache":
        """Create zeroed conv slots and empty attention slots for every cache input."""

        conv_layers = set()
        kv_parts: Dict[int, set] = {}
        for name in input_names:
            match = _PAST_CONV_RE.match(name)
            if match:
                conv_layers.add(int(match.group(1)))
                continue
            match = _PAST_KV_RE.match(name)
            if match:
                kv_parts.setdefault(int(match.group(1)), set()).add(match.group(2))

        overlap = conv_layers & kv_parts.keys()
        if overlap:
            raise CacheLayoutError(
                f"Layers {sorted(overlap)} declare both convolution and attention state"
            )
        for layer, parts in kv_parts.items():
            if parts != {"key", "value"}:
                raise CacheLayoutError(f"Attention layer {layer} is missing its key or value input")

        slots: Dict[int, CacheSlot] = {}
        for layer in conv_layers:
            dtype = input_dtype(conv_input_name(layer))
            slots[layer] = ConvSlot(
                np.zeros((1, config.hidden_size, config.conv_cache_len), dtype=dtype)
            )
        for layer in kv_parts:
            shape = (1, config.num_kv_heads, 0, config.head_dim)
            slots[layer] = AttentionSlot(
                key=np.zeros(shape, dtype=input_dtype(kv_input_name(layer, "key"))),
                value=np.zeros(shape, dtype=input_dtype(kv_input_name(layer, "value"))),
            )
        return cls(slots)

    def __len__(self) -> int:
        return len(self._slots)

    def __iter__(self) -> Iterator[Tuple[int, CacheSlot]]:
        return iter(self._slots.items())

    def __getitem__(self, layer: int) -> CacheSlot:
        return self._slots[layer]

    @property
    def seq_len(self) -> int:
        """Tokens held by the attention layers (0 for a conv-only model)."""

        for slot in self._slots.values():
            if isinstance(slot, AttentionSlot):
                return slot.seq_len
        return 0

    def feeds(self) -> Dict[str, np.ndarray]:
        out: Dict[str, np.ndarray] = {}
        for layer, slot in self._slots.items():
            if isinstance(slot, ConvSlot):
                out[conv_input_name(layer)] = slot.state
            else:
                out[kv_input_name(layer, "key")] = slot.key
                out[kv_input_name(layer, "value")] = slot.value
        return out

    def output_names(self) -> list[str]:
        names: list[str] = []
        for layer, slot in self._slots.items():
            if isinstance(slot, ConvSlot):
                names.append(conv_output_name(layer))
            else:
                names.append(kv_output_name(layer, "key"))
                names.append(kv_output_name(layer, "value"))
        return names

    def update(self, outputs: Mapping[str, np.ndarray], new_tokens: int) -> None:
        """Replace every slot from the decoder's ``present*`` outputs.

        ``new_tokens`` is the number of positions fed in the step that produced
        ``outputs``; each attention slot must have grown by exactly that much.
        Nothing is modified unless every slot validates.
        """

        updated: Dict[int, CacheSlot] = {}
        for layer, slot in self._slots.items():
            if isinstance(slot, ConvSlot):
                state = self._output(outputs, conv_output_name(layer))
                if state.shape != slot.state.shape:
                    raise CacheLayoutError(
                        f"{conv_output_name(layer)} has shape {state.shape}, "
                        f"expected {slot.state.shape}"
                    )
                updated[layer] = ConvSlot(state)
                continue

            expected = list(slot.key.shape)
            expected[2] += new_tokens
            key = self._output(outputs, kv_output_name(layer, "key"))
            value = self._output(outputs, kv_output_name(layer, "value"))
            for name, array in ((kv_output_name(layer, "key"), key), (kv_output_name(layer, "value"), value)):
                if list(array.shape) != expected:
                    raise CacheLayoutError(
                        f"{name} has shape {tuple(array.shape)}, expected {tuple(expected)}"
                    )
            updated[layer] = AttentionSlot(key=key, value=value)
        self._slots = updated

    @staticmethod
    def _output(outputs: Mapping[str, np.ndarray], name: str) -> np.ndarray:
        try:
            return np.asarray(outputs[name])
        except KeyError:
            raise CacheLayoutError(f"Decoder did not produce {name}") from None


__all__ = [
    "AttentionSlot",
    "CacheSlot",
    "ConvSlot",
    "GenerationCache",
    "conv_input_name",
    "conv_output_name",
    "is_cache_input",
    "kv_input_name",
    "kv_output_name",
]
