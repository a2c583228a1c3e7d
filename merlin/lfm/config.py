"""Configuration dataclasses for LFM vision-language models."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional


@dataclass(frozen=True)
class SpecialTokens:
    """Vocabulary ids the runtime needs; any of them may be unresolved."""

    image: Optional[int] = None
    image_start: Optional[int] = None
    image_end: Optional[int] = None
    image_split: Optional[int] = None
    eos: int = 2


IMAGE_TOKEN = "<image>"
IMAGE_START_TOKEN = "<|image_start|>"
IMAGE_END_TOKEN = "<|image_end|>"
IMAGE_SPLIT_TOKEN = "<|image_split|>"

DEFAULT_EOS_ID = 2


@dataclass(frozen=True)
class ModelConfig:
    """Shapes the generation cache is built from. Immutable after load."""

    hidden_size: int = 1024
    num_kv_heads: int = 8
    head_dim: int = 64
    conv_cache_len: int = 3
    special_tokens: SpecialTokens = field(default_factory=SpecialTokens)

    @classmethod
    def from_dict(
        cls,
        config_dict: Mapping,
        special_tokens: Optional[SpecialTokens] = None,
    ) -> "ModelConfig":
        # Vision-language checkpoints nest the decoder settings.
        text: Dict = dict(config_dict.get("text_config") or config_dict)
        hidden = int(text.get("hidden_size", cls.hidden_size))
        n_heads = int(text.get("num_attention_heads", 16))
        return cls(
            hidden_size=hidden,
            num_kv_heads=int(text.get("num_key_value_heads", cls.num_kv_heads)),
            head_dim=int(text.get("head_dim") or hidden // n_heads),
            conv_cache_len=int(text.get("conv_L_cache", cls.conv_cache_len)),
            special_tokens=special_tokens or SpecialTokens(),
        )


__all__ = [
    "DEFAULT_EOS_ID",
    "IMAGE_END_TOKEN",
    "IMAGE_SPLIT_TOKEN",
    "IMAGE_START_TOKEN",
    "IMAGE_TOKEN",
    "ModelConfig",
    "SpecialTokens",
]
