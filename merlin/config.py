"""Runtime configuration objects for the Merlin inference runtime."""


from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Union


_CACHE_DIR_ENV = "MERLIN_CACHE_DIR"
_DEFAULT_CACHE_DIR = Path("~/.cache/merlin")

MiB = 1024 * 1024
GiB = 1024 * MiB

DEVICES = ("gpu", "cpu")

# Used when neither the caller nor the model registry names a quantization.
DEFAULT_QUANTIZATION = "q4"


@dataclass(frozen=True)
class QuantizationConfig:
    """Per-graph quantization tags.

    ``None`` selects full precision. The text embedder has no tag of its own;
    it uses the reduced-precision variant whenever any graph is quantized.
    """

    decoder: Optional[str] = None
    embed_images: Optional[str] = None

    @classmethod
    def parse(
        cls, value: Union[None, str, Mapping[str, Optional[str]], "QuantizationConfig"]
    ) -> "QuantizationConfig":
        """Accept a uniform tag, a per-graph mapping, or an existing config."""

        if value is None:
            return cls()
        if isinstance(value, QuantizationConfig):
            return value
        if isinstance(value, str):
            tag = value.strip().lower()
            if tag in ("", "none"):
                return cls()
            # No q4 build of the image embedder exists; q8 is the closest.
            return cls(decoder=tag, embed_images="q8" if tag == "q4" else tag)
        if isinstance(value, Mapping):
            unknown = set(value) - {"decoder", "embed_images", "embedImages"}
            if unknown:
                raise ValueError(f"Unknown quantization keys: {sorted(unknown)}")
            images = value.get("embed_images", value.get("embedImages"))
            return cls(decoder=value.get("decoder") or None, embed_images=images or None)
        raise ValueError(f"Unsupported quantization value {value!r}")

    @property
    def embed_tokens(self) -> Optional[str]:
        return "fp16" if (self.decoder or self.embed_images) else None


@dataclass
class RuntimeConfig:
    """Knobs controlling model acquisition and generation."""

    cache_dir: Optional[Path] = None
    cache_namespace: str = "merlin-models"
    cache_version: int = 1
    max_cache_bytes: Optional[int] = None
    device: str = "gpu"
    # None defers to the registered model default, then DEFAULT_QUANTIZATION.
    quantization: Union[None, str, Mapping[str, Optional[str]]] = None
    max_new_tokens: int = 256
    strict_image_tokens: bool = False
    download_attempts: int = 3
    request_timeout_s: float = 60.0
    large_file_threshold: int = 2 * GiB

    def __post_init__(self) -> None:
        if self.device not in DEVICES:
            raise ValueError(f"device must be one of {DEVICES}; got {self.device!r}")
        if self.max_new_tokens <= 0:
            raise ValueError("max_new_tokens must be positive")
        if self.download_attempts <= 0:
            raise ValueError("download_attempts must be positive")

    def resolved_cache_root(self) -> Path:
        """Return the directory that holds every cache namespace."""

        if self.cache_dir is not None:
            base = Path(self.cache_dir)
        else:
            base = Path(os.getenv(_CACHE_DIR_ENV) or _DEFAULT_CACHE_DIR)
        return base.expanduser()

    def resolved_cache_name(self) -> str:
        return f"{self.cache_namespace}-v{self.cache_version}"

    def resolved_quantization(
        self, model_default: Optional[str] = DEFAULT_QUANTIZATION
    ) -> QuantizationConfig:
        if self.quantization is None:
            return QuantizationConfig.parse(model_default)
        return QuantizationConfig.parse(self.quantization)


__all__ = ["DEFAULT_QUANTIZATION", "DEVICES", "GiB", "MiB", "QuantizationConfig", "RuntimeConfig"]
