"""Model registry and resolution of model paths to download locations."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from huggingface_hub import hf_hub_url


@dataclass(frozen=True)
class ModelSpec:
    """A known model and the defaults it loads with."""

    id: str
    label: str
    repo_id: str
    revision: str = "main"
    quantization: Optional[str] = "q4"


MODELS = {
    "lfm25-vl-1.6b": ModelSpec(
        id="lfm25-vl-1.6b",
        label="LFM2.5 VL 1.6B (Vision)",
        repo_id="LiquidAI/LFM2.5-VL-1.6B-ONNX",
    ),
}

DEFAULT_MODEL_ID = "lfm25-vl-1.6b"


@dataclass(frozen=True)
class ModelLocation:
    """Where a model's files live: a base URL, a local directory, or a Hub repo."""

    base: str
    revision: Optional[str] = None
    is_repo: bool = False

    def url_for(self, filename: str) -> str:
        if self.is_repo:
            return hf_hub_url(self.base, filename, revision=self.revision)
        if self.base.startswith(("http://", "https://")):
            return f"{self.base.rstrip('/')}/{filename}"
        return str(Path(self.base) / filename)

    def __str__(self) -> str:
        if self.is_repo:
            return f"{self.base}@{self.revision or 'main'}"
        return self.base


def lookup_model(model: str) -> Optional[ModelSpec]:
    """Return the registry entry for ``model``, or ``None`` for unregistered paths."""

    return MODELS.get(model.strip())


def resolve_model_path(model: str, *, revision: Optional[str] = None) -> ModelLocation:
    """Turn a registry id, Hub repo id, base URL, or local directory into a location.

    Registry ids map to their Hub repo and pinned revision; an explicit
    ``revision`` overrides the pin. URLs and existing directories pass
    through unchanged.
    """

    model = model.strip()
    if not model:
        raise ValueError("model path must be non-empty")
    if model.startswith(("http://", "https://")):
        return ModelLocation(base=model.rstrip("/"))
    if Path(model).expanduser().is_dir():
        return ModelLocation(base=str(Path(model).expanduser()))
    if model in MODELS:
        spec = MODELS[model]
        return ModelLocation(
            base=spec.repo_id, revision=revision or spec.revision, is_repo=True
        )
    if model.count("/") == 1 and all(model.split("/")):
        return ModelLocation(base=model, revision=revision or "main", is_repo=True)
    raise ValueError(
        f"Unknown model {model!r}: expected a URL, a local directory, a Hub repo id, "
        f"or one of {list(MODELS)}"
    )


__all__ = [
    "DEFAULT_MODEL_ID",
    "MODELS",
    "ModelLocation",
    "ModelSpec",
    "lookup_model",
    "resolve_model_path",
]
