"""LFM vision-language model components: tokenizer, graphs, vision, decoding."""

from .config import ModelConfig, SpecialTokens
from .runtime import CancellationToken, DecodeEngine, DecodeResult, GenerationMetrics
from .text import InMemoryDocumentResolver, RemoteDocumentResolver, TextTokenizer, load_tokenizer
from .tokens import build_prompt_messages, expand_image_tokens
from .vision import ImageEmbedder, ImageEmbeddings, build_combined_embeddings
from .weights import GraphHandle, GraphLoader, LoadedGraphs, ProgressEvent

__all__ = [
    "CancellationToken",
    "DecodeEngine",
    "DecodeResult",
    "GenerationMetrics",
    "GraphHandle",
    "GraphLoader",
    "ImageEmbedder",
    "ImageEmbeddings",
    "InMemoryDocumentResolver",
    "LoadedGraphs",
    "ModelConfig",
    "ProgressEvent",
    "RemoteDocumentResolver",
    "SpecialTokens",
    "TextTokenizer",
    "build_combined_embeddings",
    "build_prompt_messages",
    "expand_image_tokens",
    "load_tokenizer",
]
