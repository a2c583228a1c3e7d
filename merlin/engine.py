"""Synchronous coordination layer for vision-language inference.

The runtime is the high-level entry point for clients. It owns:

- Lifecycle of the three computation graphs, the tokenizer, and the model
  configuration: ``load`` brings them up together and ``dispose`` tears them
  down, releasing each graph independently.
- The artifact cache and downloader every model file flows through.
- The image embedding cache, scoped to a conversation by convention and
  emptied with :meth:`VisionLanguageRuntime.clear_image_cache`.
- Prompt assembly for ``generate``: image embedding, marker placement,
  token expansion, text embedding, composition, and the decode loop.

A single re-entrant lock serialises ``load``, ``generate`` and ``dispose``,
so no two graph executions overlap on the same session and disposal never
races an in-flight generation.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Dict, List, Mapping, Optional, Sequence, Union

import httpx

from merlin.artifacts import ArtifactCache, CacheInfo, Downloader, is_remote
from merlin.config import DEFAULT_QUANTIZATION, QuantizationConfig, RuntimeConfig
from merlin.errors import RuntimeNotLoadedError
from merlin.lfm.config import ModelConfig
from merlin.lfm.image_preprocessor import ImagePreprocessor
from merlin.lfm.runtime import (
    CancellationToken,
    DecodeEngine,
    DecodeResult,
    StatsCallback,
    TokenCallback,
)
from merlin.lfm.text import RemoteDocumentResolver, TextTokenizer, load_tokenizer
from merlin.lfm.tokens import Message, build_prompt_messages, expand_image_tokens
from merlin.lfm.vision import ImageEmbedder, build_combined_embeddings
from merlin.lfm.weights import (
    GraphLoader,
    LoadedGraphs,
    ProgressCallback,
    ProgressEvent,
    SessionFactory,
)
from merlin.model_download import ModelLocation, lookup_model, resolve_model_path


_LOGGER = logging.getLogger(__name__)

QuantizationArg = Union[None, str, Mapping[str, Optional[str]], QuantizationConfig]


def _ordered_images(
    messages: Sequence[Message],
    images: Sequence[str],
    message_image_map: Optional[Mapping[int, Sequence[str]]],
) -> Dict[int, List[str]]:
    """Resolve which message each image belongs to.

    Without an explicit map every image is attached to the last user turn.
    """

    if message_image_map is not None:
        mapped = {int(idx): list(refs) for idx, refs in sorted(message_image_map.items()) if refs}
        for idx in mapped:
            if not 0 <= idx < len(messages):
                raise ValueError(f"message_image_map refers to missing message {idx}")
            role = messages[idx].get("role")
            if role != "user":
                raise ValueError(f"message_image_map entry {idx} is a {role!r} turn, not a user turn")
        flattened = [ref for refs in mapped.values() for ref in refs]
        if images and list(images) != flattened:
            raise ValueError("images must match the images listed in message_image_map")
        return mapped
    if not images:
        return {}
    user_turns = [idx for idx, message in enumerate(messages) if message.get("role") == "user"]
    if not user_turns:
        raise ValueError("images were supplied but there is no user message to attach them to")
    return {user_turns[-1]: list(images)}


class VisionLanguageRuntime:
    """Loads a three-graph vision-language model and generates text with it."""

    def __init__(
        self,
        config: Optional[RuntimeConfig] = None,
        *,
        client: Optional[httpx.Client] = None,
        session_factory: Optional[SessionFactory] = None,
        available_providers: Optional[Sequence[str]] = None,
    ) -> None:
        self.config = config or RuntimeConfig()
        self._lock = threading.RLock()
        self._cache = ArtifactCache(
            self.config.resolved_cache_root(),
            self.config.resolved_cache_name(),
            max_bytes=self.config.max_cache_bytes,
        )
        self._downloader = Downloader(
            self._cache,
            client=client,
            attempts=self.config.download_attempts,
            timeout_s=self.config.request_timeout_s,
        )
        self._loader = GraphLoader(
            self._downloader,
            session_factory=session_factory,
            large_file_threshold=self.config.large_file_threshold,
            available_providers=available_providers,
        )

        self._location: Optional[ModelLocation] = None
        self._graphs: Optional[LoadedGraphs] = None
        self._tokenizer: Optional[TextTokenizer] = None
        self._model_config: Optional[ModelConfig] = None
        self._preprocessor: Optional[ImagePreprocessor] = None
        self._image_embedder: Optional[ImageEmbedder] = None
        self._decode: Optional[DecodeEngine] = None
        # Remote files from the last load that the cache could not keep.
        self.uncached_files: List[str] = []

    # ------------------------------------------------------------------
    # Lifecycle

    @property
    def is_loaded(self) -> bool:
        return self._graphs is not None

    @property
    def model_config(self) -> Optional[ModelConfig]:
        return self._model_config

    @property
    def cache(self) -> ArtifactCache:
        return self._cache

    def load(
        self,
        model_path: str,
        *,
        device: Optional[str] = None,
        quantization: QuantizationArg = None,
        progress_callback: Optional[ProgressCallback] = None,
        revision: Optional[str] = None,
    ) -> None:
        """Load the tokenizer, model configuration and graphs from ``model_path``.

        A previously loaded model is disposed first. On failure every partially
        loaded resource is released and the error is re-raised; the runtime is
        left unloaded.
        """

        def report(status: str, progress: int, file: str) -> None:
            if progress_callback is not None:
                progress_callback(ProgressEvent(status, progress, file))

        with self._lock:
            if self._graphs is not None:
                self._dispose_locked()

            location = resolve_model_path(model_path, revision=revision)
            registered = lookup_model(model_path)
            device = device or self.config.device
            if quantization is not None:
                quant = QuantizationConfig.parse(quantization)
            else:
                quant = self.config.resolved_quantization(
                    registered.quantization if registered is not None else DEFAULT_QUANTIZATION
                )
            _LOGGER.info(
                "Loading %s (device=%s, quantization=%s)",
                registered.label if registered is not None else location,
                device,
                quant,
            )

            try:
                report("loading", 0, "tokenizer")
                resolver = RemoteDocumentResolver(location, self._downloader)
                tokenizer, special = load_tokenizer(resolver)
                self._tokenizer = tokenizer

                report("loading", 10, "config")
                config_url = location.url_for("config.json")
                raw_config = self._downloader.fetch(config_url)
                self._model_config = ModelConfig.from_dict(json.loads(raw_config), special)
                _LOGGER.info("Model config: %s", self._model_config)

                graphs = self._loader.load_graphs(
                    location,
                    device=device,
                    quantization=quant,
                    progress_callback=progress_callback,
                )
                self._graphs = graphs
                self._preprocessor = ImagePreprocessor(fetch=self._fetch_image)
                self._image_embedder = ImageEmbedder(graphs.embed_images, self._preprocessor)
                self._decode = DecodeEngine(
                    graphs.decoder, graphs.embed_text, tokenizer, self._model_config
                )
            except BaseException as exc:
                _LOGGER.error("Failed to load model %s: %s", location, exc)
                self._dispose_locked()
                raise

            self._location = location
            sources = resolver.fetched + [config_url]
            for handle in graphs:
                sources.extend(handle.sources)
            self.uncached_files = self._cache.missing([url for url in sources if is_remote(url)])
            if self.uncached_files:
                _LOGGER.warning(
                    "%d model file(s) are not in the artifact cache and will be downloaded "
                    "again on the next load: %s",
                    len(self.uncached_files),
                    ", ".join(url.rsplit("/", 1)[-1] for url in self.uncached_files),
                )
            report("done", 100, "")
            self._cache.prune_stale()

    def dispose(self) -> List[str]:
        """Release every model resource. Returns the graphs that failed to release."""

        with self._lock:
            return self._dispose_locked()

    def _dispose_locked(self) -> List[str]:
        if self._image_embedder is not None:
            self._image_embedder.clear()
        if self._preprocessor is not None:
            self._preprocessor.shutdown(wait=False)
        self._image_embedder = None
        self._preprocessor = None
        self._decode = None
        self._tokenizer = None
        self._model_config = None
        self._location = None

        failed: List[str] = []
        graphs, self._graphs = self._graphs, None
        if graphs is not None:
            for name, handle in zip(graphs._fields, graphs):
                try:
                    handle.release()
                except Exception:
                    _LOGGER.exception("Error releasing %s", name)
                    failed.append(name)
        return failed

    def close(self) -> None:
        self.dispose()
        self._downloader.close()

    def __enter__(self) -> "VisionLanguageRuntime":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Generation

    def _fetch_image(self, url: str) -> bytes:
        return self._downloader.fetch(url, use_cache=False)

    def generate(
        self,
        messages: Sequence[Message],
        *,
        max_new_tokens: Optional[int] = None,
        images: Sequence[str] = (),
        message_image_map: Optional[Mapping[int, Sequence[str]]] = None,
        on_token: Optional[TokenCallback] = None,
        cancel: Optional[CancellationToken] = None,
        on_stats: Optional[StatsCallback] = None,
    ) -> str:
        """Generate a reply to ``messages`` and return its text."""

        return self.generate_result(
            messages,
            max_new_tokens=max_new_tokens,
            images=images,
            message_image_map=message_image_map,
            on_token=on_token,
            cancel=cancel,
            on_stats=on_stats,
        ).text

    def generate_result(
        self,
        messages: Sequence[Message],
        *,
        max_new_tokens: Optional[int] = None,
        images: Sequence[str] = (),
        message_image_map: Optional[Mapping[int, Sequence[str]]] = None,
        on_token: Optional[TokenCallback] = None,
        cancel: Optional[CancellationToken] = None,
        on_stats: Optional[StatsCallback] = None,
    ) -> DecodeResult:
        """Generate a reply and return tokens, text, finish reason and metrics.

        Images are embedded (or taken from the image cache) before the prompt
        is built. Each image-bearing user turn gets one marker per image, the
        markers are expanded to the per-image token counts, and the image rows
        are written over the marker positions of the text embeddings.
        """

        if not messages:
            raise ValueError("messages must be non-empty")
        if max_new_tokens is None:
            max_new_tokens = self.config.max_new_tokens
        if max_new_tokens <= 0:
            raise ValueError("max_new_tokens must be positive")

        with self._lock:
            if (
                self._decode is None
                or self._tokenizer is None
                or self._image_embedder is None
                or self._model_config is None
            ):
                raise RuntimeNotLoadedError("No model is loaded; call load() first")
            special = self._model_config.special_tokens

            image_map = _ordered_images(messages, images, message_image_map)
            ordered = [ref for refs in image_map.values() for ref in refs]
            image_embeddings = self._image_embedder.get_image_embeddings(ordered)
            if ordered:
                _LOGGER.info(
                    "Image tokens: %d (per-image: %s)",
                    image_embeddings.total_tokens,
                    image_embeddings.tokens_per_image,
                )

            prompt = self._tokenizer.render_chat(build_prompt_messages(messages, image_map))
            ids = expand_image_tokens(
                self._tokenizer.encode(prompt), image_embeddings.tokens_per_image, special
            )
            text_embeddings = self._decode.embed_tokens(ids)
            inputs_embeds = build_combined_embeddings(
                ids,
                text_embeddings,
                image_embeddings.embeddings,
                special.image,
                strict=self.config.strict_image_tokens,
            )
            _LOGGER.debug("Input sequence: %d tokens", inputs_embeds.shape[1])

            return self._decode.run(
                inputs_embeds,
                max_new_tokens=max_new_tokens,
                on_token=on_token,
                cancel=cancel,
                on_stats=on_stats,
            )

    # ------------------------------------------------------------------
    # Caches

    def get_cache_info(self) -> CacheInfo:
        return self._cache.info()

    def clear_model_cache(self) -> bool:
        return self._cache.clear()

    def clear_image_cache(self) -> None:
        with self._lock:
            if self._image_embedder is not None:
                self._image_embedder.clear()


__all__ = ["VisionLanguageRuntime"]
