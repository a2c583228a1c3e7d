"""Greedy autoregressive decode loop over the ONNX decoder graph."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, NamedTuple, Optional

import numpy as np
import onnxruntime as ort

from merlin.errors import GenerationCancelled
from merlin.kv_cache import GenerationCache

from .config import ModelConfig
from .sampling import greedy_token
from .text import TextTokenizer
from .weights import GraphHandle


_LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_NEW_TOKENS = 256

TokenCallback = Callable[[str, int], Optional[bool]]
StatsCallback = Callable[[float, int, float], None]


class DecodeState(str, Enum):
    INITIALIZED = "initialized"
    STEPPING = "stepping"
    STOPPED = "stopped"
    ERROR = "error"


class CancellationToken:
    """Cooperative cancellation for one generation.

    The engine checks the token before every decoder step. Cancelling also
    sets ``terminate`` on the token's run options, which aborts a graph
    execution already in flight. An optional timeout cancels the token once
    its deadline has passed.
    """

    def __init__(
        self,
        timeout_s: Optional[float] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._event = threading.Event()
        self._clock = clock
        self._deadline = clock() + timeout_s if timeout_s is not None else None
        self.run_options = ort.RunOptions()

    def cancel(self) -> None:
        self._event.set()
        self.run_options.terminate = True

    @property
    def cancelled(self) -> bool:
        if not self._event.is_set() and self._deadline is not None:
            if self._clock() >= self._deadline:
                self.cancel()
        return self._event.is_set()


@dataclass(frozen=True)
class GenerationMetrics:
    input_tokens: int
    output_tokens: int
    elapsed_s: float

    @property
    def tokens_per_second(self) -> float:
        if self.elapsed_s <= 0:
            return 0.0
        return self.output_tokens / self.elapsed_s


class DecodeResult(NamedTuple):
    tokens: List[int]
    text: str
    finish_reason: str
    metrics: GenerationMetrics


def _dtype_for(graph: GraphHandle, name: str, default: np.dtype) -> np.dtype:
    try:
        return graph.input_dtype(name)
    except KeyError:
        return default


class DecodeEngine:
    """Runs greedy decoding for one loaded model.

    The engine owns no per-generation state between calls to :meth:`run`;
    a fresh :class:`GenerationCache` is created for every generation and
    discarded when it ends, whether normally or by an error.
    """

    def __init__(
        self,
        decoder: GraphHandle,
        embed_text: GraphHandle,
        tokenizer: TextTokenizer,
        config: ModelConfig,
        *,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._decoder = decoder
        self._embed_text = embed_text
        self._tokenizer = tokenizer
        self._config = config
        self._clock = clock
        self._embeds_dtype = _dtype_for(decoder, "inputs_embeds", np.dtype(np.float32))
        self._uses_position_ids = "position_ids" in decoder.input_names
        self.state = DecodeState.INITIALIZED

    def embed_tokens(self, ids: List[int]) -> np.ndarray:
        """Return ``[1, len(ids), hidden]`` text embeddings."""

        input_ids = np.asarray(ids, dtype=np.int64).reshape(1, -1)
        output = "inputs_embeds" if "inputs_embeds" in self._embed_text.output_names else None
        outputs = self._embed_text.run(
            {"input_ids": input_ids}, output_names=[output] if output else None
        )
        return np.asarray(outputs[output or self._embed_text.output_names[0]])

    def new_cache(self) -> GenerationCache:
        return GenerationCache.from_decoder(
            self._decoder.input_names,
            self._config,
            lambda name: _dtype_for(self._decoder, name, np.dtype(np.float32)),
        )

    def _step(
        self,
        cache: GenerationCache,
        embeds: np.ndarray,
        total_len: int,
        cancel: Optional[CancellationToken],
    ) -> Dict[str, np.ndarray]:
        new_tokens = int(embeds.shape[1])
        feeds: Dict[str, np.ndarray] = {
            "inputs_embeds": embeds.astype(self._embeds_dtype, copy=False),
            "attention_mask": np.ones((1, total_len), dtype=np.int64),
        }
        if self._uses_position_ids:
            start = total_len - new_tokens
            feeds["position_ids"] = np.arange(start, total_len, dtype=np.int64).reshape(1, -1)
        feeds.update(cache.feeds())
        run_options = cancel.run_options if cancel is not None else None
        try:
            return self._decoder.run(feeds, run_options)
        except Exception as exc:
            if cancel is not None and cancel.cancelled:
                raise GenerationCancelled("Generation cancelled during decoder run") from exc
            raise

    def run(
        self,
        inputs_embeds: np.ndarray,
        max_new_tokens: int = DEFAULT_MAX_NEW_TOKENS,
        on_token: Optional[TokenCallback] = None,
        cancel: Optional[CancellationToken] = None,
        on_stats: Optional[StatsCallback] = None,
    ) -> DecodeResult:
        """Generate up to ``max_new_tokens`` tokens after ``inputs_embeds``.

        Each step picks the argmax token, reports it to ``on_token`` (a truthy
        return stops generation), then stops on EOS. Otherwise the cache is
        replaced from the decoder outputs and the new token is embedded for the
        next step. The returned text has special tokens suppressed.
        """

        if max_new_tokens <= 0:
            raise ValueError("max_new_tokens must be positive")
        if inputs_embeds.ndim != 3 or inputs_embeds.shape[0] != 1 or inputs_embeds.shape[1] == 0:
            raise ValueError(f"inputs_embeds must be [1, seq, hidden]; got {inputs_embeds.shape}")

        eos_id = self._config.special_tokens.eos
        prompt_len = int(inputs_embeds.shape[1])
        cache = self.new_cache()
        tokens: List[int] = []
        finish_reason = "length"
        total_len = prompt_len
        embeds = inputs_embeds
        started = self._clock()

        self.state = DecodeState.STEPPING
        try:
            for _ in range(max_new_tokens):
                if cancel is not None and cancel.cancelled:
                    finish_reason = "cancelled"
                    break

                outputs = self._step(cache, embeds, total_len, cancel)
                token_id = greedy_token(np.asarray(outputs["logits"]))
                tokens.append(token_id)

                if on_stats is not None:
                    elapsed = self._clock() - started
                    rate = len(tokens) / elapsed if elapsed > 0 else 0.0
                    on_stats(rate, len(tokens), elapsed)

                if on_token is not None:
                    fragment = self._tokenizer.decode([token_id], skip_special_tokens=True)
                    if on_token(fragment, token_id):
                        finish_reason = "callback"
                        break
                if token_id == eos_id:
                    finish_reason = "eos"
                    break

                cache.update(outputs, int(embeds.shape[1]))
                embeds = self.embed_tokens([token_id])
                total_len += 1
        except BaseException:
            self.state = DecodeState.ERROR
            raise
        self.state = DecodeState.STOPPED

        metrics = GenerationMetrics(prompt_len, len(tokens), self._clock() - started)
        _LOGGER.info(
            "Generated %d tokens (%s) in %.2fs, %.1f tok/s",
            metrics.output_tokens,
            finish_reason,
            metrics.elapsed_s,
            metrics.tokens_per_second,
        )
        text = self._tokenizer.decode(tokens, skip_special_tokens=True)
        return DecodeResult(tokens, text, finish_reason, metrics)


__all__ = [
    "CancellationToken",
    "DEFAULT_MAX_NEW_TOKENS",
    "DecodeEngine",
    "DecodeResult",
    "DecodeState",
    "GenerationMetrics",
    "StatsCallback",
    "TokenCallback",
]
