"""Tokenizer bootstrap and chat prompt rendering.

The tokenizer is built from two JSON documents (``tokenizer.json`` and
``tokenizer_config.json``) handed over by a :class:`DocumentResolver`, so it
does not depend on a conventional model-repository layout on disk. Special
token ids the runtime needs are recovered from the ``added_tokens`` table by
exact content match.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple

from tokenizers import Tokenizer

from merlin.artifacts import Downloader
from merlin.model_download import ModelLocation

from .config import (
    DEFAULT_EOS_ID,
    IMAGE_END_TOKEN,
    IMAGE_SPLIT_TOKEN,
    IMAGE_START_TOKEN,
    IMAGE_TOKEN,
    SpecialTokens,
)


_LOGGER = logging.getLogger(__name__)

TOKENIZER_DOCUMENT = "tokenizer.json"
TOKENIZER_CONFIG_DOCUMENT = "tokenizer_config.json"

_CONTROL_MARKER_RE = re.compile(r"<\|[^>]+\|>")
_SENTENCE_MARKER_RE = re.compile(r"</?s>")


class DocumentResolver(Protocol):
    """Supplies named documents to the tokenizer bootstrap."""

    def resolve(self, name: str) -> str: ...


class InMemoryDocumentResolver:
    """Serves documents from a mapping of name to text."""

    def __init__(self, documents: Mapping[str, str]) -> None:
        self._documents = dict(documents)

    def resolve(self, name: str) -> str:
        try:
            return self._documents[name]
        except KeyError:
            raise FileNotFoundError(f"No document named {name!r}") from None


class RemoteDocumentResolver:
    """Fetches documents relative to a model location through the artifact cache."""

    def __init__(self, location: ModelLocation, downloader: Downloader) -> None:
        self._location = location
        self._downloader = downloader
        self.fetched: List[str] = []

    def resolve(self, name: str) -> str:
        url = self._location.url_for(name)
        body = self._downloader.fetch(url)
        self.fetched.append(url)
        return body.decode("utf-8")


def _token_content(value: object) -> Optional[str]:
    # tokenizer_config stores special tokens either as strings or AddedToken dicts.
    if isinstance(value, str):
        return value
    if isinstance(value, Mapping):
        content = value.get("content")
        return content if isinstance(content, str) else None
    return None


class TextTokenizer:
    """Thin wrapper around :class:`tokenizers.Tokenizer` with chat rendering."""

    def __init__(
        self,
        tokenizer: Tokenizer,
        *,
        bos_token: Optional[str] = "<|startoftext|>",
    ) -> None:
        self._tokenizer = tokenizer
        self.bos_token = bos_token

    def encode(self, text: str) -> List[int]:
        return list(self._tokenizer.encode(text, add_special_tokens=False).ids)

    def decode(self, ids: Sequence[int], *, skip_special_tokens: bool = True) -> str:
        return self._tokenizer.decode(list(ids), skip_special_tokens=skip_special_tokens)

    def token_to_id(self, token: str) -> Optional[int]:
        return self._tokenizer.token_to_id(token)

    def render_chat(
        self,
        messages: Iterable[Mapping[str, str]],
        *,
        add_generation_prompt: bool = True,
    ) -> str:
        """Render turns in the LFM ChatML form.

        ``<|startoftext|><|im_start|>{role}\\n{content}<|im_end|>\\n...<|im_start|>assistant\\n``
        """

        turns = [
            f"<|im_start|>{message['role']}\n{message['content']}<|im_end|>"
            for message in messages
        ]
        prompt = (self.bos_token or "") + "\n".join(turns)
        if add_generation_prompt:
            prompt += "\n<|im_start|>assistant\n"
        return prompt


def sanitize_content(text: str) -> str:
    """Strip control markers a user could smuggle into the prompt."""

    text = _CONTROL_MARKER_RE.sub("", text)
    text = _SENTENCE_MARKER_RE.sub("", text)
    text = text.replace(IMAGE_TOKEN, "")
    return text.strip()


def load_tokenizer(resolver: DocumentResolver) -> Tuple[TextTokenizer, SpecialTokens]:
    """Build the tokenizer and recover the special-token ids.

    Missing boundary tokens are tolerated (the prompt simply omits them); a
    missing image marker is logged because images cannot be placed without it.
    """

    tokenizer_json = resolver.resolve(TOKENIZER_DOCUMENT)
    config_json = resolver.resolve(TOKENIZER_CONFIG_DOCUMENT)

    tokenizer_data = json.loads(tokenizer_json)
    tokenizer_config = json.loads(config_json)

    added = {
        token["content"]: int(token["id"])
        for token in tokenizer_data.get("added_tokens") or ()
        if "content" in token and "id" in token
    }
    _LOGGER.debug("Found %d added tokens", len(added))

    tokenizer = Tokenizer.from_str(tokenizer_json)

    eos_id: Optional[int] = None
    eos_name = _token_content(tokenizer_config.get("eos_token"))
    if eos_name is not None:
        eos_id = added.get(eos_name)
        if eos_id is None:
            eos_id = tokenizer.token_to_id(eos_name)
    if eos_id is None:
        _LOGGER.warning("EOS token %r not found; defaulting to id %d", eos_name, DEFAULT_EOS_ID)
        eos_id = DEFAULT_EOS_ID

    special = SpecialTokens(
        image=added.get(IMAGE_TOKEN),
        image_start=added.get(IMAGE_START_TOKEN),
        image_end=added.get(IMAGE_END_TOKEN),
        image_split=added.get(IMAGE_SPLIT_TOKEN),
        eos=eos_id,
    )
    if special.image is None:
        _LOGGER.warning("%s token not found in tokenizer; images cannot be placed", IMAGE_TOKEN)
    if special.image_start is None or special.image_end is None:
        _LOGGER.info("Image boundary tokens not found; image regions will not be bracketed")

    bos_name = _token_content(tokenizer_config.get("bos_token"))
    return TextTokenizer(tokenizer, bos_token=bos_name or "<|startoftext|>"), special


__all__ = [
    "DocumentResolver",
    "InMemoryDocumentResolver",
    "RemoteDocumentResolver",
    "TOKENIZER_CONFIG_DOCUMENT",
    "TOKENIZER_DOCUMENT",
    "TextTokenizer",
    "load_tokenizer",
    "sanitize_content",
]
