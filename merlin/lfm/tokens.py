"""Prompt assembly and image-token expansion helpers."""

from __future__ import annotations

from typing import Dict, List, Mapping, Optional, Sequence

from .config import IMAGE_TOKEN, SpecialTokens
from .text import sanitize_content


Message = Mapping[str, str]


def build_prompt_messages(
    messages: Sequence[Message],
    message_image_map: Optional[Mapping[int, Sequence[str]]] = None,
) -> List[Dict[str, str]]:
    """Return chat turns with one image marker per attached image.

    Every turn is sanitised first so the only markers in the prompt are the
    ones placed here. ``message_image_map`` maps a message index to the image
    references attached to it; only user turns may carry images.
    """

    image_map = message_image_map or {}
    out: List[Dict[str, str]] = []
    for idx, message in enumerate(messages):
        role = message.get("role")
        content = message.get("content", "")
        if role not in ("system", "user", "assistant"):
            raise ValueError(f"Unsupported message role: {role!r}")
        if not isinstance(content, str):
            raise ValueError("Message content must be a string")
        content = sanitize_content(content)
        attached = image_map.get(idx) or ()
        if attached:
            if role != "user":
                raise ValueError(f"Images can only be attached to user messages, not {role!r}")
            content = IMAGE_TOKEN * len(attached) + content
        out.append({"role": role, "content": content})
    return out


def expand_image_tokens(
    ids: Sequence[int],
    tokens_per_image: Sequence[int],
    special: SpecialTokens,
) -> List[int]:
    """Replace the i-th image marker with ``tokens_per_image[i]`` markers.

    Each expanded run is bracketed by the image start/end tokens when the
    vocabulary defines them. Markers beyond ``len(tokens_per_image)`` are left
    as single markers; the composer reports the resulting count mismatch.
    """

    marker = special.image
    if marker is None or not tokens_per_image:
        return list(ids)

    expanded: List[int] = []
    image_idx = 0
    for token_id in ids:
        if token_id != marker or image_idx >= len(tokens_per_image):
            expanded.append(token_id)
            continue
        if special.image_start is not None:
            expanded.append(special.image_start)
        expanded.extend([marker] * int(tokens_per_image[image_idx]))
        if special.image_end is not None:
            expanded.append(special.image_end)
        image_idx += 1
    return expanded


def count_image_markers(ids: Sequence[int], marker: Optional[int]) -> int:
    if marker is None:
        return 0
    return sum(1 for token_id in ids if token_id == marker)


__all__ = [
    "Message",
    "build_prompt_messages",
    "count_image_markers",
    "expand_image_tokens",
]
