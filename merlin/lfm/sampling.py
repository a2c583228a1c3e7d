"""Token selection from decoder logits."""

from __future__ import annotations

import numpy as np


def greedy_token(logits: np.ndarray) -> int:
    """Return the argmax token id at the last sequence position.

    Parameters
    ----------
    logits:
        Array of shape ``(vocab,)``, ``(seq, vocab)`` or ``(batch, seq, vocab)``.
        Only the first batch row is considered.

    Returns
    -------
    int
        The vocabulary id with the highest logit. Ties resolve to the lowest id.
    """

    if logits.ndim == 3:
        row = logits[0, -1]
    elif logits.ndim == 2:
        row = logits[-1]
    elif logits.ndim == 1:
        row = logits
    else:
        raise ValueError(f"logits must be 1D, 2D or 3D; received shape {logits.shape}")
    if row.size == 0:
        raise ValueError("logits have an empty vocabulary axis")
    return int(np.argmax(row))


__all__ = ["greedy_token"]
