"""
Equation weighting for the normal-equations step.

Exactly one mode is active per solve, chosen by precedence:

    explicit weights  >  automatic (1/|r0|)  >  label heuristic  >  none
"""

from __future__ import annotations

from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
from loguru import logger

from .errors import ConfigurationError

_PRESSURE_WORDS = ("pressure", "P")
_TEMPERATURE_WORDS = ("temperature", "T")
# Leading words that name the residual kind rather than the quantity
_QUALIFIERS = ("spec", "adjust", "constraint", "calculator")

BUCKETS = ("pressure", "temperature", "flow")


def classify_label(label: str) -> str:
    """Bucket a residual description as pressure-, temperature- or flow-like."""
    # Only the quantity word counts; species names later in the label do not
    text = label.split(":", 1)[1] if ":" in label else label
    words = text.split()
    while words and words[0].lower() in _QUALIFIERS:
        words = words[1:]
    if not words:
        return "flow"
    # "owner.field[index]" classifies by its field
    head = words[0].rsplit(".", 1)[-1].split("[", 1)[0]
    if head in _PRESSURE_WORDS:
        return "pressure"
    if head in _TEMPERATURE_WORDS:
        return "temperature"
    return "flow"


def explicit_weights(weights: Union[float, Sequence[float]], n: int) -> np.ndarray:
    w = np.atleast_1d(np.asarray(weights, dtype=float))
    if w.size == 1:
        w = np.full(n, float(w[0]))
    elif w.size != n:
        raise ConfigurationError(
            f"Explicit weights have length {w.size}, expected 1 or {n}"
        )
    if not np.all(np.isfinite(w)) or np.any(w < 0):
        raise ConfigurationError("Explicit weights must be finite and non-negative")
    return w


def automatic_weights(r0: np.ndarray, floor: float) -> np.ndarray:
    return 1.0 / np.maximum(np.abs(r0), floor)


def heuristic_weights(r0: np.ndarray, labels: Sequence[str], floor: float) -> np.ndarray:
    if len(labels) != r0.size:
        raise ConfigurationError(
            f"Heuristic weighting needs one label per residual ({len(labels)} != {r0.size})"
        )
    buckets = np.array([classify_label(lbl) for lbl in labels])
    w = np.ones(r0.size)
    for name in BUCKETS:
        mask = buckets == name
        if not np.any(mask):
            continue
        scale = float(np.sqrt(np.mean(r0[mask] ** 2)))
        w[mask] = 1.0 / max(scale, floor)
    return w


def resolve_weights(
    r0: np.ndarray,
    labels: Sequence[str],
    weights: Optional[Union[float, Sequence[float]]] = None,
    auto_weight: bool = False,
    heuristic_weight: bool = False,
    floor: float = 1e-8,
) -> Tuple[np.ndarray, str]:
    """Return ``(W, mode)`` for the baseline residual ``r0``."""
    n = r0.size
    if weights is not None:
        if auto_weight or heuristic_weight:
            logger.info("Explicit weights supplied; automatic/heuristic weighting ignored")
        return explicit_weights(weights, n), "explicit"
    if auto_weight:
        if heuristic_weight:
            logger.info("Automatic weighting takes precedence over heuristic weighting")
        return automatic_weights(r0, floor), "automatic"
    if heuristic_weight:
        return heuristic_weights(r0, labels, floor), "heuristic"
    return np.ones(n), "none"


def bucket_counts(labels: Sequence[str]) -> List[Tuple[str, int]]:
    kinds = [classify_label(lbl) for lbl in labels]
    return [(name, kinds.count(name)) for name in BUCKETS]
