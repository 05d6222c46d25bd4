"""
Gauge-fixed softmax parameterization of a composition simplex.

For k free mole fractions only k-1 logits are carried; the k-th logit is
pinned to zero so the map from logits to fractions has no shift-invariant
direction.

    pack_logits(y)            k fractions -> k-1 logits
    unpack_logits(a, mass)    k-1 logits  -> k fractions >= 0 summing to mass
"""

from __future__ import annotations

from typing import Sequence

import numpy as np

LOG_FLOOR = 1e-12


def stable_softmax(a: np.ndarray) -> np.ndarray:
    a = np.asarray(a, dtype=float)
    shifted = a - np.max(a)
    ea = np.exp(shifted)
    return ea / np.sum(ea)


def normalize_simplex(y: Sequence[float], floor: float = LOG_FLOOR) -> np.ndarray:
    """Clip to ``floor`` and rescale to unit sum."""
    y = np.maximum(np.asarray(y, dtype=float), floor)
    return y / np.sum(y)


def pack_logits(y: Sequence[float]) -> np.ndarray:
    """Logits of ``y`` relative to its last entry (length k-1).

    ``y`` need not sum to one; only the ratios are encoded.
    """
    y = np.asarray(y, dtype=float)
    if y.size <= 1:
        return np.zeros(0)
    logs = np.log(np.maximum(y, LOG_FLOOR))
    return logs[:-1] - logs[-1]


def unpack_logits(a: Sequence[float], mass: float = 1.0) -> np.ndarray:
    """Fractions for k-1 logits plus the implicit zero, scaled to ``mass``."""
    a = np.asarray(a, dtype=float)
    full = np.append(a, 0.0)
    return max(float(mass), 0.0) * stable_softmax(full)
