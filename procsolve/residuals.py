"""
Global residual assembly.

Writes a candidate vector back to physical state, then concatenates the
residual vectors of every equation contributor in registration order.  An
evaluation is valid only if every entry is finite.
"""

from __future__ import annotations

from typing import Any, List, Optional, Sequence, Tuple

import numpy as np

from .errors import ConfigurationError
from .parameterization import UnknownMap


def contributor_name(contributor: Any, position: int) -> str:
    return getattr(contributor, "id", None) or f"{type(contributor).__name__}#{position + 1}"


def contributor_residuals(contributor: Any) -> np.ndarray:
    """Call ``equations()`` and flatten the result to a float vector."""
    eqs = contributor.equations()
    if eqs is None:
        return np.zeros(0)
    return np.atleast_1d(np.asarray(eqs, dtype=float)).ravel()


class ResidualAssembler:
    """Evaluates F(x) over a fixed contributor list."""

    def __init__(self, unknown_map: UnknownMap, contributors: Sequence[Any]) -> None:
        self.unknown_map = unknown_map
        self.contributors = list(contributors)
        self.evaluations = 0
        self._sizes: Optional[List[int]] = None

    @property
    def sizes(self) -> List[int]:
        if self._sizes is None:
            self.collect()
        return list(self._sizes)

    @property
    def n_equations(self) -> int:
        return sum(self.sizes)

    def collect(self) -> np.ndarray:
        """Concatenate residuals at the current physical state."""
        parts: List[np.ndarray] = []
        sizes: List[int] = []
        for pos, c in enumerate(self.contributors):
            r = contributor_residuals(c)
            parts.append(r)
            sizes.append(r.size)
        if self._sizes is None:
            self._sizes = sizes
        elif sizes != self._sizes:
            changed = [
                contributor_name(self.contributors[i], i)
                for i, (a, b) in enumerate(zip(sizes, self._sizes)) if a != b
            ]
            raise ConfigurationError(
                f"Residual length changed during the solve for: {', '.join(changed)}"
            )
        return np.concatenate(parts) if parts else np.zeros(0)

    def evaluate(self, x: Sequence[float]) -> Tuple[np.ndarray, bool]:
        """Unpack ``x`` and return ``(r, ok)``; ``ok`` is False on any NaN/Inf."""
        self.unknown_map.unpack(x)
        self.evaluations += 1
        r = self.collect()
        return r, bool(np.all(np.isfinite(r)))

    def labels(self) -> List[str]:
        """One human-readable label per residual, in assembly order."""
        sizes = self.sizes
        out: List[str] = []
        for pos, (c, n) in enumerate(zip(self.contributors, sizes)):
            name = contributor_name(c, pos)
            labels_fn = getattr(c, "labels", None)
            labels = labels_fn() if labels_fn is not None else None
            if labels is None:
                out.extend(f"{name}: eq {i + 1}" for i in range(n))
                continue
            labels = [str(label) for label in labels]
            if len(labels) != n:
                raise ConfigurationError(
                    f"{name}: labels() returned {len(labels)} entries for {n} residuals"
                )
            out.extend(f"{name}: {label}" for label in labels)
        return out
