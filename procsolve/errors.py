"""
Exception types raised by the solver stack.

ConfigurationError is raised before a solve starts (malformed contributors,
bad weights, unknown options).  SolverError is raised for the fatal
conditions of a running solve and carries the partial result.
"""

from __future__ import annotations

from typing import Any, Optional


class ConfigurationError(ValueError):
    """The flowsheet or solver configuration cannot be assembled."""


class SolverError(RuntimeError):
    """A solve failed with no usable iterate."""

    def __init__(
        self,
        message: str,
        iteration: int = 0,
        residual_norm: float = float("nan"),
        weighted_norm: float = float("nan"),
        result: Optional[Any] = None,
    ) -> None:
        super().__init__(
            f"{message} (iteration {iteration}, ||r||={residual_norm:.6e}, "
            f"||Wr||={weighted_norm:.6e})"
        )
        self.iteration = iteration
        self.residual_norm = residual_norm
        self.weighted_norm = weighted_norm
        self.result = result
