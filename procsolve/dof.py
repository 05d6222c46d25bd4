"""
Degrees-of-freedom accounting.

Counts unknowns and equations independently, without solving, and
classifies the configuration.  The result is advisory: a non-square
flowsheet is reported but never blocked, since the damped least-squares
step can still make progress on it.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Sequence

from loguru import logger

from .parameterization import collect_manipulated, unknown_composition_indices
from .residuals import contributor_residuals
from .stream import Stream


class DOFStatus(str, Enum):
    SQUARE = "square"
    UNDER_CONSTRAINED = "under-constrained"
    OVER_CONSTRAINED = "over-constrained"


@dataclass(frozen=True)
class DOFReport:
    n_unknowns: int
    n_equations: int
    n_stream_unknowns: int = 0
    n_manipulated: int = 0

    @property
    def dof(self) -> int:
        return self.n_unknowns - self.n_equations

    @property
    def status(self) -> DOFStatus:
        if self.n_unknowns == self.n_equations:
            return DOFStatus.SQUARE
        if self.n_unknowns > self.n_equations:
            return DOFStatus.UNDER_CONSTRAINED
        return DOFStatus.OVER_CONSTRAINED

    @property
    def is_square(self) -> bool:
        return self.status == DOFStatus.SQUARE

    def message(self) -> str:
        base = f"unknowns={self.n_unknowns}, equations={self.n_equations}"
        if self.status == DOFStatus.UNDER_CONSTRAINED:
            return f"UNDER-CONSTRAINED ({base}; need {self.dof} more equations/specs)"
        if self.status == DOFStatus.OVER_CONSTRAINED:
            return f"OVER-CONSTRAINED ({base}; {-self.dof} extra equations)"
        return f"Square ({base})"


def count_stream_unknowns(streams: Iterable[Stream]) -> int:
    n = 0
    for s in streams:
        n += int(not s.known.molar_flow)
        n += int(not s.known.temperature)
        n += int(not s.known.pressure)
        n += len(unknown_composition_indices(s))
    return n


def count_equations(contributors: Iterable[Any]) -> int:
    return sum(contributor_residuals(c).size for c in contributors)


def check_dof(streams: Sequence[Stream], contributors: Sequence[Any], quiet: bool = False) -> DOFReport:
    """Count unknowns and equations and log the classification."""
    n_stream = count_stream_unknowns(streams)
    n_manip = len(collect_manipulated(contributors))
    report = DOFReport(
        n_unknowns=n_stream + n_manip,
        n_equations=count_equations(contributors),
        n_stream_unknowns=n_stream,
        n_manipulated=n_manip,
    )
    if not report.is_square:
        logger.warning("DOF check: {}", report.message())
    elif not quiet:
        logger.info("DOF check: {}", report.message())
    return report
