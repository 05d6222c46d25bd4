"""Equation-oriented process flowsheet solver."""

from .errors import ConfigurationError, SolverError
from .flowsheet import Flowsheet
from .solver import NonlinearSolver, SolverOptions, SolverResult, SolverStatus
from .stream import Stream

__all__ = [
    "ConfigurationError",
    "Flowsheet",
    "NonlinearSolver",
    "SolverError",
    "SolverOptions",
    "SolverResult",
    "SolverStatus",
    "Stream",
]
