"""
Equation-oriented nonlinear solver for flowsheet residuals.

Solves F(x) = 0 over the flat vector produced by the unknown map:

  1. Build the unknown map and evaluate the baseline residual
  2. Estimate the Jacobian by finite differences, or reuse it with an
     optional Broyden rank-one correction
  3. Take a Levenberg-Marquardt damped, weighted normal-equations step
  4. Globalize with a backtracking line search on the weighted norm
  5. Detect stalls and force fresh Jacobians
  6. Stop on convergence, at the iteration cap (best point kept), or raise
     SolverError for the fatal conditions
"""

from __future__ import annotations

import dataclasses
import math
import warnings
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional, Sequence, Tuple

import numpy as np
import scipy.linalg
from loguru import logger

from .errors import ConfigurationError, SolverError
from .parameterization import StateBounds, UnknownKind, UnknownMap
from .residuals import ResidualAssembler
from .stream import Stream
from .weighting import bucket_counts, resolve_weights

FD_SCHEMES = ("forward", "central", "mixed")
NORM_CHOICES = ("unweighted", "weighted")

# Columns differenced centrally under the "mixed" scheme
_CENTRAL_KINDS = {UnknownKind.COMPOSITION_LOGIT, UnknownKind.MANIPULATED}

# Smallest damping used when escalating from lm_damping = 0
_LM_FLOOR = 1e-12


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SolverOptions:
    """Immutable solver configuration, built once per solve."""

    max_iter: int = 60
    tol_abs: float = 1e-9

    # Finite differences / Jacobian reuse
    fd_step: float = 1e-7
    fd_scheme: str = "forward"
    jacobian_reuse_interval: int = 1
    use_broyden: bool = False
    broyden_min_step_sq: float = 1e-20
    broyden_min_rcond: float = 1e-12

    # Step and globalization
    damping: float = 1.0  # initial line-search step fraction
    lm_damping: float = 1e-6  # lambda = lm_damping * trace(N)/n
    lm_escalation: float = 10.0
    lm_max_retries: int = 12
    max_backtracks: int = 30
    ls_rtol: float = 1e-10

    # Safety bounds
    flow_min: float = 1e-12
    flow_max: float = 1e8
    t_min: float = 1.0
    t_max: float = 5000.0
    p_min: float = 1.0
    p_max: float = 1e9

    # Weighting (explicit > automatic > heuristic)
    weights: Optional[Any] = None
    auto_weight: bool = False
    heuristic_weight: bool = False
    weight_floor: float = 1e-8
    convergence_norm: str = "unweighted"

    # Stall detection
    stall_ratio: float = 0.95
    stall_window: int = 5

    progress_callback: Optional[Callable[["IterationRecord"], Any]] = field(
        default=None, compare=False
    )

    def __post_init__(self) -> None:
        if self.fd_scheme not in FD_SCHEMES:
            raise ConfigurationError(
                f"fd_scheme must be one of {FD_SCHEMES}, got '{self.fd_scheme}'"
            )
        if self.convergence_norm not in NORM_CHOICES:
            raise ConfigurationError(
                f"convergence_norm must be one of {NORM_CHOICES}, got '{self.convergence_norm}'"
            )
        if self.max_iter < 0:
            raise ConfigurationError("max_iter must be >= 0")
        if self.jacobian_reuse_interval < 1:
            raise ConfigurationError("jacobian_reuse_interval must be >= 1")
        if not 0.0 < self.damping <= 1.0:
            raise ConfigurationError("damping must lie in (0, 1]")
        if self.fd_step <= 0:
            raise ConfigurationError("fd_step must be positive")
        if self.stall_window < 1:
            raise ConfigurationError("stall_window must be >= 1")
        if self.flow_min <= 0 or self.flow_min >= self.flow_max:
            raise ConfigurationError("flow bounds must satisfy 0 < flow_min < flow_max")
        if self.t_min >= self.t_max or self.p_min >= self.p_max:
            raise ConfigurationError("T/P bounds must satisfy min < max")
        if self.weights is not None and not np.isscalar(self.weights):
            object.__setattr__(self, "weights", tuple(float(w) for w in self.weights))

    @property
    def bounds(self) -> StateBounds:
        return StateBounds(
            flow_min=self.flow_min, flow_max=self.flow_max,
            t_min=self.t_min, t_max=self.t_max,
            p_min=self.p_min, p_max=self.p_max,
        )

    def replace(self, **overrides: Any) -> "SolverOptions":
        names = {f.name for f in dataclasses.fields(self)}
        unknown = sorted(set(overrides) - names)
        if unknown:
            raise ConfigurationError(f"Unknown solver option(s): {', '.join(unknown)}")
        return dataclasses.replace(self, **overrides)


# ---------------------------------------------------------------------------
# Run state / results
# ---------------------------------------------------------------------------


class SolverStatus(str, Enum):
    CONVERGED = "converged"
    MAX_ITER = "max-iter"
    FAILED = "failed"


@dataclass
class IterationRecord:
    iteration: int
    residual_norm: float
    weighted_norm: float
    step_norm: float = math.nan
    step_length: float = math.nan
    jacobian_source: str = ""  # "rebuilt" | "broyden" | "reused"
    backtracks: int = 0
    events: List[str] = field(default_factory=list)


@dataclass
class SolverResult:
    status: SolverStatus
    iterations: int
    history: List[IterationRecord]
    residual_evaluations: int
    final_norm: float
    final_weighted_norm: float
    x: np.ndarray
    unknown_labels: List[str] = field(default_factory=list)
    residual_labels: List[str] = field(default_factory=list)
    final_residuals: Optional[np.ndarray] = None
    weight_mode: str = "none"
    log_lines: List[str] = field(default_factory=list)
    dof: Optional[Any] = None

    @property
    def converged(self) -> bool:
        return self.status == SolverStatus.CONVERGED

    @property
    def residual_history(self) -> List[float]:
        return [h.residual_norm for h in self.history]

    @property
    def weighted_history(self) -> List[float]:
        return [h.weighted_norm for h in self.history]

    @property
    def step_history(self) -> List[float]:
        return [h.step_norm for h in self.history]

    @property
    def alpha_history(self) -> List[float]:
        return [h.step_length for h in self.history]

    def largest_residuals(self, count: int = 5) -> List[Tuple[str, float]]:
        """The ``count`` worst residuals at the final point, by magnitude."""
        if self.final_residuals is None or not self.residual_labels:
            return []
        order = np.argsort(-np.abs(self.final_residuals))[:count]
        return [(self.residual_labels[i], float(self.final_residuals[i])) for i in order]


# ---------------------------------------------------------------------------
# Solver
# ---------------------------------------------------------------------------


class NonlinearSolver:
    """Damped Newton / quasi-Newton solver over a stream and contributor set.

    The solver writes every trial point through to the caller's streams; the
    state is final only once ``solve`` returns a converged result.
    """

    def __init__(
        self,
        streams: Sequence[Stream],
        contributors: Sequence[Any],
        options: Optional[SolverOptions] = None,
    ) -> None:
        self.streams = list(streams)
        self.contributors = list(contributors)
        self.options = options or SolverOptions()
        self.log_lines: List[str] = []

        self._map: Optional[UnknownMap] = None
        self._assembler: Optional[ResidualAssembler] = None
        self._history: List[IterationRecord] = []

    # ------------------------------------------------------------------
    # Solve
    # ------------------------------------------------------------------

    def solve(self) -> SolverResult:
        opts = self.options
        self.log_lines = []
        self._history = []

        umap, x = UnknownMap.build(self.streams, self.contributors, opts.bounds)
        assembler = ResidualAssembler(umap, self.contributors)
        self._map, self._assembler = umap, assembler

        self._log(
            "INFO",
            "Packed unknowns: {} total ({} flow, {} composition, {} T, {} P, {} manipulated)",
            umap.size, umap.count(UnknownKind.FLOW_LOG),
            umap.count(UnknownKind.COMPOSITION_LOGIT), umap.count(UnknownKind.TEMPERATURE),
            umap.count(UnknownKind.PRESSURE), umap.count(UnknownKind.MANIPULATED),
        )

        r, ok = assembler.evaluate(x)
        labels = assembler.labels()
        if not ok:
            bad = [labels[i] for i in np.flatnonzero(~np.isfinite(r))[:5]]
            self._history.append(IterationRecord(0, math.nan, math.nan, events=["init", "failed"]))
            raise SolverError(
                f"Initial residual returned NaN/Inf ({', '.join(bad)}). "
                "Check initial guesses (molar_flow, zs, T, P)",
                iteration=0,
                result=self._result(SolverStatus.FAILED, 0, x, r, np.ones(r.size), "none", labels),
            )

        W, weight_mode = resolve_weights(
            r, labels, opts.weights, opts.auto_weight, opts.heuristic_weight, opts.weight_floor,
        )
        if weight_mode == "heuristic":
            self._log("DEBUG", "Heuristic weight buckets: {}", dict(bucket_counts(labels)))

        rn, wn = _norm(r), _norm(W * r)
        init = IterationRecord(0, rn, wn, events=["init"])
        self._history.append(init)
        self._notify(init)
        self._log(
            "INFO", "Initial ||r|| = {:.6e}, ||Wr|| = {:.6e} (unknowns={}, eqs={}, weights={})",
            rn, wn, x.size, r.size, weight_mode,
        )

        if x.size == 0:
            if self._chosen(rn, wn) < opts.tol_abs:
                return self._finish(SolverStatus.CONVERGED, 0, x, r, W, weight_mode, labels)
            raise SolverError(
                "No unknowns to solve but residuals are non-zero",
                iteration=0, residual_norm=rn, weighted_norm=wn,
                result=self._result(SolverStatus.FAILED, 0, x, r, W, weight_mode, labels),
            )

        best_x, best_norm = x.copy(), self._chosen(rn, wn)
        J: Optional[np.ndarray] = None
        next_source = "rebuilt"
        force_rebuild = True
        stall_count = 0
        k = 0
        status = SolverStatus.MAX_ITER

        if self._chosen(rn, wn) < opts.tol_abs:
            status = SolverStatus.CONVERGED
            self._log("INFO", "Converged at initial point: ||r||={:.6e}", rn)

        while status != SolverStatus.CONVERGED and k < opts.max_iter:
            k += 1
            rec = IterationRecord(k, rn, wn)

            # --- Jacobian -------------------------------------------------
            if J is None or force_rebuild or (k - 1) % opts.jacobian_reuse_interval == 0:
                J = self._fd_jacobian(x, r)
                rec.jacobian_source = "rebuilt"
                force_rebuild = False
            else:
                rec.jacobian_source = next_source

            # --- Step + line search (one forced rebuild on failure) --------
            dx = self._lm_step(x, J, r, W, k, rn, wn, weight_mode, labels)
            search = self._line_search(x, dx, wn, W)
            if not search.ok:
                reason = "stagnated" if search.flat else "exhausted"
                rec.events.append(f"line-search-{reason}")
                self._log(
                    "WARNING", "Iter {}: line search {} (||Wr||={:.4e}); rebuilding Jacobian",
                    k, reason, wn,
                )
                J = self._fd_jacobian(x, r)
                rec.jacobian_source = "rebuilt"
                dx = self._lm_step(x, J, r, W, k, rn, wn, weight_mode, labels)
                search = self._line_search(x, dx, wn, W)
                if not search.ok:
                    reason = "stagnated" if search.flat else "failed"
                    rec.events.append(f"line-search-{reason}")
                    self._history.append(rec)
                    self._map.unpack(x)
                    raise SolverError(
                        f"Line search {reason} after Jacobian rebuild",
                        iteration=k, residual_norm=rn, weighted_norm=wn,
                        result=self._result(SolverStatus.FAILED, k, x, r, W, weight_mode, labels),
                    )

            step = search.x - x
            rec.step_norm = _norm(step)
            rec.step_length = search.alpha
            rec.backtracks = search.backtracks

            r_new, wn_new = search.r, search.weighted_norm
            rn_new = _norm(r_new)

            # --- Stall detection ------------------------------------------
            skip_broyden = False
            ratio = wn_new / wn if wn > 0 else 0.0
            stall_count = stall_count + 1 if ratio > opts.stall_ratio else 0
            if stall_count >= opts.stall_window:
                rec.events.append("stall")
                self._log(
                    "WARNING", "Iter {}: stall detected (||Wr|| ratio {:.4f} for {} iterations)",
                    k, ratio, stall_count,
                )
                force_rebuild = True
                skip_broyden = True
                stall_count = 0

            # --- Jacobian for the next iteration --------------------------
            if opts.jacobian_reuse_interval > 1 and not force_rebuild:
                if opts.use_broyden and not skip_broyden:
                    candidate = self._broyden_candidate(J, step, r_new - r, W)
                    if candidate is None:
                        rec.events.append("broyden-rejected")
                        self._log("DEBUG", "Iter {}: Broyden update rejected, forcing rebuild", k)
                        force_rebuild = True
                    else:
                        J = candidate
                        next_source = "broyden"
                else:
                    next_source = "reused"

            x, r, rn, wn = search.x, r_new, rn_new, wn_new
            rec.residual_norm, rec.weighted_norm = rn, wn
            self._history.append(rec)
            self._notify(rec)

            self._log(
                "INFO", "Iter {:3d}: ||r||={:.4e}  ||Wr||={:.4e}  ||dx||={:.3e}  alpha={:.3e}  bt={}  J={}",
                k, rn, wn, rec.step_norm, rec.step_length, rec.backtracks, rec.jacobian_source,
            )

            chosen = self._chosen(rn, wn)
            if chosen < best_norm:
                best_x, best_norm = x.copy(), chosen
            if chosen < opts.tol_abs:
                status = SolverStatus.CONVERGED
                self._log("INFO", "Converged at iter {}: ||r||={:.6e}", k, rn)

        if status != SolverStatus.CONVERGED:
            if not np.array_equal(best_x, x):
                r, _ = self._assembler.evaluate(best_x)
                x, rn, wn = best_x, _norm(r), _norm(W * r)
            self._log(
                "WARNING", "Max iterations reached ({}). Best ||r||={:.6e}, ||Wr||={:.6e}",
                opts.max_iter, rn, wn,
            )

        return self._finish(status, k, x, r, W, weight_mode, labels)

    # ------------------------------------------------------------------
    # Jacobian
    # ------------------------------------------------------------------

    def _fd_jacobian(self, x: np.ndarray, r0: np.ndarray) -> np.ndarray:
        """Finite-difference Jacobian around ``x`` (``r0`` = F(x))."""
        opts = self.options
        kinds = self._map.kinds()
        J = np.zeros((r0.size, x.size))
        for j in range(x.size):
            h = opts.fd_step * max(1.0, abs(x[j]))
            central = opts.fd_scheme == "central" or (
                opts.fd_scheme == "mixed" and kinds[j] in _CENTRAL_KINDS
            )
            J[:, j] = self._fd_column(x, r0, j, h, central)
        return J

    def _fd_column(self, x, r0, j, h, central) -> np.ndarray:
        xp = x.copy()
        xp[j] = x[j] + h
        hp = xp[j] - x[j]  # realized step
        rp, okp = self._assembler.evaluate(xp)

        def _backward():
            xm = x.copy()
            xm[j] = x[j] - h
            hm = x[j] - xm[j]
            rm, okm = self._assembler.evaluate(xm)
            return rm, okm, hm

        if central:
            rm, okm, hm = _backward()
            if okp and okm:
                return (rp - rm) / (hp + hm)
            if okp:
                return (rp - r0) / hp
            if okm:
                return (r0 - rm) / hm
            return np.zeros(r0.size)

        if okp:
            return (rp - r0) / hp
        rm, okm, hm = _backward()
        if okm:
            return (r0 - rm) / hm
        return np.zeros(r0.size)

    def _broyden_candidate(
        self, J: np.ndarray, s: np.ndarray, dF: np.ndarray, W: np.ndarray
    ) -> Optional[np.ndarray]:
        """Rank-one secant update, or None if the update is not informative."""
        opts = self.options
        ss = float(s @ s)
        if not ss >= opts.broyden_min_step_sq or ss == 0.0:
            return None
        candidate = J + np.outer(dF - J @ s, s) / ss
        if not np.all(np.isfinite(candidate)):
            return None
        A = W[:, None] * candidate
        if _rcond(A.T @ A) < opts.broyden_min_rcond:
            return None
        return candidate

    # ------------------------------------------------------------------
    # Step / globalization
    # ------------------------------------------------------------------

    def _lm_step(self, x, J, r, W, k, rn, wn, weight_mode, labels) -> np.ndarray:
        """Solve the damped weighted normal equations for dx."""
        opts = self.options
        A = W[:, None] * J
        b = W * r
        N = A.T @ A
        g = A.T @ b
        n = N.shape[0]
        scale = max(1.0, float(np.trace(N)) / max(1, n))
        lam = opts.lm_damping * scale
        eye = np.eye(n)

        for attempt in range(opts.lm_max_retries + 1):
            try:
                with warnings.catch_warnings():
                    warnings.simplefilter("ignore", scipy.linalg.LinAlgWarning)
                    dx = scipy.linalg.solve(N + lam * eye, -g, assume_a="sym")
            except (np.linalg.LinAlgError, ValueError):
                dx = None
            if dx is not None and np.all(np.isfinite(dx)):
                if attempt:
                    self._log("DEBUG", "Iter {}: damping escalated to {:.3e}", k, lam)
                return dx
            lam = max(lam * opts.lm_escalation, _LM_FLOOR * scale)

        self._map.unpack(x)
        raise SolverError(
            "Damped linear solve produced NaN/Inf; model may be ill-conditioned",
            iteration=k, residual_norm=rn, weighted_norm=wn,
            result=self._result(SolverStatus.FAILED, k, x, r, W, weight_mode, labels),
        )

    def _line_search(self, x, dx, wn, W) -> "_SearchOutcome":
        opts = self.options
        alpha = opts.damping
        flat = False
        target = (1.0 - opts.ls_rtol) * wn
        for bt in range(opts.max_backtracks + 1):
            x_new = x + alpha * dx
            r_new, ok = self._assembler.evaluate(x_new)
            if ok:
                wn_new = _norm(W * r_new)
                if wn_new < target:
                    return _SearchOutcome(True, x_new, r_new, wn_new, alpha, bt)
                if abs(wn_new - wn) <= opts.ls_rtol * max(wn, 1e-300):
                    flat = True
            alpha *= 0.5
        return _SearchOutcome(False, x, None, wn, 0.0, opts.max_backtracks, flat=flat)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _chosen(self, rn: float, wn: float) -> float:
        return wn if self.options.convergence_norm == "weighted" else rn

    def _finish(self, status, k, x, r, W, weight_mode, labels) -> SolverResult:
        # Leave the caller's streams at the reported point
        self._map.unpack(x)
        result = self._result(status, k, x, r, W, weight_mode, labels)
        final = IterationRecord(
            k, result.final_norm, result.final_weighted_norm, events=[status.value]
        )
        self._notify(final)
        if status != SolverStatus.CONVERGED:
            worst = ", ".join(f"{lbl}={val:.3e}" for lbl, val in result.largest_residuals(3))
            logger.warning("Solve ended with status '{}'; largest residuals: {}", status.value, worst)
        return result

    def _result(self, status, k, x, r, W, weight_mode, labels) -> SolverResult:
        r = np.asarray(r, dtype=float)
        return SolverResult(
            status=status,
            iterations=k,
            history=list(self._history),
            residual_evaluations=self._assembler.evaluations if self._assembler else 0,
            final_norm=_norm(r),
            final_weighted_norm=_norm(W * r) if W is not None and W.size == r.size else _norm(r),
            x=np.array(x, dtype=float) if x is not None else np.zeros(0),
            unknown_labels=self._map.labels if self._map else [],
            residual_labels=list(labels),
            final_residuals=r.copy(),
            weight_mode=weight_mode,
            log_lines=list(self.log_lines),
        )

    def _notify(self, record: IterationRecord) -> None:
        cb = self.options.progress_callback
        if cb is None:
            return
        try:
            cb(record)
        except Exception as exc:
            logger.warning("Progress callback failed at iteration {}: {}", record.iteration, exc)

    def _log(self, level: str, msg: str, *args: Any) -> None:
        self.log_lines.append(msg.format(*args))
        logger.log(level, msg, *args)


@dataclass
class _SearchOutcome:
    ok: bool
    x: np.ndarray
    r: Optional[np.ndarray]
    weighted_norm: float
    alpha: float
    backtracks: int
    flat: bool = False


def _norm(v: np.ndarray) -> float:
    return float(np.linalg.norm(v)) if np.size(v) else 0.0


def _rcond(N: np.ndarray) -> float:
    """Reciprocal 1-norm condition number (0 for singular matrices)."""
    try:
        with np.errstate(all="ignore"):
            c = float(np.linalg.cond(N, 1))
    except np.linalg.LinAlgError:
        return 0.0
    if not math.isfinite(c) or c <= 0:
        return 0.0
    return 1.0 / c
