"""
Tests for the nonlinear solver core: Newton steps, globalization, Jacobian
reuse, weighting and the failure paths.
"""

import math

import numpy as np
import pytest

from procsolve.errors import ConfigurationError, SolverError
from procsolve.solver import NonlinearSolver, SolverOptions, SolverStatus
from procsolve.stream import Stream
from procsolve.units import Link


SPECIES = ["A", "B", "C"]


def _feed(flow=10.0, T=350.0, P=2e5, zs=(0.2, 0.3, 0.5)):
    return Stream("feed", SPECIES).fix(flow, T, P, zs)


def _only_unknown(name, field, guess):
    """Stream with every attribute known except ``field``."""
    s = Stream(name, SPECIES).fix(10.0, 300.0, 1e5, [0.2, 0.3, 0.5])
    setattr(s, field, guess)
    setattr(s.known, field, False)
    return s


class _Equal:
    """Residual: getattr(stream, field) - target."""

    def __init__(self, stream, field, target, id="eq"):
        self.stream = stream
        self.field = field
        self.target = target
        self.id = id

    def equations(self):
        return [getattr(self.stream, self.field) - self.target]

    def labels(self):
        return [self.field]


# ---------------------------------------------------------------------------
# Convergence
# ---------------------------------------------------------------------------


class TestNewtonSteps:
    def test_linear_equality_converges_in_one_step(self):
        inlet = _feed(T=300.0)
        out = _only_unknown("out", "temperature", 500.0)

        class _TempLink:
            id = "t-link"

            def equations(self):
                return [out.temperature - inlet.temperature]

        opts = SolverOptions(lm_damping=0.0, tol_abs=1e-6)
        result = NonlinearSolver([inlet, out], [_TempLink()], opts).solve()
        assert result.converged
        assert result.iterations == 1
        assert out.temperature == pytest.approx(300.0, abs=1e-6)

    @pytest.mark.parametrize("guess", [0.01, 1.0, 1e4])
    def test_flow_equality_from_wide_guesses(self, guess):
        out = _only_unknown("out", "molar_flow", guess)
        result = NonlinearSolver(
            [out], [_Equal(out, "molar_flow", 10.0)], SolverOptions(max_iter=100)
        ).solve()
        assert result.converged
        assert out.molar_flow == pytest.approx(10.0, rel=1e-9)
        assert out.molar_flow > 0

    def test_link_from_default_guesses(self):
        feed, out = _feed(), Stream("out", SPECIES)
        result = NonlinearSolver([feed, out], [Link(feed, out, id="L1")]).solve()
        assert result.converged
        assert result.final_norm < 1e-9
        assert result.iterations <= 30
        assert out.molar_flow == pytest.approx(10.0, rel=1e-8)
        assert out.temperature == pytest.approx(350.0, abs=1e-8)
        assert out.pressure == pytest.approx(2e5, abs=1e-6)
        np.testing.assert_allclose(out.zs, feed.zs, atol=1e-10)

    def test_well_seeded_link_converges_quickly(self):
        feed = _feed(T=300.0, P=1e5)
        out = Stream("out", SPECIES).guess(10.0, 300.5, 1e5, [0.2, 0.3, 0.5])
        result = NonlinearSolver([feed, out], [Link(feed, out)]).solve()
        assert result.converged
        assert result.iterations <= 2

    def test_binary_identity_link(self):
        feed = Stream("feed", ["A", "B"]).fix(10.0, 300.0, 1e5, [0.8, 0.2])
        out = Stream("out", ["A", "B"])
        result = NonlinearSolver([feed, out], [Link(feed, out)]).solve()
        assert result.converged
        assert result.final_norm < 1e-9
        assert out.molar_flow == pytest.approx(10.0, rel=1e-9)
        assert out.temperature == pytest.approx(300.0)
        assert out.pressure == pytest.approx(1e5)
        np.testing.assert_allclose(out.zs, [0.8, 0.2], atol=1e-10)

    @pytest.mark.parametrize("scheme", ["forward", "central", "mixed"])
    def test_fd_schemes_agree(self, scheme):
        feed, out = _feed(), Stream("out", SPECIES)
        result = NonlinearSolver(
            [feed, out], [Link(feed, out)], SolverOptions(fd_scheme=scheme)
        ).solve()
        assert result.converged
        np.testing.assert_allclose(out.zs, feed.zs, atol=1e-9)

    def test_already_converged_takes_no_iterations(self):
        feed = _feed()
        out = Stream("out", SPECIES).guess(10.0, 350.0, 2e5, [0.2, 0.3, 0.5])
        result = NonlinearSolver([feed, out], [Link(feed, out)]).solve()
        assert result.converged
        assert result.iterations == 0
        assert len(result.unknown_labels) == 5


# ---------------------------------------------------------------------------
# History / diagnostics
# ---------------------------------------------------------------------------


class TestHistory:
    def test_weighted_norm_never_increases(self):
        feed, out = _feed(), Stream("out", SPECIES)
        result = NonlinearSolver(
            [feed, out], [Link(feed, out)], SolverOptions(weights=1.0)
        ).solve()
        assert result.weight_mode == "explicit"
        assert np.all(np.diff(result.weighted_history) <= 0)

    def test_history_starts_with_initial_point(self):
        out = _only_unknown("out", "molar_flow", 1.0)
        result = NonlinearSolver([out], [_Equal(out, "molar_flow", 10.0)]).solve()
        first = result.history[0]
        assert first.iteration == 0
        assert "init" in first.events
        assert first.residual_norm == pytest.approx(9.0)
        assert len(result.history) == result.iterations + 1
        assert all(0 < a <= 1 for a in result.alpha_history[1:])

    def test_labels_and_log_lines(self):
        out = _only_unknown("out", "molar_flow", 1.0)
        result = NonlinearSolver([out], [_Equal(out, "molar_flow", 10.0, id="spec")]).solve()
        assert result.unknown_labels == ["out.molar_flow"]
        assert result.residual_labels == ["spec: molar_flow"]
        assert result.log_lines[0].startswith("Packed unknowns")
        assert result.residual_evaluations > result.iterations

    def test_progress_callback_sees_every_iteration(self):
        seen = []
        out = _only_unknown("out", "molar_flow", 1.0)
        opts = SolverOptions(progress_callback=seen.append)
        result = NonlinearSolver([out], [_Equal(out, "molar_flow", 10.0)], opts).solve()
        assert [rec.iteration for rec in seen[:-1]] == list(range(result.iterations + 1))
        assert seen[-1].events == ["converged"]

    def test_failing_callback_does_not_abort(self):
        def _boom(record):
            raise RuntimeError("ui went away")

        out = _only_unknown("out", "molar_flow", 1.0)
        opts = SolverOptions(progress_callback=_boom)
        result = NonlinearSolver([out], [_Equal(out, "molar_flow", 10.0)], opts).solve()
        assert result.converged

    def test_largest_residuals_reported_at_cap(self):
        out = _only_unknown("out", "molar_flow", 1e4)
        opts = SolverOptions(max_iter=1)
        result = NonlinearSolver([out], [_Equal(out, "molar_flow", 10.0, id="spec")], opts).solve()
        assert result.status == SolverStatus.MAX_ITER
        assert not result.converged
        assert result.largest_residuals(1)[0][0] == "spec: molar_flow"
        # Best point is kept and written back
        assert out.molar_flow - 10.0 == pytest.approx(result.final_residuals[0])


# ---------------------------------------------------------------------------
# Jacobian reuse / Broyden
# ---------------------------------------------------------------------------


class TestJacobianReuse:
    def _solve(self, **overrides):
        out = _only_unknown("out", "molar_flow", 1.0)
        opts = SolverOptions(use_broyden=True, jacobian_reuse_interval=100, **overrides)
        return NonlinearSolver([out], [_Equal(out, "molar_flow", 10.0)], opts).solve()

    def test_accepted_update_is_used(self):
        result = self._solve(broyden_min_rcond=0.0)
        assert result.history[1].jacobian_source == "rebuilt"
        assert result.history[2].jacobian_source == "broyden"

    def test_rejected_update_forces_rebuild(self):
        result = self._solve(broyden_min_rcond=2.0)
        assert "broyden-rejected" in result.history[1].events
        assert result.history[2].jacobian_source == "rebuilt"

    def test_reuse_without_broyden(self):
        out = _only_unknown("out", "molar_flow", 1.0)
        opts = SolverOptions(jacobian_reuse_interval=3, max_iter=100)
        result = NonlinearSolver([out], [_Equal(out, "molar_flow", 10.0)], opts).solve()
        assert result.converged
        assert result.history[2].jacobian_source == "reused"

    def test_stall_forces_rebuild_and_skips_broyden(self):
        out = _only_unknown("out", "temperature", 500.0)
        opts = SolverOptions(
            damping=0.01, jacobian_reuse_interval=100, use_broyden=True, max_iter=6,
        )
        result = NonlinearSolver([out], [_Equal(out, "temperature", 300.0)], opts).solve()
        assert result.status == SolverStatus.MAX_ITER
        assert [rec.jacobian_source for rec in result.history[1:6]] == [
            "rebuilt", "broyden", "broyden", "broyden", "broyden"
        ]
        assert "stall" in result.history[5].events
        assert not any("stall" in rec.events for rec in result.history[1:5])
        assert result.history[6].jacobian_source == "rebuilt"


# ---------------------------------------------------------------------------
# Failure paths / configuration
# ---------------------------------------------------------------------------


class TestFailures:
    def test_no_unknowns_nonzero_residual_raises(self):
        a = _feed()
        b = Stream("b", SPECIES).fix(10.0, 360.0, 2e5, [0.2, 0.3, 0.5])
        with pytest.raises(SolverError, match="No unknowns") as info:
            NonlinearSolver([a, b], [Link(a, b)]).solve()
        assert info.value.residual_norm == pytest.approx(10.0)
        assert info.value.result is not None

    def test_no_unknowns_zero_residual_converges(self):
        a, b = _feed(), _feed()
        result = NonlinearSolver([a, b], [Link(a, b)]).solve()
        assert result.converged
        assert result.iterations == 0

    def test_nan_initial_residual_raises(self):
        out = _only_unknown("out", "molar_flow", 1.0)

        class _Broken:
            def equations(self):
                return [float("nan")]

        with pytest.raises(SolverError, match="Initial residual"):
            NonlinearSolver([out], [_Broken()]).solve()

    def test_changing_residual_length_raises(self):
        out = _only_unknown("out", "molar_flow", 1.0)

        class _Grows:
            calls = 0

            def equations(self):
                self.calls += 1
                return [out.molar_flow - 10.0] * (1 if self.calls == 1 else 2)

        with pytest.raises(ConfigurationError, match="length changed"):
            NonlinearSolver([out], [_Grows()]).solve()

    def test_invalid_options(self):
        with pytest.raises(ConfigurationError):
            SolverOptions(fd_scheme="backward")
        with pytest.raises(ConfigurationError):
            SolverOptions(damping=0.0)
        with pytest.raises(ConfigurationError):
            SolverOptions(jacobian_reuse_interval=0)

    def test_replace_rejects_unknown_names(self):
        opts = SolverOptions()
        assert opts.replace(max_iter=5).max_iter == 5
        with pytest.raises(ConfigurationError, match="bogus"):
            opts.replace(bogus=1)

    def test_explicit_weight_length_checked_at_solve(self):
        out = _only_unknown("out", "molar_flow", 1.0)
        opts = SolverOptions(weights=[1.0, 2.0])
        with pytest.raises(ConfigurationError, match="length"):
            NonlinearSolver([out], [_Equal(out, "molar_flow", 10.0)], opts).solve()

    def test_line_search_failure_after_rebuild_raises(self):
        out = _only_unknown("out", "temperature", 500.0)
        units = [_Equal(out, "temperature", 300.0, id="lo"), _Equal(out, "temperature", 310.0, id="hi")]
        with pytest.raises(SolverError, match="after Jacobian rebuild") as info:
            NonlinearSolver([out], units).solve()
        last = info.value.result.history[-1]
        assert len(last.events) == 2
        assert all(e.startswith("line-search-") for e in last.events)
        assert last.jacobian_source == "rebuilt"
        # Least-squares point of the two conflicting equations is written back
        assert out.temperature == pytest.approx(305.0, abs=1e-3)
        assert info.value.result.x.size == 1

    def test_non_finite_candidate_is_backtracked(self):
        out = _only_unknown("out", "temperature", 500.0)

        class _Root:
            id = "root"

            def equations(self):
                if out.temperature < 290.0:
                    return [float("nan")]
                return [math.sqrt(out.temperature - 290.0) - math.sqrt(10.0)]

        result = NonlinearSolver([out], [_Root()]).solve()
        assert result.converged
        assert result.history[1].backtracks >= 1
        assert result.history[1].step_length < 1.0
        assert out.temperature == pytest.approx(300.0, rel=1e-9)

    def test_singular_step_escalates_damping(self):
        out = Stream("out", SPECIES).fix(10.0, 500.0, 1e5, [0.2, 0.3, 0.5])
        out.known.temperature = False
        out.known.pressure = False
        opts = SolverOptions(lm_damping=0.0)
        result = NonlinearSolver([out], [_Equal(out, "temperature", 300.0)], opts).solve()
        assert result.converged
        assert any("damping escalated" in line for line in result.log_lines)
        assert out.pressure == pytest.approx(1e5)

    def test_exhausted_damping_raises_at_last_point(self):
        out = _only_unknown("out", "temperature", 500.0)

        class _Cliff:
            id = "cliff"

            def equations(self):
                return [1.0 if out.temperature <= 500.0 else 1e308]

            def labels(self):
                return ["temperature"]

        opts = SolverOptions(lm_max_retries=2)
        with pytest.raises(SolverError, match="Damped linear solve") as info:
            NonlinearSolver([out], [_Cliff()], opts).solve()
        partial = info.value.result
        assert partial.status == SolverStatus.FAILED
        assert partial.x.size == 1
        assert partial.residual_labels == ["cliff: temperature"]
        assert partial.weight_mode == "none"
        # Streams are restored from the last finite-difference perturbation
        assert out.temperature == 500.0
