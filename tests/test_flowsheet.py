"""
Tests for the Flowsheet container: validation, payload construction and
the solve entry point.
"""

import math

import numpy as np
import pytest

from procsolve import schemas
from procsolve.errors import ConfigurationError
from procsolve.flowsheet import Flowsheet
from procsolve.stream import Stream
from procsolve.units import Link, Sink


SPECIES = ["A", "B"]

KNOWN_ALL = {"molar_flow": True, "temperature": True, "pressure": True, "composition": True}


def _make_payload(name, streams, units, solver=None, species=SPECIES):
    return schemas.FlowsheetPayload(
        name=name,
        species=species,
        streams=[schemas.StreamSpec(**s) for s in streams],
        units=[schemas.UnitSpec(**u) for u in units],
        solver=schemas.SolverSettings(**(solver or {})),
    )


def _feed_spec(id="feed", flow=10.0, composition=None):
    return {
        "id": id,
        "molar_flow": flow,
        "temperature": 350.0,
        "pressure": 2e5,
        "composition": composition or {"A": 0.3, "B": 0.7},
        "known": KNOWN_ALL,
    }


def _link_flowsheet():
    fs = Flowsheet(SPECIES, name="link")
    feed = fs.add_stream(Stream("feed", SPECIES).fix(10.0, 350.0, 2e5, [0.3, 0.7]))
    out = fs.add_stream(Stream("out", SPECIES))
    fs.add_unit(Link(feed, out, id="L1"))
    return fs


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class TestValidate:
    def test_runnable_flowsheet_passes(self):
        fs = _link_flowsheet()
        fs.validate()
        # validation seeds the unknown stream
        assert fs.stream("out").temperature == 300.0

    def test_empty_flowsheet(self):
        fs = Flowsheet(SPECIES)
        with pytest.raises(ConfigurationError, match="no streams"):
            fs.validate()
        fs.add_stream(Stream("a", SPECIES))
        with pytest.raises(ConfigurationError, match="no units"):
            fs.validate()

    def test_known_values_must_be_physical(self):
        fs = _link_flowsheet()
        fs.stream("feed").molar_flow = -1.0
        with pytest.raises(ConfigurationError, match="molar_flow"):
            fs.validate()

    def test_known_composition_must_sum_to_one(self):
        fs = _link_flowsheet()
        fs.stream("feed").zs = np.array([0.3, 0.6])
        with pytest.raises(ConfigurationError, match="sum to 1"):
            fs.validate()

    def test_negative_fraction(self):
        fs = _link_flowsheet()
        fs.stream("feed").zs = np.array([-0.3, 1.3])
        with pytest.raises(ConfigurationError, match="negative"):
            fs.validate()

    def test_empty_residual_contributor(self):
        class _Silent:
            id = "silent"

            def equations(self):
                return []

        fs = _link_flowsheet()
        fs.add_unit(_Silent())
        with pytest.raises(ConfigurationError, match="silent"):
            fs.validate()

    def test_sink_may_be_empty(self):
        fs = _link_flowsheet()
        fs.add_unit(Sink(fs.stream("out")))
        fs.validate()

    def test_duplicate_stream_name(self):
        fs = _link_flowsheet()
        with pytest.raises(ConfigurationError, match="Duplicate"):
            fs.add_stream(Stream("out", SPECIES))

    def test_unit_without_equations(self):
        with pytest.raises(ConfigurationError):
            Flowsheet(SPECIES).add_unit(object())


# ---------------------------------------------------------------------------
# Solve entry point
# ---------------------------------------------------------------------------


class TestSolve:
    def test_solve_attaches_dof(self):
        fs = _link_flowsheet()
        result = fs.solve()
        assert result.converged
        assert result.dof.is_square
        assert fs.last_result is result

    def test_overrides_do_not_leak(self):
        fs = _link_flowsheet()
        result = fs.solve(max_iter=1)
        assert result.iterations <= 1
        assert fs.options.max_iter == 60

    def test_solve_validates_first(self):
        species = ["A", "B", "C"]
        fs = Flowsheet(species)
        feed = fs.add_stream(Stream("feed", species).fix(10.0, 300.0, 1e5, [0.5, 0.5]))
        out = fs.add_stream(Stream("out", species))
        fs.add_unit(Link(feed, out))
        with pytest.raises(ConfigurationError, match="zs must be length 3"):
            fs.solve()
        assert fs.last_result is None
        assert math.isnan(out.molar_flow)

    def test_unknown_override_raises(self):
        with pytest.raises(ConfigurationError):
            _link_flowsheet().solve(tolerance=1e-3)

    def test_stream_table(self):
        fs = _link_flowsheet()
        fs.solve()
        rows = fs.stream_table()
        assert [r["name"] for r in rows] == ["feed", "out"]
        assert rows[1]["molar_flow"] == pytest.approx(10.0)
        assert rows[1]["n_A"] == pytest.approx(3.0)
        assert rows[1]["y_B"] == pytest.approx(0.7)

    def test_describe(self):
        assert _link_flowsheet().describe() == ["Link: feed -> out"]


# ---------------------------------------------------------------------------
# Payload construction
# ---------------------------------------------------------------------------


class TestFromPayload:
    def test_link_payload(self):
        payload = _make_payload(
            "link",
            streams=[_feed_spec(), {"id": "out"}],
            units=[{"id": "L1", "type": "link", "parameters": {"inlet": "feed", "outlet": "out"}}],
        )
        fs = Flowsheet.from_payload(payload)
        assert [s.name for s in fs.streams] == ["feed", "out"]
        assert fs.stream("feed").known.zs == [True, True]
        assert fs.unit("L1").outlet is fs.stream("out")
        assert fs.solve().converged
        assert fs.stream("out").molar_flow == pytest.approx(10.0)

    def test_adjust_payload(self):
        payload = _make_payload(
            "purge-adjust",
            streams=[
                _feed_spec(composition={"A": 0.4, "B": 0.6}),
                {"id": "rec", "molar_flow": 5.0, "temperature": 350.0, "pressure": 2e5},
                {"id": "purge", "molar_flow": 5.0, "temperature": 350.0, "pressure": 2e5},
            ],
            units=[
                {"id": "P1", "type": "purge",
                 "parameters": {"inlet": "feed", "recycle": "rec", "purge": "purge", "beta": 0.5}},
                {"id": "spec", "type": "designSpec",
                 "parameters": {"stream": "rec", "metric": "total_flow", "target": 6.0}},
                {"id": "adj", "type": "adjust",
                 "parameters": {"spec": "spec",
                                "variable": {"owner": "P1", "field": "beta", "min": 0.0, "max": 1.0}}},
            ],
            solver={"max_iter": 100},
        )
        fs = Flowsheet.from_payload(payload)
        assert fs.unit("spec").enabled is False
        result = fs.solve(max_iter=100)
        assert result.converged
        assert fs.unit("P1").beta == pytest.approx(0.6, abs=1e-8)

    def test_species_name_selects_component(self):
        payload = _make_payload(
            "spec",
            streams=[_feed_spec()],
            units=[{"id": "s", "type": "designSpec",
                    "parameters": {"stream": "feed", "metric": "comp_flow", "component": "B",
                                   "target": 7.0}}],
        )
        fs = Flowsheet.from_payload(payload)
        assert fs.unit("s").component_index == 1
        assert fs.unit("s").equations() == [pytest.approx(0.0)]

    def test_partial_composition_flags(self):
        payload = _make_payload(
            "partial",
            streams=[{"id": "s", "composition": {"A": 0.25},
                      "known": {"composition": {"A": True}}}],
            units=[{"id": "sink", "type": "sink", "parameters": {"inlet": "s"}}],
        )
        s = Flowsheet.from_payload(payload).stream("s")
        assert s.known.zs == [True, False]
        assert s.zs[0] == 0.25
        assert math.isnan(s.zs[1])

    @pytest.mark.parametrize("streams, units, match", [
        ([{"id": "out"}],
         [{"id": "L", "type": "link", "parameters": {"inlet": "nope", "outlet": "out"}}],
         "unknown stream"),
        ([{"id": "out"}], [{"id": "X", "type": "reactor", "parameters": {}}], "Unknown unit type"),
        ([{"id": "s", "known": {"molar_flow": True}}],
         [{"id": "k", "type": "sink", "parameters": {"inlet": "s"}}], "no value"),
        ([{"id": "s", "composition": {"Z": 1.0}}],
         [{"id": "k", "type": "sink", "parameters": {"inlet": "s"}}], "unknown species"),
        ([{"id": "s"}],
         [{"id": "a", "type": "adjust", "parameters": {"spec": "missing", "variable": {}}}],
         "DesignSpec"),
    ])
    def test_bad_payloads(self, streams, units, match):
        with pytest.raises(ConfigurationError, match=match):
            Flowsheet.from_payload(_make_payload("bad", streams, units))
