"""
CSV exporter for solved flowsheets.

Stream table layout: columns = streams, rows = properties, as in a
simulator workbook.  The convergence history has one row per iteration.
"""

from __future__ import annotations

import csv
import io
from typing import List

from . import schemas


def export_stream_table_csv(result: schemas.SimulationResult) -> str:
    """Stream summary table in CSV format."""
    streams = result.streams
    if not streams:
        return ""

    all_components: list[str] = []
    seen = set()
    for s in streams:
        for comp in s.composition:
            if comp not in seen:
                seen.add(comp)
                all_components.append(comp)

    output = io.StringIO()
    writer = csv.writer(output)

    writer.writerow(["Property", "Unit"] + [s.id for s in streams])
    _write_row(writer, "Molar Flow", "mol/s", streams, lambda s: s.molar_flow)
    _write_row(writer, "Temperature", "K", streams, lambda s: s.temperature)
    _write_row(writer, "Pressure", "Pa", streams, lambda s: s.pressure)

    writer.writerow([])
    writer.writerow(["--- Overall Composition (mole frac) ---"])
    for comp in all_components:
        writer.writerow(
            [comp, "mol frac"] + [_fmt(s.composition.get(comp)) for s in streams]
        )

    writer.writerow([])
    writer.writerow(["--- Component Flows ---"])
    for comp in all_components:
        writer.writerow(
            [comp, "mol/s"] + [_fmt(s.component_flows.get(comp)) for s in streams]
        )

    return output.getvalue()


def export_history_csv(history: List[schemas.IterationResult]) -> str:
    """Per-iteration residual, step and line-search history."""
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow([
        "Iteration", "Residual Norm", "Weighted Norm", "Step Norm",
        "Alpha", "Backtracks", "Jacobian", "Events",
    ])
    for h in history:
        writer.writerow([
            h.iteration,
            _fmt(h.residual_norm, sci=True),
            _fmt(h.weighted_norm, sci=True),
            _fmt(h.step_norm, sci=True),
            _fmt(h.step_length),
            h.backtracks,
            h.jacobian_source,
            "; ".join(h.events),
        ])
    return output.getvalue()


def export_combined_csv(result: schemas.SimulationResult) -> str:
    """Header block, stream table and convergence history in one document."""
    parts = []

    parts.append(f"Flowsheet: {result.flowsheet_name}")
    parts.append(f"Status: {result.status}")
    parts.append(f"Converged: {result.converged}")
    if result.iterations is not None:
        parts.append(f"Iterations: {result.iterations}")
    if result.dof is not None:
        parts.append(f"DOF: {result.dof.message}")
    parts.append("")

    parts.append("=== STREAM SUMMARY ===")
    parts.append(export_stream_table_csv(result))

    parts.append("=== CONVERGENCE HISTORY ===")
    parts.append(export_history_csv(result.history))

    return "\n".join(parts)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _fmt(v, decimals: int = 6, sci: bool = False) -> str:
    if v is None:
        return ""
    if isinstance(v, float):
        return f"{v:.{decimals}e}" if sci else f"{v:.{decimals}f}"
    return str(v)


def _write_row(writer, label, unit, streams, getter):
    writer.writerow([label, unit] + [_fmt(getter(s)) for s in streams])
