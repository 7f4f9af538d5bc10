"""Output helper utilities.

Diagnostics histories are written to Parquet through :mod:`pyarrow` with
column units and definitions stored in the schema metadata; run summaries go
to JSON.  Destination directories are created when necessary.
"""
from __future__ import annotations

import json
import math
from pathlib import Path
from typing import Any, Mapping

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

from ..runtime.history import DiagnosticsHistory

UNITS = {
    "step": "count",
    "time": "s",
    "dt": "s",
    "residual_norm": "dimensionless",
    "initial_residual_norm": "dimensionless",
    "newton_iterations": "count",
    "linear_iterations": "count",
    "linear_unconverged": "count",
    "condition_number": "dimensionless",
    "cfl_number": "dimensionless",
    "wall_time": "s",
    "eval_count": "count",
    "retries": "count",
}

DEFINITIONS = {
    "step": "Index of the accepted step (1-based).",
    "time": "Simulated time at the end of the step [s].",
    "dt": "Timestep of the accepted attempt [s].",
    "converged": "Whether the Newton iteration met its tolerance or stalled below the acceptance norm.",
    "status": "Newton status label, or 'event' when an external event replaced the profile.",
    "residual_norm": "Scaled RMS residual at exit of the Newton iteration.",
    "initial_residual_norm": "Scaled RMS residual of the initial guess.",
    "newton_iterations": "Number of Newton updates performed.",
    "linear_iterations": "Total linear-solver iterations across Newton updates (1 per direct solve).",
    "condition_number": "Largest Jacobian condition-number estimate seen during the step.",
    "ill_conditioned": "Whether any Jacobian exceeded the direct-solve condition threshold.",
    "jacobian_severity": "Conditioning class of the worst Jacobian: ok, warning, severe or singular.",
    "linear_unconverged": "Newton updates taken from an iterative sweep that hit its iteration cap.",
    "non_improving": "Line searches that found no residual decrease.",
    "cfl_number": "Largest per-quantity CFL number max(D)·dt/Δr².",
    "worst_quantity": "Quantity with the largest residual at exit.",
    "eval_count": "Residual evaluations, including finite-difference columns.",
    "wall_time": "Wall-clock time spent in the step [s].",
    "retries": "Failed attempts retried with a smaller dt.",
    "event": "Label of the external event that bypassed the solver, if any.",
    "warning_level": "0 healthy, 1 drift above 1% or non-converged, 2 drift above 5%.",
    "corrected": "Comma-separated conservation laws rescaled at this step.",
    "anomalies": "Conservation anomalies reported at this step.",
}


def _ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def write_parquet(df: pd.DataFrame, path: Path, *, compression: str = "snappy") -> None:
    """Write a DataFrame to a Parquet file with units/definitions metadata."""

    _ensure_parent(path)
    table = pa.Table.from_pandas(df, preserve_index=False)
    metadata = dict(table.schema.metadata or {})
    metadata.update(
        {
            b"units": json.dumps(UNITS, sort_keys=True).encode("utf-8"),
            b"definitions": json.dumps(DEFINITIONS, sort_keys=True).encode("utf-8"),
        }
    )
    table = table.replace_schema_metadata(metadata)
    compression_arg = None if compression == "none" else compression
    pq.write_table(table, path, compression=compression_arg)


def write_history(history: DiagnosticsHistory, path: Path) -> None:
    """Persist a diagnostics history as Parquet."""

    write_parquet(history.to_frame(), Path(path))


def _json_default(value: Any) -> Any:
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if hasattr(value, "item"):
        return value.item()
    return str(value)


def write_summary(summary: Mapping[str, Any], path: Path) -> None:
    """Write a summary dictionary to JSON with a small indentation."""

    _ensure_parent(path)
    with Path(path).open("w", encoding="utf-8") as fh:
        json.dump(summary, fh, indent=2, sort_keys=True, default=_json_default)


__all__ = ["UNITS", "DEFINITIONS", "write_parquet", "write_history", "write_summary"]
