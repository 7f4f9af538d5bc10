import json
import logging

import pyarrow.parquet as pq
import pytest

from coretransport.config_utils import configure_logging
from coretransport.io import writer
from coretransport.runtime.helpers import format_exception_short, log_stage
from coretransport.runtime.history import ColumnarBuffer, DiagnosticsHistory
from coretransport.runtime.numba_config import numba_disabled_env, numba_status
from coretransport.runtime.progress import ProgressReporter
from coretransport.step import StepDiagnostics


@pytest.mark.parametrize(
    "env, expected",
    [
        ({}, False),
        ({"CORETRANSPORT_DISABLE_NUMBA": "1"}, True),
        ({"CORETRANSPORT_DISABLE_NUMBA": "off", "NUMBA_DISABLE_JIT": "1"}, False),
        ({"NUMBA_DISABLE_JIT": "yes"}, True),
        ({"CORETRANSPORT_DISABLE_NUMBA": "maybe"}, False),
    ],
)
def test_numba_disabled_env(env, expected):
    assert numba_disabled_env(env) is expected


def test_numba_status_payload():
    assert numba_status(True, False) == {"disabled_env": True, "use_numba": False}


def test_columnar_buffer_backfills_new_columns():
    buffer = ColumnarBuffer(["step"])
    buffer.append_row({"step": 1})
    buffer.append_row({"step": 2, "drift_particle": 0.01})
    assert buffer.columns() == ["step", "drift_particle"]
    assert buffer.column("drift_particle") == [None, 0.01]
    assert buffer.to_table().num_rows == 2


def _record(step, converged=True, dt=1e-3):
    return StepDiagnostics(
        step=step, time=step * dt, dt=dt, converged=converged, status="converged", residual_norm=1e-9
    )


def test_history_tracks_accepted_dt_only():
    history = DiagnosticsHistory()
    history.append(_record(1, dt=1e-3))
    history.append(_record(2, converged=False, dt=5e-4))
    assert len(history) == 2
    assert history.last_dt == 1e-3
    assert history.latest.step == 2
    assert list(history.to_frame()["step"]) == [1, 2]
    assert len(history.snapshot()) == 2


def test_history_parquet_carries_units(tmp_path):
    history = DiagnosticsHistory()
    history.append(_record(1))
    path = tmp_path / "out" / "diagnostics.parquet"
    writer.write_history(history, path)
    metadata = pq.read_schema(path).metadata
    assert json.loads(metadata[b"units"])["dt"] == "s"


def test_summary_json_replaces_non_finite(tmp_path):
    path = tmp_path / "summary.json"
    writer.write_summary({"value": float("nan"), "steps": 3}, path)
    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["steps"] == 3


def test_progress_reporter_renders_final_line(capsys):
    progress = ProgressReporter(1.0, enabled=True)
    progress.update(1, 0.5, force=True)
    progress.finish(2, 1.0)
    out = capsys.readouterr().out
    assert "100.0%" in out
    assert "step 2" in out


def test_disabled_progress_is_silent(capsys):
    progress = ProgressReporter(1.0, enabled=False)
    progress.update(1, 0.5, force=True)
    progress.finish(2, 1.0)
    assert capsys.readouterr().out == ""


def test_stage_logging_and_exception_format(caplog):
    logger = logging.getLogger("coretransport.tests")
    with caplog.at_level(logging.INFO, logger="coretransport.tests"):
        log_stage(logger, "run_start", extra={"t": 0.0})
    assert "stage=run_start" in caplog.text
    assert format_exception_short(ValueError("bad")) == "ValueError: bad"


def test_configure_logging_sets_root_level():
    root = logging.getLogger()
    previous = root.level
    try:
        configure_logging(logging.DEBUG)
        assert root.level == logging.DEBUG
    finally:
        root.setLevel(previous)
        logging.captureWarnings(False)
