import json

import numpy as np
import pandas as pd
import pytest

import coretransport.orchestrator as orchestrator_module
from coretransport.errors import NumericalDivergence, PreconditionError
from coretransport.models import ConstantSources, ConstantTransport, GaussianHeating, combine_physics
from coretransport.orchestrator import EventOutcome, TransportOrchestrator
from coretransport.schema import SolverConfig
from coretransport.step import StepDiagnostics


@pytest.fixture
def physics():
    return combine_physics(ConstantTransport(), [GaussianHeating(peak=0.5)])


def _failed(state, dt):
    return StepDiagnostics(
        step=state.step + 1,
        time=state.time,
        dt=dt,
        converged=False,
        status="max_iterations",
        residual_norm=1.0,
        worst_quantity="T_e",
        newton_iterations=30,
    )


def test_run_records_one_row_per_step(grid, peaked, physics):
    orch = TransportOrchestrator(peaked, grid, physics)
    state = orch.run(max_steps=3)
    assert state.step == 3
    frame = orch.history.to_frame()
    assert list(frame["step"]) == [1, 2, 3]
    assert frame["dt"].iloc[0] == pytest.approx(1.0e-3)
    assert frame["converged"].all()
    assert state.time == pytest.approx(frame["dt"].sum())
    assert "cfl_T_e" in frame.columns
    assert "drift_particle" in frame.columns


def test_run_stops_at_end_time(grid, peaked, physics):
    orch = TransportOrchestrator(peaked, grid, physics)
    state = orch.run(2.5e-3)
    assert state.time == pytest.approx(2.5e-3)
    assert orch.history.latest.dt <= 2.5e-3


def test_run_requires_a_stopping_criterion(grid, peaked, physics):
    with pytest.raises(PreconditionError):
        TransportOrchestrator(peaked, grid, physics).run()


def test_failed_attempt_is_retried_with_smaller_dt(grid, peaked, physics, monkeypatch):
    real_advance = orchestrator_module.advance_one_step
    calls = []

    def flaky(state, dt, callback, *, config=None):
        calls.append(dt)
        if len(calls) == 1:
            return state, _failed(state, dt), False
        return real_advance(state, dt, callback, config=config)

    monkeypatch.setattr(orchestrator_module, "advance_one_step", flaky)
    orch = TransportOrchestrator(peaked, grid, physics)
    diagnostics = orch.step()
    assert calls == [pytest.approx(1.0e-3), pytest.approx(5.0e-4)]
    assert diagnostics.retries == 1
    assert diagnostics.dt == pytest.approx(5.0e-4)
    assert orch.state.time == pytest.approx(5.0e-4)


def test_exhausted_retries_raise_divergence(grid, peaked, physics, monkeypatch):
    calls = []

    def always_fails(state, dt, callback, *, config=None):
        calls.append(dt)
        return state, _failed(state, dt), False

    monkeypatch.setattr(orchestrator_module, "advance_one_step", always_fails)
    config = SolverConfig(timestep={"max_retries": 2})
    orch = TransportOrchestrator(peaked, grid, physics, config)
    with pytest.raises(NumericalDivergence) as excinfo:
        orch.step()
    assert len(calls) == 3
    assert excinfo.value.quantity == "T_e"
    assert orch.state.step == 0
    assert len(orch.history) == 0


def test_event_hook_bypasses_solver(grid, peaked, physics, monkeypatch):
    def must_not_run(*args, **kwargs):
        raise AssertionError("solver should be bypassed")

    def crash(profile, geometry, time):
        flat = np.full(geometry.n_cells, float(np.mean(profile.T_e)))
        return EventOutcome(profile.replace(T_e=flat), label="sawtooth")

    monkeypatch.setattr(orchestrator_module, "advance_one_step", must_not_run)
    orch = TransportOrchestrator(peaked, grid, physics, event_hooks=[crash])
    diagnostics = orch.step()
    assert diagnostics.status == "event"
    assert diagnostics.event == "sawtooth"
    assert orch.state.step == 1
    np.testing.assert_allclose(orch.state.profile.T_e, np.mean(peaked.T_e))


def test_conservation_is_enforced_on_interval(grid, peaked):
    physics = combine_physics(ConstantTransport(), [ConstantSources(particle_source=20.0)])
    config = SolverConfig(conservation={"interval": 2, "laws": ["particle"]})
    orch = TransportOrchestrator(peaked, grid, physics, config)
    first = orch.step()
    assert first.conservation_corrected == ()
    assert first.conservation_drift["particle"] > 0.005
    second = orch.step()
    assert second.conservation_corrected == ("particle",)
    assert grid.integrate(orch.state.profile.n_e) == pytest.approx(orch.reference["particle"], rel=1e-9)
    assert orch.summary()["corrections"] == 1


def test_write_outputs(tmp_path, grid, peaked, physics):
    orch = TransportOrchestrator(peaked, grid, physics)
    orch.run(max_steps=2)
    outdir = orch.write_outputs(tmp_path / "run")
    frame = pd.read_parquet(outdir / "diagnostics.parquet")
    assert len(frame) == 2
    summary = json.loads((outdir / "summary.json").read_text(encoding="utf-8"))
    assert summary["steps"] == 2
    assert "healthy" in summary
    assert set(summary["numba"]) == {"disabled_env", "use_numba"}
