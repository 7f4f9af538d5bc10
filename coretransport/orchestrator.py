"""Run loop for the implicit transport solver.

:class:`TransportOrchestrator` is the single owner of all long-lived run
state: the current :class:`~coretransport.step.SimulationState`, the
conservation baselines, the diagnostics history and the accepted dt history.
Each step it

1. gives external event hooks (e.g. a sawtooth crash model) the chance to
   replace the profile, bypassing the solver for that step;
2. selects ``dt`` (configured initial dt on step 0, adaptive afterwards);
3. calls the pure :func:`~coretransport.step.advance_one_step`, retrying with
   a shrunk ``dt`` on non-convergence;
4. measures conservation drift and rescales every ``interval`` steps;
5. appends an immutable diagnostics record and reports progress.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from .errors import NumericalDivergence, PreconditionError
from .grid import RadialGrid
from .io import writer
from .numerics._numba_kernels import USE_NUMBA
from .numerics.conservation import ConservationEnforcer, ConservationReport
from .numerics.timestep import TimestepController
from .runtime.helpers import log_stage
from .runtime.numba_config import numba_disabled_env, numba_status
from .runtime.history import DiagnosticsHistory
from .runtime.progress import ProgressReporter
from .schema import SolverConfig
from .state import PhysicsCallback, ProfileSnapshot
from .step import SimulationState, StepDiagnostics, advance_one_step

logger = logging.getLogger(__name__)

__all__ = ["EventOutcome", "EventHook", "TransportOrchestrator"]


@dataclass(frozen=True)
class EventOutcome:
    """Profile produced by an external event; the solver is skipped for the step."""

    profile: ProfileSnapshot
    label: str = "event"
    dt: float = 0.0


EventHook = Callable[[ProfileSnapshot, RadialGrid, float], Optional[EventOutcome]]


class TransportOrchestrator:
    """Single-owner driver sequencing dt selection, solve, conservation and diagnostics."""

    def __init__(
        self,
        initial_profile: ProfileSnapshot,
        geometry: RadialGrid,
        physics_callback: PhysicsCallback,
        config: Optional[SolverConfig] = None,
        *,
        event_hooks: Sequence[EventHook] = (),
        start_time: float = 0.0,
    ) -> None:
        self.config = config or SolverConfig()
        self.physics_callback = physics_callback
        self.event_hooks = tuple(event_hooks)
        initial_profile.require_finite()
        self.state = SimulationState(initial_profile, geometry, time=float(start_time), step=0)
        self.controller = TimestepController.from_config(self.config.timestep)
        self.enforcer = ConservationEnforcer.from_config(self.config.conservation)
        self.reference = self.enforcer.capture_reference(initial_profile, geometry)
        self.history = DiagnosticsHistory()
        self.conservation_reports: List[ConservationReport] = []
        self._previous_profile: Optional[ProfileSnapshot] = None

    @property
    def geometry(self) -> RadialGrid:
        return self.state.geometry

    def propose_dt(self) -> float:
        """Timestep for the next attempt before any retry shrinking."""

        bounds = self.controller.bounds
        if self.state.step == 0 or self.history.last_dt is None:
            return bounds.clamp(self.config.timestep.initial_dt)
        transport, _ = self.physics_callback(self.state.profile, self.geometry)
        previous_dt = self.history.last_dt
        dt = self.controller.next_dt(transport, self.geometry, previous_dt)
        if self._previous_profile is not None:
            dt = self.controller.limit_by_change(dt, previous_dt, self._previous_profile, self.state.profile)
        return dt

    def _apply_events(self) -> Optional[StepDiagnostics]:
        state = self.state
        for hook in self.event_hooks:
            outcome = hook(state.profile, state.geometry, state.time)
            if outcome is None:
                continue
            if outcome.profile.n_cells != state.geometry.n_cells:
                raise PreconditionError("event hook returned a profile that does not match the grid")
            self._previous_profile = state.profile
            self.state = SimulationState(outcome.profile, state.geometry, state.time + outcome.dt, state.step + 1)
            logger.info("TransportOrchestrator: event %s at step %d bypassed the solver", outcome.label, self.state.step)
            return StepDiagnostics(
                step=self.state.step,
                time=self.state.time,
                dt=outcome.dt,
                converged=True,
                status="event",
                residual_norm=0.0,
                event=outcome.label,
            )
        return None

    def step(self, max_dt: Optional[float] = None) -> StepDiagnostics:
        """Advance by one accepted step and return its diagnostics record.

        Raises
        ------
        NumericalDivergence
            If the solve fails at every retry down to ``min_dt``.
        """

        diagnostics = self._apply_events()
        if diagnostics is None:
            diagnostics = self._solve_step(max_dt)
        diagnostics = self._conservation(diagnostics)
        self.history.append(diagnostics)
        if diagnostics.step % self.config.output.log_interval == 0:
            logger.info(
                "step=%d t=%.6e dt=%.3e iterations=%d residual=%.3e cfl=%.3g",
                diagnostics.step,
                diagnostics.time,
                diagnostics.dt,
                diagnostics.newton_iterations,
                diagnostics.residual_norm,
                diagnostics.cfl_number,
            )
        return diagnostics

    def _solve_step(self, max_dt: Optional[float]) -> StepDiagnostics:
        ts_cfg = self.config.timestep
        dt = self.propose_dt()
        if max_dt is not None:
            dt = min(dt, max_dt)
        retries = 0
        while True:
            new_state, diagnostics, converged = advance_one_step(
                self.state, dt, self.physics_callback, config=self.config
            )
            if converged:
                break
            retries += 1
            next_dt = dt * ts_cfg.retry_shrink
            if retries > ts_cfg.max_retries or next_dt < ts_cfg.min_dt:
                raise NumericalDivergence(
                    f"step {self.state.step + 1} failed with status {diagnostics.status} at dt={dt:.3e}",
                    quantity=diagnostics.worst_quantity,
                    iterations=diagnostics.newton_iterations,
                    residual_norm=diagnostics.residual_norm,
                )
            logger.warning(
                "TransportOrchestrator: step %d %s (residual %.3e, %s); retrying with dt=%.3e",
                self.state.step + 1,
                diagnostics.status,
                diagnostics.residual_norm,
                diagnostics.worst_quantity,
                next_dt,
            )
            dt = next_dt
        self._previous_profile = self.state.profile
        self.state = new_state
        return diagnostics.with_updates(retries=retries)

    def _conservation(self, diagnostics: StepDiagnostics) -> StepDiagnostics:
        if not self.config.conservation.enabled:
            return diagnostics
        drift = self.enforcer.measure(self.state.profile, self.geometry, self.reference)
        if not self.enforcer.should_enforce(self.state.step):
            return diagnostics.with_updates(conservation_drift=drift)
        profile, reports = self.enforcer.enforce(self.state.profile, self.geometry, self.reference, self.state.step)
        self.conservation_reports.extend(reports)
        self.state = replace(self.state, profile=profile)
        return diagnostics.with_updates(
            conservation_drift=drift,
            conservation_corrected=tuple(r.law for r in reports if r.corrected),
            anomalies=tuple(f"{r.law}: {r.anomaly}" for r in reports if r.anomaly),
        )

    def run(
        self,
        t_end: Optional[float] = None,
        *,
        max_steps: Optional[int] = None,
        progress: Optional[ProgressReporter] = None,
    ) -> SimulationState:
        """Step until ``t_end`` is reached or ``max_steps`` steps were taken."""

        if t_end is None and max_steps is None:
            raise PreconditionError("run() needs t_end or max_steps")
        if progress is None and t_end is not None:
            progress = ProgressReporter(
                t_end - self.state.time,
                refresh_seconds=self.config.output.progress_refresh_s,
                enabled=self.config.output.progress,
            )
        log_stage(logger, "run_start", extra={"t": self.state.time, "t_end": t_end, "max_steps": max_steps})
        taken = 0
        while True:
            if max_steps is not None and taken >= max_steps:
                break
            remaining = math.inf if t_end is None else t_end - self.state.time
            if remaining <= 1e-12 * max(abs(t_end or 0.0), 1.0):
                break
            self.step(max_dt=remaining if math.isfinite(remaining) else None)
            taken += 1
            if progress is not None:
                progress.update(self.state.step, self.state.time)
        if progress is not None:
            progress.finish(self.state.step, self.state.time)
        log_stage(logger, "run_end", extra={"t": self.state.time, "steps": self.state.step})
        return self.state

    def write_outputs(self, outdir: Optional[Path] = None) -> Path:
        """Persist the diagnostics history and a run summary."""

        target = Path(outdir or self.config.output.outdir or ".")
        writer.write_history(self.history, target / "diagnostics.parquet")
        writer.write_summary(self.summary(), target / "summary.json")
        return target

    def summary(self) -> dict:
        latest = self.history.latest
        return {
            "steps": self.state.step,
            "time": self.state.time,
            "last_dt": self.history.last_dt,
            "healthy": bool(latest.is_healthy) if latest is not None else None,
            "conservation_reference": dict(self.reference.values),
            "corrections": sum(1 for r in self.conservation_reports if r.corrected),
            "anomalies": sum(1 for r in self.conservation_reports if r.anomaly),
            "numba": numba_status(numba_disabled_env(), USE_NUMBA),
        }
