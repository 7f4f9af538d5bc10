"""Pure single-timestep advance and its diagnostics record.

:func:`advance_one_step` is a function of its explicit inputs only: the
state, the timestep, the physics callback and the (immutable) configuration.
Long-lived bookkeeping such as conservation baselines and dt history belongs
to :class:`coretransport.orchestrator.TransportOrchestrator`.
"""
from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping, Optional, Tuple

import numpy as np
import scipy.linalg

from .errors import PreconditionError
from .grid import RadialGrid
from .numerics.coefficients import CoefficientBuilder, make_coeffs_callback
from .numerics.jacobian import FiniteDifferenceOperator
from .numerics.linear import LinearSystemSolver
from .numerics.newton import NewtonRaphsonSolver, predict_linear_step
from .numerics.operator import assemble_residual
from .numerics.timestep import cfl_numbers
from .runtime.helpers import format_exception_short
from .schema import SolverConfig
from .state import N_QUANTITIES, PhysicsCallback, ProfileSnapshot

logger = logging.getLogger(__name__)

HEALTHY_DRIFT = 0.01
SEVERE_DRIFT = 0.05

__all__ = [
    "SimulationState",
    "StepDiagnostics",
    "advance_one_step",
    "step_vjp",
]


@dataclass(frozen=True)
class SimulationState:
    """Profile, grid and clock passed by value into each step."""

    profile: ProfileSnapshot
    geometry: RadialGrid
    time: float = 0.0
    step: int = 0

    def __post_init__(self) -> None:
        if self.profile.n_cells != self.geometry.n_cells:
            raise PreconditionError(
                f"profile has {self.profile.n_cells} cells but grid has {self.geometry.n_cells}"
            )


@dataclass(frozen=True)
class StepDiagnostics:
    """Immutable per-step record of solver health."""

    step: int
    time: float
    dt: float
    converged: bool
    status: str
    residual_norm: float
    initial_residual_norm: float = math.nan
    newton_iterations: int = 0
    linear_iterations: int = 0
    condition_number: float = math.nan
    ill_conditioned: bool = False
    jacobian_severity: str = ""
    linear_unconverged: int = 0
    non_improving: int = 0
    cfl: Mapping[str, float] = field(default_factory=dict)
    conservation_drift: Mapping[str, float] = field(default_factory=dict)
    conservation_corrected: Tuple[str, ...] = ()
    anomalies: Tuple[str, ...] = ()
    worst_quantity: Optional[str] = None
    eval_count: int = 0
    wall_time: float = 0.0
    retries: int = 0
    event: Optional[str] = None

    @property
    def cfl_number(self) -> float:
        return max(self.cfl.values()) if self.cfl else 0.0

    @property
    def max_drift(self) -> float:
        finite = [value for value in self.conservation_drift.values() if math.isfinite(value)]
        return max(finite) if finite else 0.0

    @property
    def is_healthy(self) -> bool:
        return self.converged and self.max_drift < HEALTHY_DRIFT and not self.anomalies

    @property
    def warning_level(self) -> int:
        """0 healthy, 1 drift above 1% or non-converged, 2 drift above 5%."""
        drift = self.max_drift
        if drift > SEVERE_DRIFT:
            return 2
        if drift > HEALTHY_DRIFT or not self.converged or self.anomalies:
            return 1
        return 0

    def to_record(self) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            "step": self.step,
            "time": self.time,
            "dt": self.dt,
            "converged": self.converged,
            "status": self.status,
            "residual_norm": self.residual_norm,
            "initial_residual_norm": self.initial_residual_norm,
            "newton_iterations": self.newton_iterations,
            "linear_iterations": self.linear_iterations,
            "condition_number": self.condition_number,
            "ill_conditioned": self.ill_conditioned,
            "jacobian_severity": self.jacobian_severity,
            "linear_unconverged": self.linear_unconverged,
            "non_improving": self.non_improving,
            "cfl_number": self.cfl_number,
            "worst_quantity": self.worst_quantity,
            "eval_count": self.eval_count,
            "wall_time": self.wall_time,
            "retries": self.retries,
            "event": self.event,
            "warning_level": self.warning_level,
        }
        for name, value in self.cfl.items():
            record[f"cfl_{name}"] = value
        for name, value in self.conservation_drift.items():
            record[f"drift_{name}"] = value
        record["corrected"] = ",".join(self.conservation_corrected)
        record["anomalies"] = ";".join(self.anomalies)
        return record

    def with_updates(self, **changes: Any) -> "StepDiagnostics":
        return replace(self, **changes)


def _solver_parts(config: SolverConfig) -> Tuple[CoefficientBuilder, NewtonRaphsonSolver]:
    builder = CoefficientBuilder(config.newton.theta, density_floor=config.density_floor)
    solver = NewtonRaphsonSolver(config.newton, LinearSystemSolver(config.linear))
    return builder, solver


def advance_one_step(
    state: SimulationState,
    dt: float,
    physics_callback: PhysicsCallback,
    *,
    config: Optional[SolverConfig] = None,
) -> Tuple[SimulationState, StepDiagnostics, bool]:
    """Advance ``state`` by ``dt``.

    Returns ``(new_state, diagnostics, converged)``.  When the Newton
    iteration does not converge the returned state is ``state`` unchanged
    and the caller decides whether to retry with a smaller ``dt``.

    Raises
    ------
    PreconditionError
        On shape mismatches or a non-positive ``dt``.
    NonFiniteStateError
        If the input profile or its coefficients are not finite.
    """

    if not (dt > 0.0 and math.isfinite(dt)):
        raise PreconditionError(f"dt must be positive and finite; got {dt!r}")
    cfg = config or SolverConfig()
    started = time.perf_counter()
    builder, solver = _solver_parts(cfg)
    geometry = state.geometry
    profile = state.profile
    profile.require_finite()

    transport, sources = physics_callback(profile, geometry)
    coeffs_old = builder.build(profile, transport, sources, geometry)
    coeffs_callback = make_coeffs_callback(physics_callback, builder)

    guess = None
    if cfg.newton.use_predictor:
        try:
            guess = predict_linear_step(profile, coeffs_old, geometry, dt, builder.theta)
        except (ArithmeticError, ValueError, RuntimeError) as exc:
            logger.debug("advance_one_step: predictor skipped: %s", format_exception_short(exc))
            guess = None

    solution = solver.solve(dt, coeffs_callback, profile, geometry, initial_guess=guess, coeffs_old=coeffs_old)
    result = solution.result
    diagnostics = StepDiagnostics(
        step=state.step + 1,
        time=state.time + dt if solution.converged else state.time,
        dt=dt,
        converged=solution.converged,
        status=result.status.value,
        residual_norm=result.residual_norm,
        initial_residual_norm=result.initial_residual_norm,
        newton_iterations=result.iterations,
        linear_iterations=result.linear_iterations,
        condition_number=result.condition_number,
        ill_conditioned=result.ill_conditioned,
        jacobian_severity=result.jacobian_severity,
        linear_unconverged=result.linear_unconverged,
        non_improving=result.non_improving,
        cfl=cfl_numbers(transport, geometry, dt),
        worst_quantity=solution.worst_quantity,
        eval_count=result.eval_count,
        wall_time=time.perf_counter() - started,
    )
    if not solution.converged:
        return state, diagnostics, False
    new_state = SimulationState(
        profile=solution.profile,
        geometry=geometry,
        time=state.time + dt,
        step=state.step + 1,
    )
    return new_state, diagnostics, True


def step_vjp(
    state: SimulationState,
    new_state: SimulationState,
    dt: float,
    physics_callback: PhysicsCallback,
    cotangent: np.ndarray,
    *,
    config: Optional[SolverConfig] = None,
) -> np.ndarray:
    """Pull a cotangent on the new flattened state back to the old one.

    Uses the implicit function theorem on the converged residual
    ``R(x_new, x_old) = 0``: ``x̄_old = -(∂R/∂x_old)ᵀ λ`` with
    ``(∂R/∂x_new)ᵀ λ = x̄_new``.
    """

    cfg = config or SolverConfig()
    builder, _ = _solver_parts(cfg)
    geometry = state.geometry
    n = geometry.n_cells
    size = N_QUANTITIES * n
    cot = np.asarray(cotangent, dtype=float)
    if cot.shape != (size,):
        raise PreconditionError(f"cotangent has shape {cot.shape}; expected ({size},)")
    coeffs_callback = make_coeffs_callback(physics_callback, builder)
    x_old = state.profile.to_vector()
    x_new = new_state.profile.to_vector()
    old_profile = state.profile

    def residual_of_new(x: np.ndarray) -> np.ndarray:
        coeffs_new = coeffs_callback(old_profile.with_vector(x), geometry)
        coeffs_old = coeffs_callback(old_profile, geometry)
        return assemble_residual(x, x_old, coeffs_new, coeffs_old, geometry, dt, builder.theta)

    def residual_of_old(x: np.ndarray) -> np.ndarray:
        coeffs_new = coeffs_callback(old_profile.with_vector(x_new), geometry)
        coeffs_old = coeffs_callback(old_profile.with_vector(x), geometry)
        return assemble_residual(x_new, x, coeffs_new, coeffs_old, geometry, dt, builder.theta)

    halfwidth = cfg.newton.fd_stencil_halfwidth
    d_new = FiniteDifferenceOperator(residual_of_new, size, block=N_QUANTITIES, stencil_halfwidth=halfwidth)
    d_old = FiniteDifferenceOperator(residual_of_old, size, block=N_QUANTITIES, stencil_halfwidth=halfwidth)
    adjoint = scipy.linalg.solve(d_new.jacobian(x_new).T, cot)
    return -d_old.vjp(x_old, adjoint)


