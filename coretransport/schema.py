"""Configuration schema for the implicit transport solver.

The models mirror the structure of the YAML files read by
:func:`coretransport.config_utils.load_config`.  All tunables of the Newton
iteration, the linear strategy, the timestep controller and the periodic
conservation corrector live here; the numerical modules take the validated
models (or plain keyword arguments) and never read files themselves.
"""
from __future__ import annotations

import math
from pathlib import Path
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .errors import ConfigurationError

KNOWN_CONSERVATION_LAWS = ("particle", "energy")


class NewtonConfig(BaseModel):
    """Damped Newton-Raphson iteration controls."""

    theta: float = Field(1.0, ge=0.0, le=1.0, description="θ-method implicitness (0 explicit, 0.5 Crank-Nicolson, 1 implicit)")
    max_iterations: int = Field(30, gt=0, description="Iteration cap per timestep attempt")
    tol: float = Field(1.0e-6, gt=0.0, description="Absolute tolerance on the scaled RMS residual")
    relative_tol: float = Field(1.0e-10, ge=0.0, description="Convergence once ‖R‖ < relative_tol·‖R0‖")
    stall_floor: float = Field(1.0e-3, ge=0.0, lt=1.0, description="Minimum relative residual decrease counted as progress")
    stall_patience: int = Field(3, gt=0, description="Consecutive stalled iterations before giving up")
    stall_accept_norm: float = Field(
        1.0e-4, ge=0.0, description="Largest scaled residual at which a stalled iteration still counts as converged"
    )
    line_search_multipliers: List[float] = Field(
        default_factory=lambda: [1.0, 0.5, 0.25, 0.1, 0.01, 0.001],
        description="Backtracking multipliers tried in order",
    )
    feasibility: Literal["reject"] = Field(
        "reject", description="Policy for non-positive trial temperatures/density"
    )
    jacobian: Literal["finite_difference", "analytic_linear"] = Field(
        "finite_difference", description="Jacobian construction for the residual"
    )
    fd_stencil_halfwidth: int = Field(
        2, ge=1, description="Cell coupling half-width assumed by the coloured finite-difference Jacobian"
    )
    fd_relative_step: float = Field(1.0e-7, gt=0.0, description="Relative perturbation for finite differences")
    use_predictor: bool = Field(True, description="Seed Newton with a linearised θ-step")

    @field_validator("line_search_multipliers")
    @classmethod
    def _check_multipliers(cls, value: List[float]) -> List[float]:
        if not value:
            raise ConfigurationError("line_search_multipliers must not be empty")
        for item in value:
            if not (math.isfinite(item) and 0.0 < item <= 1.0):
                raise ConfigurationError("line_search_multipliers must lie in (0, 1]")
        if any(b >= a for a, b in zip(value, value[1:])):
            raise ConfigurationError("line_search_multipliers must be strictly decreasing")
        return value


class LinearSolverConfig(BaseModel):
    """Direct/iterative strategy selection for J·Δx = -R."""

    condition_threshold: float = Field(1.0e6, gt=1.0, description="κ above which the iterative sweep is used")
    condition_method: Literal["power", "svd"] = Field("power", description="Condition-number estimator")
    svd_max_size: int = Field(400, gt=0, description="Largest system for which SVD estimates are allowed")
    power_iterations: int = Field(20, gt=0, description="Power-iteration count for κ estimates")
    sor_omega: float = Field(1.5, gt=0.0, lt=2.0, description="SOR relaxation factor")
    iterative_tol: float = Field(1.0e-8, gt=0.0, description="Relative update tolerance of the sweep")
    iterative_max_iterations: int = Field(10000, gt=0, description="Sweep iteration cap")
    residual_check: float = Field(1.0e-6, gt=0.0, description="Relative residual accepted from the direct solve")


class TimestepConfig(BaseModel):
    """CFL-based adaptive timestep controls."""

    safety: float = Field(0.5, gt=0.0, description="Diffusive CFL safety factor")
    convection_safety: float = Field(0.5, gt=0.0, description="Convective Courant safety factor")
    min_dt: float = Field(1.0e-8, gt=0.0, description="Lower dt bound [s]")
    max_dt: float = Field(1.0e-2, gt=0.0, description="Upper dt bound [s]")
    initial_dt: float = Field(1.0e-3, gt=0.0, description="dt used for the first step [s]")
    max_growth: Optional[float] = Field(1.5, ge=1.0, description="Maximum dt growth per step")
    min_shrink: Optional[float] = Field(0.5, gt=0.0, le=1.0, description="Largest reduction the profile-change limiter may apply, as a fraction of the previous dt")
    max_relative_change: Optional[float] = Field(
        None, gt=0.0, description="Limit on the per-step relative profile change"
    )
    retry_shrink: float = Field(0.5, gt=0.0, lt=1.0, description="dt factor applied after a failed attempt")
    max_retries: int = Field(6, ge=0, description="Retries per step before giving up")

    @model_validator(mode="after")
    def _check_bounds(self) -> "TimestepConfig":
        if self.min_dt > self.max_dt:
            raise ConfigurationError("timestep.min_dt must not exceed timestep.max_dt")
        return self


class ConservationConfig(BaseModel):
    """Periodic conservation correction."""

    enabled: bool = True
    interval: int = Field(1000, gt=0, description="Enforce every `interval` steps")
    max_correction: float = Field(0.2, gt=0.0, lt=1.0, description="Bound on |factor-1|")
    particle_tolerance: float = Field(0.005, ge=0.0, description="Particle drift tolerated before correcting")
    energy_tolerance: float = Field(0.01, ge=0.0, description="Energy drift tolerated before correcting")
    laws: List[str] = Field(default_factory=lambda: list(KNOWN_CONSERVATION_LAWS))

    @field_validator("laws")
    @classmethod
    def _check_laws(cls, value: List[str]) -> List[str]:
        unknown = [name for name in value if name not in KNOWN_CONSERVATION_LAWS]
        if unknown:
            raise ConfigurationError(f"unknown conservation laws: {unknown}")
        return value


class OutputConfig(BaseModel):
    """Diagnostics output and progress settings."""

    outdir: Optional[Path] = None
    log_interval: int = Field(100, gt=0, description="Steps between INFO summaries")
    progress: bool = False
    progress_refresh_s: float = Field(1.0, gt=0.0)


class SolverConfig(BaseModel):
    """Root configuration of a transport run."""

    newton: NewtonConfig = Field(default_factory=NewtonConfig)
    linear: LinearSolverConfig = Field(default_factory=LinearSolverConfig)
    timestep: TimestepConfig = Field(default_factory=TimestepConfig)
    conservation: ConservationConfig = Field(default_factory=ConservationConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)
    density_floor: float = Field(1.0e-2, gt=0.0, description="Density floor in coefficients [1e20 m^-3]")

    @model_validator(mode="before")
    @classmethod
    def _forbid_unknown_sections(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        allowed = set(cls.model_fields)
        unknown = sorted(key for key in data if key not in allowed)
        if unknown:
            raise ConfigurationError(f"unknown configuration sections: {unknown}")
        return data


__all__ = [
    "KNOWN_CONSERVATION_LAWS",
    "NewtonConfig",
    "LinearSolverConfig",
    "TimestepConfig",
    "ConservationConfig",
    "OutputConfig",
    "SolverConfig",
]
