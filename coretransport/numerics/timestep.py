"""CFL-based adaptive timestep selection."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

import numpy as np

from ..errors import PreconditionError
from ..grid import RadialGrid
from ..schema import TimestepConfig
from ..state import POSITIVE_QUANTITIES, QUANTITIES, ProfileSnapshot, TransportCoefficients

logger = logging.getLogger(__name__)

__all__ = ["TimestepBounds", "TimestepReport", "TimestepController", "cfl_numbers"]


@dataclass(frozen=True)
class TimestepBounds:
    """Closed interval ``[min_dt, max_dt]`` for the returned timestep."""

    min_dt: float = 1.0e-8
    max_dt: float = 1.0e-2

    def __post_init__(self) -> None:
        if not (self.min_dt > 0.0 and self.max_dt > 0.0):
            raise PreconditionError("timestep bounds must be positive")
        if self.min_dt > self.max_dt:
            raise PreconditionError("min_dt must not exceed max_dt")

    def clamp(self, dt: float) -> float:
        return float(min(max(dt, self.min_dt), self.max_dt))


@dataclass(frozen=True)
class TimestepReport:
    """Diagnostic breakdown of one timestep decision."""

    dt: float
    dt_diffusive: float
    dt_convective: float
    limiter: str
    cfl: Mapping[str, float]

    @property
    def max_cfl(self) -> float:
        return max(self.cfl.values()) if self.cfl else 0.0


def cfl_numbers(transport: TransportCoefficients, geometry: RadialGrid, dt: float) -> Dict[str, float]:
    """Return ``CFL_q = max(D_q)·dt/Δr²`` per evolved quantity."""

    dr = geometry.min_spacing
    return {name: d_max * dt / (dr * dr) for name, d_max in transport.max_diffusivities().items()}


class TimestepController:
    """Stability-bounded next timestep.

    ``dt = safety·Δr²/max(D)`` combined with a convective Courant limit
    ``convection_safety·Δr/max|v|``.  With a previous timestep, growth is
    capped at ``max_growth``.  The stability limits are never exceeded except
    by the ``min_dt`` clamp applied last.  ``min_shrink`` bounds how far the
    profile-change limiter may cut below the previous timestep.
    """

    def __init__(
        self,
        safety: float = 0.5,
        *,
        convection_safety: float = 0.5,
        max_growth: Optional[float] = None,
        min_shrink: Optional[float] = None,
        max_relative_change: Optional[float] = None,
        bounds: Optional[TimestepBounds] = None,
    ) -> None:
        if safety <= 0.0 or convection_safety <= 0.0:
            raise PreconditionError("safety factors must be positive")
        if max_growth is not None and max_growth < 1.0:
            raise PreconditionError("max_growth must be >= 1")
        if min_shrink is not None and not 0.0 < min_shrink <= 1.0:
            raise PreconditionError("min_shrink must lie in (0, 1]")
        self.safety = float(safety)
        self.convection_safety = float(convection_safety)
        self.max_growth = max_growth
        self.min_shrink = min_shrink
        self.max_relative_change = max_relative_change
        self.bounds = bounds or TimestepBounds()

    @classmethod
    def from_config(cls, cfg: TimestepConfig) -> "TimestepController":
        return cls(
            cfg.safety,
            convection_safety=cfg.convection_safety,
            max_growth=cfg.max_growth,
            min_shrink=cfg.min_shrink,
            max_relative_change=cfg.max_relative_change,
            bounds=TimestepBounds(cfg.min_dt, cfg.max_dt),
        )

    def assess(
        self,
        transport: TransportCoefficients,
        geometry: RadialGrid,
        previous_dt: Optional[float] = None,
        bounds: Optional[TimestepBounds] = None,
    ) -> TimestepReport:
        """Return the chosen timestep together with its limiter and CFL numbers."""

        bounds = bounds or self.bounds
        dr = geometry.min_spacing
        d_max = max(transport.max_diffusivities().values())
        v_max = transport.max_convection()
        if not (math.isfinite(d_max) and math.isfinite(v_max)):
            logger.warning("TimestepController: non-finite transport coefficients; using min_dt")
            return TimestepReport(bounds.min_dt, math.nan, math.nan, "non_finite", {})

        dt_diff = self.safety * dr * dr / d_max if d_max > 0.0 else math.inf
        dt_conv = self.convection_safety * dr / v_max if v_max > 0.0 else math.inf
        dt = min(dt_diff, dt_conv)
        limiter = "diffusion" if dt_diff <= dt_conv else "convection"

        if previous_dt is not None and previous_dt > 0.0:
            if self.max_growth is not None and dt > self.max_growth * previous_dt:
                dt = self.max_growth * previous_dt
                limiter = "growth"

        clamped = bounds.clamp(dt)
        if clamped != dt:
            limiter = "max_dt" if clamped == bounds.max_dt else "min_dt"
        return TimestepReport(clamped, dt_diff, dt_conv, limiter, cfl_numbers(transport, geometry, clamped))

    def next_dt(
        self,
        transport: TransportCoefficients,
        geometry: RadialGrid,
        previous_dt: Optional[float] = None,
        bounds: Optional[TimestepBounds] = None,
    ) -> float:
        """Return the next stable timestep."""
        return self.assess(transport, geometry, previous_dt, bounds).dt

    def limit_by_change(
        self,
        dt: float,
        previous_dt: float,
        old_profile: ProfileSnapshot,
        new_profile: ProfileSnapshot,
        bounds: Optional[TimestepBounds] = None,
    ) -> float:
        """Scale ``dt`` so the last step's largest relative change would stay below ``max_relative_change``.

        The reduction stops at ``min_shrink·previous_dt``; the result never
        exceeds ``dt``.
        """

        if self.max_relative_change is None or previous_dt <= 0.0:
            return dt
        bounds = bounds or self.bounds
        worst = 0.0
        for name in QUANTITIES:
            old = old_profile.field(name)
            new = new_profile.field(name)
            denom = np.maximum(np.abs(old), 1e-30) if name in POSITIVE_QUANTITIES else max(float(np.max(np.abs(old))), 1e-30)
            worst = max(worst, float(np.max(np.abs(new - old) / denom)))
        if worst <= 0.0 or not math.isfinite(worst):
            return dt
        rate_dt = self.max_relative_change * previous_dt / worst
        if self.min_shrink is not None:
            rate_dt = max(rate_dt, self.min_shrink * previous_dt)
        return bounds.clamp(min(dt, rate_dt))
