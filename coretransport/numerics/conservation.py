"""Periodic correction of drift in conserved volume integrals.

Each :class:`ConservationLaw` integrates a quantity ``Σ q·V`` over the grid
and knows which fields to rescale.  :class:`ConservationEnforcer` compares
the current integral with a stored baseline, and rescales when the relative
drift exceeds the law's tolerance.  The factor ``reference/current`` is
clamped to ``[1 - max_correction, 1 + max_correction]``.  Non-positive or
non-finite integrals are reported as anomalies and leave the profile alone.
"""
from __future__ import annotations

import logging
import math
import warnings
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from .. import constants
from ..errors import ConfigurationError
from ..grid import RadialGrid
from ..schema import ConservationConfig
from ..state import ProfileSnapshot
from ..warnings import ConservationAnomalyWarning

logger = logging.getLogger(__name__)

__all__ = [
    "ConservationLaw",
    "ParticleConservation",
    "EnergyConservation",
    "ConservationReference",
    "ConservationReport",
    "ConservationEnforcer",
]


class ConservationLaw(ABC):
    """A conserved integral and the fields rescaled to restore it."""

    name: str = ""

    def __init__(self, drift_tolerance: float) -> None:
        if drift_tolerance < 0.0:
            raise ConfigurationError("drift_tolerance must be non-negative")
        self.drift_tolerance = float(drift_tolerance)

    @abstractmethod
    def integral(self, profile: ProfileSnapshot, geometry: RadialGrid) -> float:
        """Return ``Σ q·V`` for the current profile."""

    @abstractmethod
    def rescale(self, profile: ProfileSnapshot, factor: float) -> ProfileSnapshot:
        """Return a profile whose integral is multiplied by ``factor``."""


class ParticleConservation(ConservationLaw):
    """Total electron content ``Σ n_e V``."""

    name = "particle"

    def __init__(self, drift_tolerance: float = 0.005) -> None:
        super().__init__(drift_tolerance)

    def integral(self, profile: ProfileSnapshot, geometry: RadialGrid) -> float:
        return geometry.integrate(profile.n_e)

    def rescale(self, profile: ProfileSnapshot, factor: float) -> ProfileSnapshot:
        return profile.replace(n_e=profile.n_e * factor)


class EnergyConservation(ConservationLaw):
    """Thermal energy ``Σ 1.5 n_e (T_i + T_e) V``; both temperatures are rescaled."""

    name = "energy"

    def __init__(self, drift_tolerance: float = 0.01) -> None:
        super().__init__(drift_tolerance)

    def integral(self, profile: ProfileSnapshot, geometry: RadialGrid) -> float:
        density = constants.THERMAL_ENERGY_FACTOR * profile.n_e * (profile.T_i + profile.T_e)
        return geometry.integrate(density)

    def rescale(self, profile: ProfileSnapshot, factor: float) -> ProfileSnapshot:
        return profile.replace(T_i=profile.T_i * factor, T_e=profile.T_e * factor)


@dataclass(frozen=True)
class ConservationReference:
    """Per-law baselines captured at the start of a run."""

    values: Mapping[str, float]
    step: int = 0

    @classmethod
    def capture(
        cls, profile: ProfileSnapshot, geometry: RadialGrid, laws: Iterable[ConservationLaw], step: int = 0
    ) -> "ConservationReference":
        return cls({law.name: law.integral(profile, geometry) for law in laws}, step)

    def __getitem__(self, name: str) -> float:
        return self.values[name]


@dataclass(frozen=True)
class ConservationReport:
    """Outcome of one law at one enforcement."""

    law: str
    step: int
    reference: float
    current: float
    drift: float
    factor: float
    corrected: bool
    anomaly: Optional[str] = None


def _relative_drift(current: float, reference: float) -> float:
    return abs(current - reference) / abs(reference)


class ConservationEnforcer:
    """Rescale profiles towards stored conservation baselines.

    Parameters
    ----------
    laws:
        Laws checked in order; later laws see earlier corrections.
    interval:
        :meth:`should_enforce` is true every ``interval`` steps (``step > 0``).
    max_correction:
        Bound on ``|factor - 1|``.
    """

    def __init__(
        self,
        laws: Optional[Sequence[ConservationLaw]] = None,
        *,
        interval: int = 1000,
        max_correction: float = 0.2,
    ) -> None:
        if interval <= 0:
            raise ConfigurationError("interval must be positive")
        if not 0.0 < max_correction < 1.0:
            raise ConfigurationError("max_correction must lie in (0, 1)")
        self.laws: Tuple[ConservationLaw, ...] = tuple(
            laws if laws is not None else (ParticleConservation(), EnergyConservation())
        )
        self.interval = int(interval)
        self.max_correction = float(max_correction)

    @classmethod
    def from_config(cls, cfg: ConservationConfig) -> "ConservationEnforcer":
        available = {
            "particle": lambda: ParticleConservation(cfg.particle_tolerance),
            "energy": lambda: EnergyConservation(cfg.energy_tolerance),
        }
        laws = [available[name]() for name in cfg.laws]
        return cls(laws, interval=cfg.interval, max_correction=cfg.max_correction)

    def should_enforce(self, step: int) -> bool:
        return step > 0 and step % self.interval == 0

    def capture_reference(self, profile: ProfileSnapshot, geometry: RadialGrid, step: int = 0) -> ConservationReference:
        return ConservationReference.capture(profile, geometry, self.laws, step)

    def measure(
        self, profile: ProfileSnapshot, geometry: RadialGrid, reference: ConservationReference
    ) -> Dict[str, float]:
        """Relative drift per law; NaN where the integral or baseline is unusable."""

        drifts: Dict[str, float] = {}
        for law in self.laws:
            ref = reference.values.get(law.name, math.nan)
            cur = law.integral(profile, geometry)
            if ref > 0.0 and math.isfinite(ref) and math.isfinite(cur):
                drifts[law.name] = _relative_drift(cur, ref)
            else:
                drifts[law.name] = math.nan
        return drifts

    def _clamp(self, factor: float) -> float:
        return float(np.clip(factor, 1.0 - self.max_correction, 1.0 + self.max_correction))

    def enforce(
        self,
        profile: ProfileSnapshot,
        geometry: RadialGrid,
        reference: ConservationReference,
        step: int,
    ) -> Tuple[ProfileSnapshot, List[ConservationReport]]:
        """Apply every law once and return the corrected profile and reports."""

        reports: List[ConservationReport] = []
        current_profile = profile
        for law in self.laws:
            ref = float(reference.values.get(law.name, math.nan))
            cur = float(law.integral(current_profile, geometry))
            anomaly = None
            if not math.isfinite(ref) or ref <= 0.0:
                anomaly = f"reference {ref!r} is non-positive or non-finite"
            elif not math.isfinite(cur) or cur <= 0.0:
                anomaly = f"current integral {cur!r} is non-positive or non-finite"
            if anomaly is not None:
                logger.warning("ConservationEnforcer: %s law skipped at step %d: %s", law.name, step, anomaly)
                warnings.warn(f"{law.name} conservation skipped: {anomaly}", ConservationAnomalyWarning, stacklevel=2)
                reports.append(ConservationReport(law.name, step, ref, cur, math.nan, 1.0, False, anomaly))
                continue

            drift = _relative_drift(cur, ref)
            if drift <= law.drift_tolerance:
                reports.append(ConservationReport(law.name, step, ref, cur, drift, 1.0, False))
                continue
            factor = self._clamp(ref / cur)
            current_profile = law.rescale(current_profile, factor)
            logger.info(
                "ConservationEnforcer: %s drift %.3e at step %d corrected by factor %.6f",
                law.name,
                drift,
                step,
                factor,
            )
            reports.append(ConservationReport(law.name, step, ref, cur, drift, factor, True))
        return current_profile, reports
