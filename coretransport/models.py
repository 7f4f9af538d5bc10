"""Reference physics callbacks.

A physics callback maps ``(profile, grid)`` to ``(TransportCoefficients,
SourceTerms)``.  Models here are small callable objects; several source
models are combined with :func:`combine_physics`, which sums their outputs so
the solver never needs to know how many contributed.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Sequence, Tuple

import numpy as np

from .grid import RadialGrid
from .state import PhysicsCallback, ProfileSnapshot, SourceTerms, TransportCoefficients

TransportModel = Callable[[ProfileSnapshot, RadialGrid], TransportCoefficients]
SourceModel = Callable[[ProfileSnapshot, RadialGrid], SourceTerms]

__all__ = [
    "TransportModel",
    "SourceModel",
    "ConstantTransport",
    "TemperatureDependentTransport",
    "ConstantSources",
    "GaussianHeating",
    "combine_physics",
]


@dataclass(frozen=True)
class ConstantTransport:
    """Spatially uniform diffusivities and pinch velocity."""

    chi_ion: float = 1.0
    chi_electron: float = 1.0
    particle_diffusivity: float = 0.5
    particle_convection: float = 0.0
    flux_diffusivity: float = 0.0

    def __call__(self, profile: ProfileSnapshot, geometry: RadialGrid) -> TransportCoefficients:
        ones = np.ones(geometry.n_cells)
        return TransportCoefficients(
            chi_ion=self.chi_ion * ones,
            chi_electron=self.chi_electron * ones,
            particle_diffusivity=self.particle_diffusivity * ones,
            particle_convection=self.particle_convection * ones,
            flux_diffusivity=self.flux_diffusivity * ones,
        )


@dataclass(frozen=True)
class TemperatureDependentTransport:
    """Heat diffusivities ``χ = χ0 (T/T_ref)^α``; stiff for ``α > 0``."""

    chi0: float = 1.0
    t_ref: float = 1.0
    exponent: float = 1.5
    particle_diffusivity: float = 0.5
    flux_diffusivity: float = 0.0

    def __call__(self, profile: ProfileSnapshot, geometry: RadialGrid) -> TransportCoefficients:
        ti = np.maximum(profile.T_i, 0.0) / self.t_ref
        te = np.maximum(profile.T_e, 0.0) / self.t_ref
        ones = np.ones(geometry.n_cells)
        return TransportCoefficients(
            chi_ion=self.chi0 * ti**self.exponent,
            chi_electron=self.chi0 * te**self.exponent,
            particle_diffusivity=self.particle_diffusivity * ones,
            flux_diffusivity=self.flux_diffusivity * ones,
        )


@dataclass(frozen=True)
class ConstantSources:
    """Uniform heating [MW m^-3], particle [1e20 m^-3 s^-1] and current sources."""

    ion_heating: float = 0.0
    electron_heating: float = 0.0
    particle_source: float = 0.0
    current_source: float = 0.0

    def __call__(self, profile: ProfileSnapshot, geometry: RadialGrid) -> SourceTerms:
        ones = np.ones(geometry.n_cells)
        return SourceTerms(
            ion_heating=self.ion_heating * ones,
            electron_heating=self.electron_heating * ones,
            particle_source=self.particle_source * ones,
            current_source=self.current_source * ones,
        )


@dataclass(frozen=True)
class GaussianHeating:
    """Gaussian power deposition ``P exp(-(r - r0)^2 / (2 w^2))`` [MW m^-3]."""

    peak: float = 1.0
    centre: float = 0.0
    width: float = 0.2
    electron_fraction: float = 0.5

    def __call__(self, profile: ProfileSnapshot, geometry: RadialGrid) -> SourceTerms:
        shape = self.peak * np.exp(-((geometry.r - self.centre) ** 2) / (2.0 * self.width**2))
        zeros = np.zeros(geometry.n_cells)
        return SourceTerms(
            ion_heating=(1.0 - self.electron_fraction) * shape,
            electron_heating=self.electron_fraction * shape,
            particle_source=zeros,
            current_source=zeros,
        )


def combine_physics(transport: TransportModel, sources: Sequence[SourceModel] = ()) -> PhysicsCallback:
    """Bind one transport model and any number of source models into a physics callback."""

    source_models: Tuple[SourceModel, ...] = tuple(sources)

    def physics(profile: ProfileSnapshot, geometry: RadialGrid) -> Tuple[TransportCoefficients, SourceTerms]:
        total = SourceTerms.zeros(geometry.n_cells)
        for model in source_models:
            total = total + model(profile, geometry)
        return transport(profile, geometry), total

    return physics
