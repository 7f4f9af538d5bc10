"""Physical constants, unit conversions and numerical floors.

Profiles use the following units throughout the package:

* temperatures in keV,
* electron density in 10^20 m^-3,
* poloidal flux in Wb,
* radii in m, times in s.
"""
from __future__ import annotations

#: Elementary charge / keV in joules [J]
KEV_TO_J: float = 1.602176634e-16

#: Density normalisation of the profile [m^-3]
DENSITY_UNIT: float = 1.0e20

#: Heating density conversion MW m^-3 -> keV 1e20 m^-3 s^-1
MW_PER_M3_TO_PROFILE: float = 1.0e6 / (DENSITY_UNIT * KEV_TO_J)

#: Stored thermal energy prefactor (3/2 n T)
THERMAL_ENERGY_FACTOR: float = 1.5

#: Density floor used inside coefficient construction [1e20 m^-3]
DENSITY_FLOOR: float = 1.0e-2

#: Guard added to diffusivities when forming Péclet numbers [m^2 s^-1]
DIFFUSIVITY_EPS: float = 1.0e-30

#: |Pe| beyond which the power-law weight is exactly zero
PECLET_CUTOFF: float = 10.0

#: Condition number reported when an estimate is singular or non-finite
KAPPA_SENTINEL: float = 1.0e15

#: Minimum variable scale used by the Newton iteration
MIN_VARIABLE_SCALE: float = 1.0e-10

__all__ = [
    "KEV_TO_J",
    "DENSITY_UNIT",
    "MW_PER_M3_TO_PROFILE",
    "THERMAL_ENERGY_FACTOR",
    "DENSITY_FLOOR",
    "DIFFUSIVITY_EPS",
    "PECLET_CUTOFF",
    "KAPPA_SENTINEL",
    "MIN_VARIABLE_SCALE",
]
