"""Profile snapshots, boundary conditions and physics-callback payloads.

A :class:`ProfileSnapshot` holds the four evolved fields over ``N`` cells
together with their boundary conditions.  Snapshots are immutable: advancing
time or applying a correction creates a new snapshot.

The Newton iteration works on a flattened state vector of length ``4N``
ordered cell-major, ``x[4*i + q]`` for cell ``i`` and quantity ``q`` (see
:data:`QUANTITIES`).  With nearest-neighbour coupling this ordering keeps the
Jacobian banded.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Literal, Mapping, Optional, Tuple

import numpy as np

from .errors import NonFiniteStateError, PreconditionError
from .grid import RadialGrid

QUANTITIES: Tuple[str, ...] = ("T_i", "T_e", "n_e", "psi")
POSITIVE_QUANTITIES: Tuple[str, ...] = ("T_i", "T_e", "n_e")
N_QUANTITIES = len(QUANTITIES)

BoundaryKind = Literal["dirichlet", "neumann"]

__all__ = [
    "QUANTITIES",
    "POSITIVE_QUANTITIES",
    "N_QUANTITIES",
    "BoundaryCondition",
    "FieldBoundary",
    "ProfileSnapshot",
    "TransportCoefficients",
    "SourceTerms",
    "PhysicsCallback",
    "flatten_fields",
    "unflatten_fields",
]


def _frozen_copy(values: Iterable[float] | np.ndarray, name: str) -> np.ndarray:
    arr = np.array(values, dtype=float, copy=True)
    if arr.ndim != 1:
        raise PreconditionError(f"{name} must be one-dimensional")
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True)
class BoundaryCondition:
    """Value (Dirichlet) or gradient (Neumann) condition at one boundary face."""

    kind: BoundaryKind
    value: float = 0.0

    def __post_init__(self) -> None:
        if self.kind not in ("dirichlet", "neumann"):
            raise PreconditionError(f"unknown boundary kind {self.kind!r}")
        object.__setattr__(self, "value", float(self.value))

    @classmethod
    def dirichlet(cls, value: float) -> "BoundaryCondition":
        return cls("dirichlet", value)

    @classmethod
    def neumann(cls, gradient: float = 0.0) -> "BoundaryCondition":
        return cls("neumann", gradient)


@dataclass(frozen=True)
class FieldBoundary:
    """Pair of boundary conditions at the inner (``left``) and outer (``right``) faces."""

    left: BoundaryCondition = field(default_factory=BoundaryCondition.neumann)
    right: BoundaryCondition = field(default_factory=BoundaryCondition.neumann)

    @classmethod
    def axis_to_edge(cls, edge_value: float) -> "FieldBoundary":
        """Zero gradient at the axis and a fixed value at the edge."""
        return cls(BoundaryCondition.neumann(0.0), BoundaryCondition.dirichlet(edge_value))


@dataclass(frozen=True, eq=False)
class ProfileSnapshot:
    """Immutable snapshot of ``T_i``, ``T_e``, ``n_e`` and ``psi`` on ``N`` cells."""

    T_i: np.ndarray
    T_e: np.ndarray
    n_e: np.ndarray
    psi: np.ndarray
    boundaries: Mapping[str, FieldBoundary] = field(default_factory=dict)

    def __post_init__(self) -> None:
        sizes = set()
        for name in QUANTITIES:
            arr = _frozen_copy(getattr(self, name), name)
            object.__setattr__(self, name, arr)
            sizes.add(arr.size)
        if len(sizes) != 1:
            raise PreconditionError(
                "profile fields must share one length; got "
                + ", ".join(f"{name}={getattr(self, name).size}" for name in QUANTITIES)
            )
        if self.n_cells < 2:
            raise PreconditionError("profiles need at least two cells")
        unknown = set(self.boundaries) - set(QUANTITIES)
        if unknown:
            raise PreconditionError(f"boundary conditions given for unknown fields: {sorted(unknown)}")
        resolved: Dict[str, FieldBoundary] = {}
        for name in QUANTITIES:
            resolved[name] = self.boundaries.get(name, FieldBoundary())
        object.__setattr__(self, "boundaries", resolved)

    @property
    def n_cells(self) -> int:
        return int(self.T_i.size)

    def field(self, name: str) -> np.ndarray:
        if name not in QUANTITIES:
            raise KeyError(name)
        return getattr(self, name)

    def as_dict(self) -> Dict[str, np.ndarray]:
        return {name: getattr(self, name) for name in QUANTITIES}

    def boundary(self, name: str) -> FieldBoundary:
        return self.boundaries[name]

    def replace(self, **fields: np.ndarray) -> "ProfileSnapshot":
        """Return a new snapshot with some fields replaced; boundaries are kept."""
        unknown = set(fields) - set(QUANTITIES)
        if unknown:
            raise KeyError(f"unknown profile fields: {sorted(unknown)}")
        values = self.as_dict()
        values.update(fields)
        return ProfileSnapshot(boundaries=self.boundaries, **values)

    def non_finite_quantities(self) -> Tuple[str, ...]:
        return tuple(name for name in QUANTITIES if not np.all(np.isfinite(getattr(self, name))))

    def require_finite(self) -> None:
        """Raise :class:`NonFiniteStateError` if any field holds NaN or Inf."""
        bad = self.non_finite_quantities()
        if bad:
            raise NonFiniteStateError(f"profile contains non-finite values in {bad}", quantity=bad[0])

    def is_feasible(self) -> bool:
        """True when temperatures and density are strictly positive and all fields finite."""
        if self.non_finite_quantities():
            return False
        return all(bool(np.all(getattr(self, name) > 0.0)) for name in POSITIVE_QUANTITIES)

    def to_vector(self) -> np.ndarray:
        return flatten_fields([getattr(self, name) for name in QUANTITIES])

    def with_vector(self, x: np.ndarray) -> "ProfileSnapshot":
        """Return a snapshot whose fields are read from a flattened state vector."""
        blocks = unflatten_fields(x, self.n_cells)
        return ProfileSnapshot(
            boundaries=self.boundaries,
            **{name: blocks[q] for q, name in enumerate(QUANTITIES)},
        )


def flatten_fields(fields: Iterable[np.ndarray]) -> np.ndarray:
    """Stack per-quantity arrays into a cell-major vector of length ``4N``."""
    stacked = np.vstack([np.asarray(f, dtype=float) for f in fields])
    return np.ascontiguousarray(stacked.T).reshape(-1)


def unflatten_fields(x: np.ndarray, n_cells: int) -> np.ndarray:
    """Inverse of :func:`flatten_fields`; returns an array of shape ``(4, N)``."""
    arr = np.asarray(x, dtype=float)
    if arr.shape != (N_QUANTITIES * n_cells,):
        raise PreconditionError(
            f"state vector has shape {arr.shape}; expected ({N_QUANTITIES * n_cells},)"
        )
    return arr.reshape(n_cells, N_QUANTITIES).T.copy()


def _optional_array(values: Optional[Iterable[float] | np.ndarray]) -> Optional[np.ndarray]:
    if values is None:
        return None
    arr = np.array(values, dtype=float, copy=True)
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True, eq=False)
class TransportCoefficients:
    """Transport coefficients returned by a physics callback.

    Arrays may be cell-valued (length ``N``) or face-valued (length ``N+1``).

    Attributes
    ----------
    chi_ion, chi_electron:
        Heat diffusivities [m^2 s^-1].
    particle_diffusivity:
        Electron particle diffusivity [m^2 s^-1].
    particle_convection:
        Electron pinch velocity, positive outward [m s^-1].
    flux_diffusivity:
        Resistive diffusivity of the poloidal flux [m^2 s^-1]; zero when omitted.
    """

    chi_ion: np.ndarray
    chi_electron: np.ndarray
    particle_diffusivity: np.ndarray
    particle_convection: Optional[np.ndarray] = None
    flux_diffusivity: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        for name in ("chi_ion", "chi_electron", "particle_diffusivity", "particle_convection", "flux_diffusivity"):
            object.__setattr__(self, name, _optional_array(getattr(self, name)))

    def max_diffusivities(self) -> Dict[str, float]:
        """Largest diffusivity per evolved quantity."""
        def _max(arr: Optional[np.ndarray]) -> float:
            if arr is None or arr.size == 0:
                return 0.0
            return float(np.max(np.abs(arr)))

        return {
            "T_i": _max(self.chi_ion),
            "T_e": _max(self.chi_electron),
            "n_e": _max(self.particle_diffusivity),
            "psi": _max(self.flux_diffusivity),
        }

    def max_convection(self) -> float:
        if self.particle_convection is None or self.particle_convection.size == 0:
            return 0.0
        return float(np.max(np.abs(self.particle_convection)))


@dataclass(frozen=True, eq=False)
class SourceTerms:
    """Volumetric sources returned by a physics callback (cell-valued).

    Heating is in MW m^-3, the particle source in 10^20 m^-3 s^-1 and the
    current source in equation units of the flux equation [Wb s^-1].
    ``implicit`` optionally maps a quantity name to a linearised source
    coefficient ``S_lin`` contributing ``S_lin * u`` in equation units.
    """

    ion_heating: np.ndarray
    electron_heating: np.ndarray
    particle_source: np.ndarray
    current_source: np.ndarray
    implicit: Mapping[str, np.ndarray] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for name in ("ion_heating", "electron_heating", "particle_source", "current_source"):
            object.__setattr__(self, name, _optional_array(getattr(self, name)))
        unknown = set(self.implicit) - set(QUANTITIES)
        if unknown:
            raise PreconditionError(f"implicit sources given for unknown fields: {sorted(unknown)}")
        object.__setattr__(
            self, "implicit", {key: _optional_array(val) for key, val in self.implicit.items()}
        )

    @classmethod
    def zeros(cls, n_cells: int) -> "SourceTerms":
        z = np.zeros(n_cells)
        return cls(z, z, z, z)

    def __add__(self, other: "SourceTerms") -> "SourceTerms":
        if not isinstance(other, SourceTerms):
            return NotImplemented
        implicit = dict(self.implicit)
        for key, val in other.implicit.items():
            implicit[key] = implicit[key] + val if key in implicit else val
        return SourceTerms(
            ion_heating=self.ion_heating + other.ion_heating,
            electron_heating=self.electron_heating + other.electron_heating,
            particle_source=self.particle_source + other.particle_source,
            current_source=self.current_source + other.current_source,
            implicit=implicit,
        )


PhysicsCallback = Callable[[ProfileSnapshot, RadialGrid], Tuple[TransportCoefficients, SourceTerms]]
