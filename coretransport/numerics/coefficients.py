"""Finite-volume coefficient construction for the coupled transport equations.

Each evolved quantity ``u`` obeys

.. math::

    c(u)\\,\\partial_t u = -\\frac{1}{V}\\nabla\\cdot(A\\,J) + S + S_{lin}\\,u,
    \\qquad J = -D\\,\\partial_r u + v\\,u,

and is described by an :class:`EquationCoeffs` bundle: face diffusion and
convection (``N+1``), cell source, source linearisation and transient
coefficient (``N``).  Boundary conditions are folded into the first and last
cell's ``source`` and ``source_mat`` via a ghost-cell convention, so the
interior operator only ever couples neighbouring cells.

Equation set
------------
``T_i``, ``T_e``
    ``c = 1.5 n_e``, ``D = n_e χ``, heating converted from MW m^-3.
``n_e``
    ``c = 1``, ``D = D_n``, ``v = V_n``, particle source.
``psi``
    ``c = 1``, ``D`` from the resistive flux diffusivity, current source.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Literal, Mapping, Optional, Tuple

import numpy as np

from .. import constants
from ..errors import PreconditionError
from ..grid import RadialGrid
from ..state import (
    QUANTITIES,
    BoundaryCondition,
    PhysicsCallback,
    ProfileSnapshot,
    SourceTerms,
    TransportCoefficients,
)
from .power_law import face_flux_coefficients

logger = logging.getLogger(__name__)

__all__ = [
    "EquationCoeffs",
    "BlockCoeffs",
    "CoefficientBuilder",
    "CoefficientCache",
    "CoeffsCallback",
    "interpolate_to_faces",
    "build_coefficients",
    "make_coeffs_callback",
]


def _readonly(arr: np.ndarray) -> np.ndarray:
    out = np.array(arr, dtype=float, copy=True)
    out.setflags(write=False)
    return out


@dataclass(frozen=True, eq=False)
class EquationCoeffs:
    """Finite-volume coefficients of one evolved quantity."""

    d_face: np.ndarray
    v_face: np.ndarray
    source: np.ndarray
    source_mat: np.ndarray
    transient: np.ndarray

    def __post_init__(self) -> None:
        for name in ("d_face", "v_face", "source", "source_mat", "transient"):
            object.__setattr__(self, name, _readonly(getattr(self, name)))
        n = self.transient.size
        if self.d_face.size != n + 1 or self.v_face.size != n + 1:
            raise PreconditionError("face coefficients must have length N+1")
        if self.source.size != n or self.source_mat.size != n:
            raise PreconditionError("cell coefficients must have length N")

    def non_finite_fields(self) -> Tuple[str, ...]:
        names = ("d_face", "v_face", "source", "source_mat", "transient")
        return tuple(name for name in names if not np.all(np.isfinite(getattr(self, name))))


@dataclass(frozen=True, eq=False)
class BlockCoeffs:
    """Coefficients of all evolved quantities for one profile."""

    equations: Mapping[str, EquationCoeffs]
    theta: float
    transport: Optional[TransportCoefficients] = None

    def __getitem__(self, name: str) -> EquationCoeffs:
        return self.equations[name]


CoeffsCallback = Callable[[ProfileSnapshot, RadialGrid], BlockCoeffs]


def interpolate_to_faces(
    values: Optional[np.ndarray],
    n_cells: int,
    *,
    mode: Literal["harmonic", "arithmetic"] = "arithmetic",
    name: str = "coefficient",
) -> np.ndarray:
    """Return face values (length ``N+1``) from cell- or face-valued input.

    Boundary faces take the adjacent cell value.  ``None`` yields zeros.
    """

    if values is None:
        return np.zeros(n_cells + 1)
    arr = np.asarray(values, dtype=float)
    if arr.shape == (n_cells + 1,):
        return arr.copy()
    if arr.shape != (n_cells,):
        raise PreconditionError(
            f"{name} has shape {arr.shape}; expected ({n_cells},) or ({n_cells + 1},)"
        )
    left = arr[:-1]
    right = arr[1:]
    if mode == "harmonic":
        total = left + right
        with np.errstate(divide="ignore", invalid="ignore"):
            inner = np.where(total != 0.0, 2.0 * left * right / total, 0.0)
    else:
        inner = 0.5 * (left + right)
    return np.concatenate(([arr[0]], inner, [arr[-1]]))


def _cell_array(values: Optional[np.ndarray], n_cells: int, name: str) -> np.ndarray:
    if values is None:
        return np.zeros(n_cells)
    arr = np.asarray(values, dtype=float)
    if arr.shape != (n_cells,):
        raise PreconditionError(f"{name} has shape {arr.shape}; expected ({n_cells},)")
    return arr


def _fold_boundaries(
    d_face: np.ndarray,
    v_face: np.ndarray,
    source: np.ndarray,
    source_mat: np.ndarray,
    left: BoundaryCondition,
    right: BoundaryCondition,
    geometry: RadialGrid,
) -> Tuple[np.ndarray, np.ndarray]:
    """Fold boundary-face fluxes into the first/last cell source terms."""

    source = source.copy()
    source_mat = source_mat.copy()
    spacing = geometry.face_spacing
    areas = geometry.face_areas
    volumes = geometry.volumes

    # Inner face: flux J_0 enters cell 0.
    scale0 = areas[0] / volumes[0]
    if left.kind == "dirichlet":
        a_l, a_r = face_flux_coefficients(d_face[:1], v_face[:1], spacing[:1])
        source[0] += scale0 * a_l[0] * left.value
        source_mat[0] -= scale0 * a_r[0]
    else:
        source[0] -= scale0 * d_face[0] * left.value
        source_mat[0] += scale0 * v_face[0]

    # Outer face: flux J_N leaves cell N-1.
    scale_n = areas[-1] / volumes[-1]
    if right.kind == "dirichlet":
        a_l, a_r = face_flux_coefficients(d_face[-1:], v_face[-1:], spacing[-1:])
        source[-1] += scale_n * a_r[0] * right.value
        source_mat[-1] -= scale_n * a_l[0]
    else:
        source[-1] += scale_n * d_face[-1] * right.value
        source_mat[-1] -= scale_n * v_face[-1]
    return source, source_mat


def build_coefficients(
    profile: ProfileSnapshot,
    transport: TransportCoefficients,
    sources: SourceTerms,
    geometry: RadialGrid,
    theta: float,
    *,
    density_floor: float = constants.DENSITY_FLOOR,
) -> BlockCoeffs:
    """Turn transport coefficients and sources into per-equation FV coefficients.

    Parameters
    ----------
    profile:
        Profile providing the density weighting and boundary conditions.
    transport:
        Cell- or face-valued transport coefficients.
    sources:
        Cell-valued volumetric sources.
    geometry:
        Grid on which ``profile`` lives.
    theta:
        θ-method implicitness carried with the coefficients.
    density_floor:
        Lower bound applied to ``n_e`` inside the coefficients.

    Returns
    -------
    BlockCoeffs
        Coefficients keyed by quantity name.

    Raises
    ------
    PreconditionError
        On any array length mismatch.
    """

    n = geometry.n_cells
    if profile.n_cells != n:
        raise PreconditionError(f"profile has {profile.n_cells} cells but grid has {n}")
    if not 0.0 <= theta <= 1.0:
        raise PreconditionError("theta must lie in [0, 1]")

    ne_cell = np.maximum(profile.n_e, density_floor)
    ne_face = interpolate_to_faces(ne_cell, n, mode="arithmetic", name="n_e")
    zeros_face = np.zeros(n + 1)
    ones_cell = np.ones(n)

    chi_i = interpolate_to_faces(transport.chi_ion, n, mode="harmonic", name="chi_ion")
    chi_e = interpolate_to_faces(transport.chi_electron, n, mode="harmonic", name="chi_electron")
    d_n = interpolate_to_faces(transport.particle_diffusivity, n, mode="harmonic", name="particle_diffusivity")
    v_n = interpolate_to_faces(transport.particle_convection, n, mode="arithmetic", name="particle_convection")
    d_psi = interpolate_to_faces(transport.flux_diffusivity, n, mode="harmonic", name="flux_diffusivity")

    heat_transient = constants.THERMAL_ENERGY_FACTOR * ne_cell
    raw: Dict[str, Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]] = {
        "T_i": (
            ne_face * chi_i,
            zeros_face,
            _cell_array(sources.ion_heating, n, "ion_heating") * constants.MW_PER_M3_TO_PROFILE,
            heat_transient,
        ),
        "T_e": (
            ne_face * chi_e,
            zeros_face,
            _cell_array(sources.electron_heating, n, "electron_heating") * constants.MW_PER_M3_TO_PROFILE,
            heat_transient,
        ),
        "n_e": (d_n, v_n, _cell_array(sources.particle_source, n, "particle_source"), ones_cell),
        "psi": (d_psi, zeros_face, _cell_array(sources.current_source, n, "current_source"), ones_cell),
    }

    equations: Dict[str, EquationCoeffs] = {}
    for name in QUANTITIES:
        d_face, v_face, source, transient = raw[name]
        source_mat = _cell_array(sources.implicit.get(name), n, f"implicit[{name}]")
        bc = profile.boundary(name)
        source, source_mat = _fold_boundaries(d_face, v_face, source, source_mat, bc.left, bc.right, geometry)
        equations[name] = EquationCoeffs(
            d_face=d_face,
            v_face=v_face,
            source=source,
            source_mat=source_mat,
            transient=transient,
        )
    return BlockCoeffs(equations=equations, theta=float(theta), transport=transport)


class CoefficientBuilder:
    """Callable wrapper binding θ and the density floor to :func:`build_coefficients`."""

    def __init__(self, theta: float = 1.0, *, density_floor: float = constants.DENSITY_FLOOR) -> None:
        if not 0.0 <= theta <= 1.0:
            raise PreconditionError("theta must lie in [0, 1]")
        self.theta = float(theta)
        self.density_floor = float(density_floor)

    def build(
        self,
        profile: ProfileSnapshot,
        transport: TransportCoefficients,
        sources: SourceTerms,
        geometry: RadialGrid,
        theta: Optional[float] = None,
    ) -> BlockCoeffs:
        return build_coefficients(
            profile,
            transport,
            sources,
            geometry,
            self.theta if theta is None else theta,
            density_floor=self.density_floor,
        )

    __call__ = build


class CoefficientCache:
    """Memo of coefficients keyed on the trial-state bytes.

    Valid for repeated identical evaluations within one step only; call
    :meth:`clear` between steps.  Access is serialised by a lock so one cache
    may be shared by concurrent callers.
    """

    def __init__(self, maxsize: int = 8) -> None:
        self.maxsize = max(int(maxsize), 1)
        self._entries: Dict[bytes, BlockCoeffs] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def _key(profile: ProfileSnapshot) -> bytes:
        return profile.to_vector().tobytes()

    def get_or_build(self, profile: ProfileSnapshot, factory: Callable[[], BlockCoeffs]) -> BlockCoeffs:
        key = self._key(profile)
        with self._lock:
            cached = self._entries.get(key)
            if cached is not None:
                self.hits += 1
                return cached
            self.misses += 1
            coeffs = factory()
            if len(self._entries) >= self.maxsize:
                self._entries.pop(next(iter(self._entries)))
            self._entries[key] = coeffs
            return coeffs

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


def make_coeffs_callback(
    physics_callback: PhysicsCallback,
    builder: CoefficientBuilder,
    *,
    cache: Optional[CoefficientCache] = None,
) -> CoeffsCallback:
    """Close a physics callback and a builder into a ``(profile, grid) -> BlockCoeffs`` seam."""

    def _build(profile: ProfileSnapshot, geometry: RadialGrid) -> BlockCoeffs:
        transport, sources = physics_callback(profile, geometry)
        return builder.build(profile, transport, sources, geometry)

    if cache is None:
        return _build

    def _cached(profile: ProfileSnapshot, geometry: RadialGrid) -> BlockCoeffs:
        return cache.get_or_build(profile, lambda: _build(profile, geometry))

    return _cached
