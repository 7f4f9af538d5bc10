"""Radial finite-volume grid for the transport equations.

The grid is an immutable descriptor: cell centres, face (edge) radii, cell
volumes and face areas.  Three geometries are supported:

``slab``
    Unit face area, volume equal to the cell width.
``cylindrical``
    Face area ``2π r`` and volume ``π (r_{i+1}^2 - r_i^2)`` per unit length.
``toroidal``
    Large-aspect-ratio torus: the cylindrical values multiplied by ``2π R0``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Literal

import numpy as np

from .errors import PreconditionError

GeometryKind = Literal["slab", "cylindrical", "toroidal"]

__all__ = ["GeometryKind", "RadialGrid"]


def _freeze(arr: np.ndarray) -> np.ndarray:
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True, eq=False)
class RadialGrid:
    """Immutable 1D radial grid.

    Parameters
    ----------
    r:
        Cell centre radii (m), length ``N``.
    edges:
        Radii at cell faces (m); length ``N+1``.
    volumes:
        Cell volumes, consistent with ``kind`` (m^3 or per-unit-length).
    face_areas:
        Areas of the ``N+1`` faces.
    kind:
        Geometry label used to derive ``volumes`` and ``face_areas``.
    """

    r: np.ndarray
    edges: np.ndarray
    volumes: np.ndarray
    face_areas: np.ndarray
    kind: GeometryKind = "cylindrical"
    major_radius: float = 1.0
    dr: np.ndarray = field(init=False, repr=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "dr", _freeze(np.diff(self.edges)))

    @classmethod
    def from_edges(
        cls,
        edges: Iterable[float],
        *,
        kind: GeometryKind = "cylindrical",
        major_radius: float = 1.0,
    ) -> "RadialGrid":
        """Construct a grid from an iterable of face locations.

        Raises
        ------
        PreconditionError
            If ``edges`` is not a strictly increasing 1D array with at least
            three entries, or ``kind`` is unknown.
        """

        edges_arr = np.asarray(list(edges), dtype=float)
        if edges_arr.ndim != 1 or edges_arr.size < 3:
            raise PreconditionError("edges must be a one dimensional array with >=3 entries")
        if not np.all(np.isfinite(edges_arr)):
            raise PreconditionError("edges must be finite")
        if np.any(np.diff(edges_arr) <= 0.0):
            raise PreconditionError("edges must be strictly increasing")
        if kind != "slab" and edges_arr[0] < 0.0:
            raise PreconditionError("curvilinear grids require non-negative radii")
        if major_radius <= 0.0:
            raise PreconditionError("major_radius must be positive")

        r = 0.5 * (edges_arr[:-1] + edges_arr[1:])
        if kind == "slab":
            volumes = np.diff(edges_arr)
            face_areas = np.ones_like(edges_arr)
        elif kind == "cylindrical":
            volumes = np.pi * (edges_arr[1:] ** 2 - edges_arr[:-1] ** 2)
            face_areas = 2.0 * np.pi * edges_arr
        elif kind == "toroidal":
            ring = 2.0 * np.pi * major_radius
            volumes = ring * np.pi * (edges_arr[1:] ** 2 - edges_arr[:-1] ** 2)
            face_areas = ring * 2.0 * np.pi * edges_arr
        else:
            raise PreconditionError(f"unknown geometry kind {kind!r}")
        return cls(
            r=_freeze(r),
            edges=_freeze(edges_arr),
            volumes=_freeze(volumes),
            face_areas=_freeze(face_areas),
            kind=kind,
            major_radius=float(major_radius),
        )

    @classmethod
    def linear(
        cls,
        r_min: float,
        r_max: float,
        n: int,
        *,
        kind: GeometryKind = "cylindrical",
        major_radius: float = 1.0,
    ) -> "RadialGrid":
        """Generate a grid with ``n`` cells and linearly spaced faces."""
        if n < 2:
            raise PreconditionError("at least two cells are required")
        return cls.from_edges(np.linspace(r_min, r_max, n + 1), kind=kind, major_radius=major_radius)

    @property
    def n_cells(self) -> int:
        return int(self.r.size)

    @property
    def n_faces(self) -> int:
        return int(self.edges.size)

    @property
    def face_spacing(self) -> np.ndarray:
        """Distance between the centres adjacent to each face (length ``N+1``).

        Boundary faces use the half-cell distance between the face and the
        first/last centre.
        """
        inner = np.diff(self.r)
        left = self.r[0] - self.edges[0]
        right = self.edges[-1] - self.r[-1]
        return np.concatenate(([left], inner, [right]))

    @property
    def min_spacing(self) -> float:
        return float(np.min(self.dr))

    def integrate(self, values: np.ndarray) -> float:
        """Return ``Σ values·V`` over the cells."""
        arr = np.asarray(values, dtype=float)
        if arr.shape != self.r.shape:
            raise PreconditionError(
                f"cannot integrate array of shape {arr.shape} on grid with {self.n_cells} cells"
            )
        return float(np.sum(arr * self.volumes))
