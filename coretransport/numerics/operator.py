"""Spatial operator and θ-method residual assembly.

The discrete operator of one quantity is tridiagonal::

    f(u)_i = lower_i u_{i-1} + diag_i u_i + upper_i u_{i+1} + source_i

with boundary contributions already folded into ``diag`` and ``source`` by
:mod:`coretransport.numerics.coefficients`.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Tuple

import numpy as np

from ..errors import NonFiniteStateError, PreconditionError
from ..grid import RadialGrid
from ..state import N_QUANTITIES, QUANTITIES, flatten_fields, unflatten_fields
from .coefficients import BlockCoeffs, EquationCoeffs
from .power_law import face_flux_coefficients

logger = logging.getLogger(__name__)

__all__ = [
    "TridiagonalOperator",
    "operator_matrix",
    "apply_operator",
    "require_finite_coeffs",
    "assemble_residual",
    "linearized_jacobian",
    "split_residual_norms",
]


@dataclass(frozen=True, eq=False)
class TridiagonalOperator:
    """Diagonals of the linear part of ``f`` plus the constant source."""

    lower: np.ndarray
    diag: np.ndarray
    upper: np.ndarray
    source: np.ndarray

    def apply(self, u: np.ndarray) -> np.ndarray:
        out = self.diag * u + self.source
        out[1:] += self.lower[1:] * u[:-1]
        out[:-1] += self.upper[:-1] * u[1:]
        return out

    def dense(self) -> np.ndarray:
        n = self.diag.size
        mat = np.diag(self.diag)
        idx = np.arange(1, n)
        mat[idx, idx - 1] = self.lower[1:]
        mat[idx - 1, idx] = self.upper[:-1]
        return mat


def operator_matrix(eq: EquationCoeffs, geometry: RadialGrid) -> TridiagonalOperator:
    """Return the tridiagonal spatial operator of one equation.

    ``lower[0]`` and ``upper[-1]`` are always zero.
    """

    n = geometry.n_cells
    if eq.transient.size != n:
        raise PreconditionError(f"coefficients have {eq.transient.size} cells but grid has {n}")
    spacing = geometry.face_spacing[1:-1]
    areas = geometry.face_areas[1:-1]
    volumes = geometry.volumes
    a_left, a_right = face_flux_coefficients(eq.d_face[1:-1], eq.v_face[1:-1], spacing)

    lower = np.zeros(n)
    diag = np.array(eq.source_mat, dtype=float, copy=True)
    upper = np.zeros(n)
    # Interior face k separates cells k-1 and k; J_k = a_left u_{k-1} - a_right u_k.
    out_scale = areas / volumes[:-1]
    in_scale = areas / volumes[1:]
    diag[:-1] -= out_scale * a_left
    upper[:-1] += out_scale * a_right
    lower[1:] += in_scale * a_left
    diag[1:] -= in_scale * a_right
    return TridiagonalOperator(lower=lower, diag=diag, upper=upper, source=np.array(eq.source, dtype=float))


def apply_operator(u: np.ndarray, eq: EquationCoeffs, geometry: RadialGrid) -> np.ndarray:
    """Evaluate flux divergence plus sources, ``f(u)``, for one equation."""
    return operator_matrix(eq, geometry).apply(np.asarray(u, dtype=float))


def require_finite_coeffs(coeffs: BlockCoeffs, label: str = "coefficients") -> None:
    """Raise :class:`NonFiniteStateError` naming the first quantity with NaN/Inf coefficients."""

    for name in QUANTITIES:
        bad = coeffs[name].non_finite_fields()
        if bad:
            raise NonFiniteStateError(
                f"{label} for {name} contain non-finite values in {', '.join(bad)}",
                quantity=name,
            )


def assemble_residual(
    x_new: np.ndarray,
    x_old: np.ndarray,
    coeffs_new: BlockCoeffs,
    coeffs_old: BlockCoeffs,
    geometry: RadialGrid,
    dt: float,
    theta: float,
) -> np.ndarray:
    """Return the flattened θ-method residual.

    ``R = c·(u_new - u_old)/dt - θ f_new(u_new) - (1-θ) f_old(u_old)`` for each
    quantity, with ``c`` the transient coefficient of the trial state.

    Raises
    ------
    NonFiniteStateError
        If any coefficient entry is NaN or Inf.
    PreconditionError
        If the vectors do not match the grid.
    """

    if dt <= 0.0:
        raise PreconditionError("dt must be positive")
    n = geometry.n_cells
    require_finite_coeffs(coeffs_new, "trial coefficients")
    require_finite_coeffs(coeffs_old, "previous-step coefficients")
    new_fields = unflatten_fields(x_new, n)
    old_fields = unflatten_fields(x_old, n)
    blocks = []
    for q, name in enumerate(QUANTITIES):
        u_new = new_fields[q]
        u_old = old_fields[q]
        eq_new = coeffs_new[name]
        transient_term = eq_new.transient * (u_new - u_old) / dt
        implicit_part = apply_operator(u_new, eq_new, geometry)
        if theta < 1.0:
            explicit_part = apply_operator(u_old, coeffs_old[name], geometry)
        else:
            explicit_part = 0.0
        blocks.append(transient_term - theta * implicit_part - (1.0 - theta) * explicit_part)
    return flatten_fields(blocks)


def linearized_jacobian(coeffs: BlockCoeffs, geometry: RadialGrid, dt: float, theta: float) -> np.ndarray:
    """Dense cell-major Jacobian with coefficients frozen at ``coeffs``.

    Exact for problems whose coefficients do not depend on the state.
    """

    n = geometry.n_cells
    size = N_QUANTITIES * n
    jac = np.zeros((size, size))
    cells = np.arange(n)
    for q, name in enumerate(QUANTITIES):
        eq = coeffs[name]
        op = operator_matrix(eq, geometry)
        rows = N_QUANTITIES * cells + q
        jac[rows, rows] = eq.transient / dt - theta * op.diag
        jac[rows[1:], rows[:-1]] = -theta * op.lower[1:]
        jac[rows[:-1], rows[1:]] = -theta * op.upper[:-1]
    return jac


def split_residual_norms(residual: np.ndarray, n_cells: int) -> Tuple[float, ...]:
    """Per-quantity RMS of a flattened residual."""
    blocks = unflatten_fields(residual, n_cells)
    return tuple(float(np.sqrt(np.mean(block**2))) for block in blocks)
