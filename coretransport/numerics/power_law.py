"""Power-law Péclet weighting of finite-volume face fluxes.

For a face between a left cell ``L`` and a right cell ``R`` with diffusivity
``D``, velocity ``v`` and centre spacing ``δ`` the total (diffusive plus
convective) flux in the +r direction is written as

.. math::

    J = \\left(\\tfrac{D}{δ} A(|Pe|) + \\max(v, 0)\\right) u_L
        - \\left(\\tfrac{D}{δ} A(|Pe|) + \\max(-v, 0)\\right) u_R,

with ``Pe = v δ / D`` and ``A(|Pe|) = max(0, (1 - 0.1|Pe|)^5)`` (Patankar's
power-law scheme).  ``A = 1`` recovers central differencing of the diffusive
flux and ``A = 0`` pure upwinding for ``|Pe| >= 10``.
"""
from __future__ import annotations

from typing import Tuple

import numpy as np

from .. import constants

__all__ = [
    "peclet_number",
    "power_law_weight",
    "face_flux_coefficients",
    "face_flux",
    "upwind_fraction",
]


def peclet_number(v: np.ndarray, d: np.ndarray, dx: np.ndarray) -> np.ndarray:
    """Return the cell Péclet number ``v·dx/D`` at faces."""

    v_arr = np.asarray(v, dtype=float)
    d_arr = np.asarray(d, dtype=float)
    return v_arr * np.asarray(dx, dtype=float) / (np.abs(d_arr) + constants.DIFFUSIVITY_EPS)


def power_law_weight(peclet: np.ndarray) -> np.ndarray:
    """Return ``A(|Pe|) = max(0, (1 - 0.1|Pe|))^5``, zero beyond ``|Pe| = 10``."""

    abs_pe = np.abs(np.asarray(peclet, dtype=float))
    weight = np.maximum(0.0, 1.0 - abs_pe / constants.PECLET_CUTOFF) ** 5
    return np.where(abs_pe >= constants.PECLET_CUTOFF, 0.0, weight)


def face_flux_coefficients(
    d_face: np.ndarray, v_face: np.ndarray, dx_face: np.ndarray
) -> Tuple[np.ndarray, np.ndarray]:
    """Return ``(a_left, a_right)`` such that ``J = a_left·u_L - a_right·u_R``.

    Parameters
    ----------
    d_face:
        Diffusion coefficient at the faces.
    v_face:
        Convection velocity at the faces (positive towards +r).
    dx_face:
        Distance between the centres adjacent to each face.

    Returns
    -------
    tuple of numpy.ndarray
        Coefficient arrays multiplying the left and right cell values.
    """

    d_arr = np.asarray(d_face, dtype=float)
    v_arr = np.asarray(v_face, dtype=float)
    dx_arr = np.asarray(dx_face, dtype=float)
    conductance = d_arr / dx_arr
    diffusive = conductance * power_law_weight(peclet_number(v_arr, d_arr, dx_arr))
    a_left = diffusive + np.maximum(v_arr, 0.0)
    a_right = diffusive + np.maximum(-v_arr, 0.0)
    return a_left, a_right


def face_flux(
    u_left: np.ndarray,
    u_right: np.ndarray,
    d_face: np.ndarray,
    v_face: np.ndarray,
    dx_face: np.ndarray,
) -> np.ndarray:
    """Total face flux for given neighbouring cell values."""

    a_left, a_right = face_flux_coefficients(d_face, v_face, dx_face)
    return a_left * np.asarray(u_left, dtype=float) - a_right * np.asarray(u_right, dtype=float)


def upwind_fraction(d_face: np.ndarray, v_face: np.ndarray, dx_face: np.ndarray) -> np.ndarray:
    """Share of the upwind-cell coefficient carried by the convective part.

    Returns ``max(|v|, 0) / (D/δ·A + |v|)`` with the convention ``0`` for a
    face carrying neither diffusion nor convection.
    """

    d_arr = np.asarray(d_face, dtype=float)
    v_arr = np.asarray(v_face, dtype=float)
    dx_arr = np.asarray(dx_face, dtype=float)
    diffusive = d_arr / dx_arr * power_law_weight(peclet_number(v_arr, d_arr, dx_arr))
    total = diffusive + np.abs(v_arr)
    with np.errstate(invalid="ignore", divide="ignore"):
        frac = np.where(total > 0.0, np.abs(v_arr) / total, 0.0)
    return frac
