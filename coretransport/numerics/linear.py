"""Linear solves for the Newton update ``J·Δx = -R``.

Strategy
--------
1. Estimate the condition number ``κ(J)`` (power iteration on ``J`` and on
   its LU-factored inverse, or an SVD for small systems).  Non-finite or
   singular intermediates yield :data:`~coretransport.constants.KAPPA_SENTINEL`.
2. ``κ`` below ``condition_threshold``: banded direct elimination
   (``scipy.linalg.solve_banded``) with a residual quality check.
3. Otherwise, or when the direct solve fails: bounded SOR sweep with diagonal
   preconditioning.
"""
from __future__ import annotations

import logging
import math
import warnings
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import scipy.linalg

from .. import constants
from ..errors import LinearSolveError, NonFiniteStateError, PreconditionError
from ..schema import LinearSolverConfig
from ..warnings import IllConditionedSystemWarning
from ._numba_kernels import select_kernel, sor_solve_numba, thomas_solve_numba
from .jacobian import analyze_jacobian

logger = logging.getLogger(__name__)

SOR_DIVERGENCE_LIMIT = 1.0e6

__all__ = [
    "LinearSolveResult",
    "LinearSystemSolver",
    "matrix_bandwidth",
    "to_banded",
    "estimate_condition_number",
    "solve_tridiagonal",
    "sor_solve",
]


def solve_tridiagonal(lower: np.ndarray, diag: np.ndarray, upper: np.ndarray, rhs: np.ndarray) -> np.ndarray:
    """Solve a tridiagonal system with the Thomas algorithm.

    All inputs have length ``n``; ``lower[0]`` and ``upper[-1]`` are ignored.
    """

    diag_arr = np.ascontiguousarray(diag, dtype=float)
    n = diag_arr.size
    for name, arr in (("lower", lower), ("upper", upper), ("rhs", rhs)):
        if np.asarray(arr).shape != (n,):
            raise PreconditionError(f"{name} must have length {n}")
    if np.any(diag_arr == 0.0):
        raise LinearSolveError("tridiagonal system has a zero pivot on the diagonal")
    kernel = select_kernel(thomas_solve_numba)
    x = kernel(
        np.ascontiguousarray(lower, dtype=float),
        diag_arr,
        np.ascontiguousarray(upper, dtype=float),
        np.ascontiguousarray(rhs, dtype=float),
    )
    if not np.all(np.isfinite(x)):
        raise LinearSolveError("tridiagonal solve produced non-finite values")
    return x


def matrix_bandwidth(matrix: np.ndarray) -> Tuple[int, int]:
    """Return the ``(lower, upper)`` bandwidth of a dense matrix."""

    rows, cols = np.nonzero(matrix)
    if rows.size == 0:
        return 0, 0
    offsets = cols - rows
    return int(max(-offsets.min(), 0)), int(max(offsets.max(), 0))


def to_banded(matrix: np.ndarray, lower: int, upper: int) -> np.ndarray:
    """Pack a dense matrix into the ``(l + u + 1, n)`` layout used by ``solve_banded``."""

    n = matrix.shape[0]
    ab = np.zeros((lower + upper + 1, n))
    for offset in range(-lower, upper + 1):
        diagonal = np.diagonal(matrix, offset)
        row = upper - offset
        if offset >= 0:
            ab[row, offset:] = diagonal
        else:
            ab[row, : n + offset] = diagonal
    return ab


def _power_norm(apply, n: int, iterations: int) -> float:
    """Largest singular value via power iteration on ``AᵀA`` (``apply`` returns ``AᵀA v``)."""

    v = np.ones(n) / math.sqrt(n)
    sigma_sq = 0.0
    for _ in range(iterations):
        w = apply(v)
        norm_w = float(np.linalg.norm(w))
        if not math.isfinite(norm_w):
            return math.inf
        if norm_w == 0.0:
            return 0.0
        sigma_sq = norm_w
        v = w / norm_w
    return math.sqrt(sigma_sq)


def estimate_condition_number(
    matrix: np.ndarray,
    *,
    method: str = "power",
    iterations: int = 20,
    svd_max_size: int = 400,
) -> float:
    """Estimate the 2-norm condition number of ``matrix``.

    Returns :data:`constants.KAPPA_SENTINEL` when the matrix is singular or
    any intermediate norm is non-finite.
    """

    mat = np.asarray(matrix, dtype=float)
    if mat.ndim != 2 or mat.shape[0] != mat.shape[1]:
        raise PreconditionError(f"matrix must be square; got shape {mat.shape}")
    if not np.all(np.isfinite(mat)):
        return constants.KAPPA_SENTINEL
    n = mat.shape[0]

    if method == "svd" and n <= svd_max_size:
        return min(analyze_jacobian(mat).condition_number, constants.KAPPA_SENTINEL)

    sigma_max = _power_norm(lambda v: mat.T @ (mat @ v), n, iterations)
    if not math.isfinite(sigma_max):
        return constants.KAPPA_SENTINEL
    if sigma_max == 0.0:
        return constants.KAPPA_SENTINEL
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", scipy.linalg.LinAlgWarning)
        lu, piv = scipy.linalg.lu_factor(mat, check_finite=False)
    pivots = np.abs(np.diag(lu))
    if np.any(pivots == 0.0) or not np.all(np.isfinite(lu)):
        return constants.KAPPA_SENTINEL

    def _inverse_normal(v: np.ndarray) -> np.ndarray:
        y = scipy.linalg.lu_solve((lu, piv), v, check_finite=False)
        return scipy.linalg.lu_solve((lu, piv), y, trans=1, check_finite=False)

    inv_norm = _power_norm(_inverse_normal, n, iterations)
    kappa = sigma_max * inv_norm
    if not math.isfinite(kappa) or kappa <= 0.0:
        return constants.KAPPA_SENTINEL
    return min(float(kappa), constants.KAPPA_SENTINEL)


def sor_solve(
    matrix: np.ndarray,
    rhs: np.ndarray,
    *,
    omega: float = 1.5,
    tol: float = 1.0e-8,
    max_iterations: int = 10000,
    x0: Optional[np.ndarray] = None,
) -> Tuple[np.ndarray, int, bool]:
    """Diagonally preconditioned SOR sweep restricted to the matrix band.

    Returns
    -------
    tuple
        ``(x, iterations, converged)``.

    Raises
    ------
    LinearSolveError
        On a zero diagonal entry, divergence or non-finite iterates.
    """

    mat = np.ascontiguousarray(matrix, dtype=float)
    b = np.ascontiguousarray(rhs, dtype=float)
    if np.any(np.diag(mat) == 0.0):
        raise LinearSolveError("SOR requires a non-zero diagonal")
    lower_bw, upper_bw = matrix_bandwidth(mat)
    start = np.zeros_like(b) if x0 is None else np.ascontiguousarray(x0, dtype=float)
    kernel = select_kernel(sor_solve_numba)
    x, iterations, status, rel_change = kernel(
        mat, b, start, float(omega), float(tol), int(max_iterations), lower_bw, upper_bw, SOR_DIVERGENCE_LIMIT
    )
    if status == 2:
        raise LinearSolveError(f"SOR diverged after {iterations} iterations (relative change {rel_change:.3e})")
    if status == 3:
        raise LinearSolveError(f"SOR produced non-finite iterates after {iterations} iterations")
    converged = status == 0
    if not converged:
        logger.warning(
            "sor_solve: no convergence after %d iterations (relative change %.3e)", iterations, rel_change
        )
    return x, int(iterations), converged


@dataclass(frozen=True, eq=False)
class LinearSolveResult:
    """Outcome of one linear solve."""

    dx: np.ndarray
    method: str
    condition_number: float
    iterations: int
    converged: bool
    ill_conditioned: bool


class LinearSystemSolver:
    """Direct banded solve with an iterative fallback for ill-conditioned systems."""

    def __init__(self, config: Optional[LinearSolverConfig] = None) -> None:
        self.config = config or LinearSolverConfig()

    def estimate_condition_number(self, matrix: np.ndarray) -> float:
        cfg = self.config
        return estimate_condition_number(
            matrix,
            method=cfg.condition_method,
            iterations=cfg.power_iterations,
            svd_max_size=cfg.svd_max_size,
        )

    def _direct(self, matrix: np.ndarray, rhs: np.ndarray) -> Optional[np.ndarray]:
        lower, upper = matrix_bandwidth(matrix)
        try:
            x = scipy.linalg.solve_banded((lower, upper), to_banded(matrix, lower, upper), rhs, check_finite=False)
        except (np.linalg.LinAlgError, ValueError) as exc:
            logger.debug("LinearSystemSolver: banded solve failed: %s", exc)
            return None
        if not np.all(np.isfinite(x)):
            return None
        residual = matrix @ x - rhs
        scale = max(float(np.linalg.norm(rhs)), 1e-300)
        if float(np.linalg.norm(residual)) / scale > self.config.residual_check:
            logger.debug("LinearSystemSolver: direct solve failed the residual check")
            return None
        return x

    def solve(self, matrix: np.ndarray, neg_residual: np.ndarray) -> LinearSolveResult:
        """Solve ``matrix · dx = neg_residual``.

        Raises
        ------
        PreconditionError
            If the shapes are inconsistent.
        NonFiniteStateError
            If the matrix or right-hand side is not finite.
        LinearSolveError
            If neither strategy produces a finite solution.
        """

        mat = np.asarray(matrix, dtype=float)
        rhs = np.asarray(neg_residual, dtype=float)
        if mat.ndim != 2 or mat.shape[0] != mat.shape[1] or rhs.shape != (mat.shape[0],):
            raise PreconditionError(f"incompatible shapes: matrix {mat.shape}, rhs {rhs.shape}")
        if not np.all(np.isfinite(mat)):
            raise NonFiniteStateError("Jacobian contains non-finite entries")
        if not np.all(np.isfinite(rhs)):
            raise NonFiniteStateError("right-hand side contains non-finite entries")

        cfg = self.config
        kappa = self.estimate_condition_number(mat)
        ill_conditioned = kappa > cfg.condition_threshold
        if ill_conditioned:
            logger.warning("LinearSystemSolver: condition number %.3e above %.1e; using iterative sweep", kappa, cfg.condition_threshold)
            warnings.warn(
                f"ill-conditioned Jacobian (kappa={kappa:.3e})", IllConditionedSystemWarning, stacklevel=2
            )
        else:
            x = self._direct(mat, rhs)
            if x is not None:
                return LinearSolveResult(x, "banded", kappa, 1, True, False)
            logger.warning("LinearSystemSolver: direct solve failed (kappa=%.3e); using iterative sweep", kappa)

        x, iterations, converged = sor_solve(
            mat,
            rhs,
            omega=cfg.sor_omega,
            tol=cfg.iterative_tol,
            max_iterations=cfg.iterative_max_iterations,
        )
        return LinearSolveResult(x, "sor", kappa, iterations, converged, ill_conditioned)
