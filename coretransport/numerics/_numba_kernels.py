"""Numba-accelerated kernels for the linear solves.

The kernels are compiled with ``cache=True``.  When JIT is disabled through
:func:`coretransport.runtime.numba_config.numba_disabled_env`, callers use the
interpreted ``py_func`` of the same kernels via :func:`select_kernel`.

Status codes returned by :func:`sor_solve_numba`:

* ``0`` converged
* ``1`` iteration cap reached
* ``2`` diverged (relative update above ``divergence_limit``)
* ``3`` non-finite iterate
"""
from __future__ import annotations

import numpy as np
from numba import njit

from ..runtime.numba_config import numba_disabled_env

__all__ = [
    "USE_NUMBA",
    "select_kernel",
    "thomas_solve_numba",
    "sor_solve_numba",
]

USE_NUMBA = not numba_disabled_env()


def select_kernel(kernel):
    """Return the compiled kernel or its pure-Python body when JIT is disabled."""

    if USE_NUMBA:
        return kernel
    return kernel.py_func


@njit(cache=True)
def thomas_solve_numba(a, b, c, d):  # pragma: no cover - exercised via wrappers
    """Thomas algorithm; ``a``/``c`` are full-length with ``a[0]``/``c[-1]`` unused."""

    n = b.size
    cp = np.empty(n)
    dp = np.empty(n)
    cp[0] = c[0] / b[0]
    dp[0] = d[0] / b[0]
    for i in range(1, n):
        denom = b[i] - a[i] * cp[i - 1]
        cp[i] = c[i] / denom if i < n - 1 else 0.0
        dp[i] = (d[i] - a[i] * dp[i - 1]) / denom
    x = np.empty(n)
    x[n - 1] = dp[n - 1]
    for i in range(n - 2, -1, -1):
        x[i] = dp[i] - cp[i] * x[i + 1]
    return x


@njit(cache=True)
def sor_solve_numba(
    matrix, rhs, x0, omega, tol, max_iter, lower_bw, upper_bw, divergence_limit
):  # pragma: no cover - exercised via wrappers
    """Diagonally preconditioned SOR restricted to the matrix band.

    Returns ``(x, iterations, status, rel_change)``.
    """

    n = rhs.size
    x = x0.copy()
    inv_diag = np.empty(n)
    for i in range(n):
        inv_diag[i] = 1.0 / matrix[i, i]
    rel_change = np.inf
    for it in range(max_iter):
        change_sq = 0.0
        norm_sq = 0.0
        for i in range(n):
            acc = rhs[i]
            j_lo = max(0, i - lower_bw)
            j_hi = min(n, i + upper_bw + 1)
            for j in range(j_lo, j_hi):
                if j != i:
                    acc -= matrix[i, j] * x[j]
            x_gs = acc * inv_diag[i]
            x_new = (1.0 - omega) * x[i] + omega * x_gs
            delta = x_new - x[i]
            change_sq += delta * delta
            norm_sq += x_new * x_new
            x[i] = x_new
        if not np.isfinite(change_sq) or not np.isfinite(norm_sq):
            return x, it + 1, 3, np.inf
        rel_change = np.sqrt(change_sq) / max(np.sqrt(norm_sq), 1e-300)
        if rel_change > divergence_limit:
            return x, it + 1, 2, rel_change
        if rel_change < tol:
            return x, it + 1, 0, rel_change
    return x, max_iter, 1, rel_change
