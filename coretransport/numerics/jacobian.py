"""Differentiable residual operators and Jacobian diagnostics.

The Newton iteration only talks to a :class:`DifferentiableOperator`: a
function ``F(x)`` together with its linearisation, exposed as a dense
Jacobian, a Jacobian-vector product and a vector-Jacobian product (the
transposed linearisation applied to a cotangent).  Two realisations exist:

* :class:`FiniteDifferenceOperator` builds ``J`` by forward differences.  With
  a stencil half-width it perturbs several well-separated columns at once
  (colouring), so a banded Jacobian costs ``4 (2h+1)`` evaluations.
* :class:`CallableOperator` wraps a supplied analytic/operator-form Jacobian.
"""
from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np

from .. import constants
from ..errors import PreconditionError

logger = logging.getLogger(__name__)

__all__ = [
    "DifferentiableOperator",
    "FiniteDifferenceOperator",
    "CallableOperator",
    "JacobianReport",
    "analyze_jacobian",
    "condition_severity",
]

VectorFunction = Callable[[np.ndarray], np.ndarray]


class DifferentiableOperator(ABC):
    """Function ``R^n -> R^n`` with access to its linearisation."""

    def __init__(self, size: int) -> None:
        self.size = int(size)
        self.eval_count = 0

    @abstractmethod
    def evaluate(self, x: np.ndarray) -> np.ndarray:
        """Return ``F(x)``."""

    @abstractmethod
    def jacobian(self, x: np.ndarray) -> np.ndarray:
        """Return the dense Jacobian ``dF/dx`` at ``x``."""

    def __call__(self, x: np.ndarray) -> np.ndarray:
        self.eval_count += 1
        return self.evaluate(np.asarray(x, dtype=float))

    def jvp(self, x: np.ndarray, tangent: np.ndarray) -> np.ndarray:
        """Jacobian-vector product ``J(x)·t``."""
        return self.jacobian(x) @ np.asarray(tangent, dtype=float)

    def vjp(self, x: np.ndarray, cotangent: np.ndarray) -> np.ndarray:
        """Vector-Jacobian product ``J(x)ᵀ·c``."""
        return self.jacobian(x).T @ np.asarray(cotangent, dtype=float)


class FiniteDifferenceOperator(DifferentiableOperator):
    """Forward-difference linearisation, optionally coloured for banded coupling.

    Parameters
    ----------
    fn:
        The function to differentiate.
    size:
        Length of ``x``.
    block:
        Number of unknowns per cell in a cell-major layout.
    stencil_halfwidth:
        Number of neighbouring cells each residual row may depend on.  ``None``
        perturbs one column at a time (dense Jacobian).
    relative_step:
        Perturbation ``h_j = relative_step·max(|x_j|, 1)``.
    """

    def __init__(
        self,
        fn: VectorFunction,
        size: int,
        *,
        block: int = 1,
        stencil_halfwidth: Optional[int] = None,
        relative_step: float = 1.0e-7,
    ) -> None:
        super().__init__(size)
        if block <= 0 or size % block != 0:
            raise PreconditionError(f"size {size} is not a multiple of block {block}")
        if stencil_halfwidth is not None and stencil_halfwidth < 0:
            raise PreconditionError("stencil_halfwidth must be non-negative")
        self.fn = fn
        self.block = int(block)
        self.stencil_halfwidth = stencil_halfwidth
        self.relative_step = float(relative_step)

    def evaluate(self, x: np.ndarray) -> np.ndarray:
        return np.asarray(self.fn(x), dtype=float)

    def _steps(self, x: np.ndarray) -> np.ndarray:
        return self.relative_step * np.maximum(np.abs(x), 1.0)

    def jacobian(self, x: np.ndarray, f0: Optional[np.ndarray] = None) -> np.ndarray:
        x_arr = np.asarray(x, dtype=float)
        if x_arr.shape != (self.size,):
            raise PreconditionError(f"x has shape {x_arr.shape}; expected ({self.size},)")
        base = self(x_arr) if f0 is None else np.asarray(f0, dtype=float)
        steps = self._steps(x_arr)
        jac = np.zeros((self.size, self.size))
        n_cells = self.size // self.block
        cell_of = np.arange(self.size) // self.block

        if self.stencil_halfwidth is None or (2 * self.stencil_halfwidth + 1) >= n_cells:
            for j in range(self.size):
                xp = x_arr.copy()
                xp[j] += steps[j]
                jac[:, j] = (self(xp) - base) / steps[j]
            return jac

        stride = 2 * self.stencil_halfwidth + 1
        for q in range(self.block):
            for colour in range(stride):
                cols = np.arange(colour, n_cells, stride) * self.block + q
                xp = x_arr.copy()
                xp[cols] += steps[cols]
                diff = self(xp) - base
                for j in cols:
                    cj = cell_of[j]
                    lo = max(cj - self.stencil_halfwidth, 0) * self.block
                    hi = min(cj + self.stencil_halfwidth + 1, n_cells) * self.block
                    jac[lo:hi, j] = diff[lo:hi] / steps[j]
        return jac


class CallableOperator(DifferentiableOperator):
    """Operator with a supplied Jacobian function."""

    def __init__(self, fn: VectorFunction, jacobian_fn: Callable[[np.ndarray], np.ndarray], size: int) -> None:
        super().__init__(size)
        self.fn = fn
        self.jacobian_fn = jacobian_fn

    def evaluate(self, x: np.ndarray) -> np.ndarray:
        return np.asarray(self.fn(x), dtype=float)

    def jacobian(self, x: np.ndarray) -> np.ndarray:
        jac = np.asarray(self.jacobian_fn(np.asarray(x, dtype=float)), dtype=float)
        if jac.shape != (self.size, self.size):
            raise PreconditionError(f"Jacobian has shape {jac.shape}; expected ({self.size}, {self.size})")
        return jac


@dataclass(frozen=True)
class JacobianReport:
    """Singular-value summary of a Jacobian."""

    condition_number: float
    sigma_max: float
    sigma_min: float
    severity: str

    @property
    def is_singular(self) -> bool:
        return self.severity == "singular"


def condition_severity(kappa: float) -> str:
    """Label a condition number ``ok`` below 1e6, ``warning`` below 1e10,
    ``severe`` below 1e14 and ``singular`` otherwise (NaN included)."""

    if kappa < 1.0e6:
        return "ok"
    if kappa < 1.0e10:
        return "warning"
    if kappa < 1.0e14:
        return "severe"
    return "singular"


def analyze_jacobian(matrix: np.ndarray) -> JacobianReport:
    """Classify the conditioning of ``matrix`` from its singular values.

    Non-finite or undecomposable input is reported as ``singular`` with the
    sentinel condition number.
    """

    mat = np.asarray(matrix, dtype=float)
    if not np.all(np.isfinite(mat)):
        return JacobianReport(constants.KAPPA_SENTINEL, math.nan, math.nan, "singular")
    try:
        sv = np.linalg.svd(mat, compute_uv=False)
    except np.linalg.LinAlgError:
        return JacobianReport(constants.KAPPA_SENTINEL, math.nan, math.nan, "singular")
    sigma_max = float(sv[0])
    sigma_min = float(sv[-1])
    kappa = sigma_max / sigma_min if sigma_min > 0.0 else constants.KAPPA_SENTINEL
    if not math.isfinite(kappa):
        kappa = constants.KAPPA_SENTINEL
    severity = condition_severity(kappa)
    if severity != "ok":
        logger.debug("analyze_jacobian: kappa=%.3e severity=%s", kappa, severity)
    return JacobianReport(float(kappa), sigma_max, sigma_min, severity)
