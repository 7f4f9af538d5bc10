"""Custom exceptions for the :mod:`coretransport` package."""
from __future__ import annotations

from typing import Optional


class CoreTransportError(Exception):
    """Base exception for transport solver errors."""


class ConfigurationError(CoreTransportError, ValueError):
    """Invalid solver configuration or parameter value."""


class PreconditionError(CoreTransportError, ValueError):
    """Input arrays violate a shape or length precondition."""


class NumericalError(CoreTransportError, RuntimeError):
    """Convergence failure or numerical stability violation."""


class NonFiniteStateError(NumericalError):
    """A state, coefficient set or residual contains NaN or Inf."""

    def __init__(self, message: str, *, quantity: Optional[str] = None) -> None:
        super().__init__(message)
        self.quantity = quantity


class LinearSolveError(NumericalError):
    """Both the direct and the iterative linear strategies failed."""


class NumericalDivergence(NumericalError):
    """The nonlinear iteration did not reach its tolerance."""

    def __init__(
        self,
        message: str,
        *,
        quantity: Optional[str] = None,
        iterations: int = 0,
        residual_norm: float = float("nan"),
    ) -> None:
        detail = f"{message} (quantity={quantity}, iterations={iterations}, residual={residual_norm:.3e})"
        super().__init__(detail)
        self.quantity = quantity
        self.iterations = iterations
        self.residual_norm = residual_norm


__all__ = [
    "CoreTransportError",
    "ConfigurationError",
    "PreconditionError",
    "NumericalError",
    "NonFiniteStateError",
    "LinearSolveError",
    "NumericalDivergence",
]
