"""Structured warning classes for the :mod:`coretransport` package."""
from __future__ import annotations


class CoreTransportWarning(UserWarning):
    """Base warning class for coretransport."""


class PhysicsWarning(CoreTransportWarning):
    """Physical parameter or regime warnings."""


class NumericalWarning(CoreTransportWarning):
    """Numerical stability or accuracy warnings."""


class IllConditionedSystemWarning(NumericalWarning):
    """Jacobian condition number above the direct-solve threshold."""


class ConservationAnomalyWarning(PhysicsWarning):
    """A conserved integral or its baseline is non-positive or non-finite."""


__all__ = [
    "CoreTransportWarning",
    "PhysicsWarning",
    "NumericalWarning",
    "IllConditionedSystemWarning",
    "ConservationAnomalyWarning",
]
