"""Numerical core of the implicit transport solver."""

from . import coefficients, conservation, jacobian, linear, newton, operator, power_law, timestep
from .coefficients import BlockCoeffs, CoefficientBuilder, EquationCoeffs, build_coefficients
from .conservation import ConservationEnforcer, ConservationReference, EnergyConservation, ParticleConservation
from .jacobian import CallableOperator, DifferentiableOperator, FiniteDifferenceOperator, analyze_jacobian
from .linear import LinearSystemSolver, estimate_condition_number
from .newton import NewtonRaphsonSolver, SolveStatus, line_search, newton_solve
from .timestep import TimestepBounds, TimestepController

__all__ = [
    "coefficients",
    "conservation",
    "jacobian",
    "linear",
    "newton",
    "operator",
    "power_law",
    "timestep",
    "BlockCoeffs",
    "CoefficientBuilder",
    "EquationCoeffs",
    "build_coefficients",
    "ConservationEnforcer",
    "ConservationReference",
    "EnergyConservation",
    "ParticleConservation",
    "CallableOperator",
    "DifferentiableOperator",
    "FiniteDifferenceOperator",
    "analyze_jacobian",
    "LinearSystemSolver",
    "estimate_condition_number",
    "NewtonRaphsonSolver",
    "SolveStatus",
    "line_search",
    "newton_solve",
    "TimestepBounds",
    "TimestepController",
]
