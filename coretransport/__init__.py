"""Implicit 1-D transport solver for coupled temperature, density and flux profiles."""
from . import constants, grid
from .errors import CoreTransportError
from .grid import RadialGrid
from .orchestrator import TransportOrchestrator
from .schema import SolverConfig
from .state import BoundaryCondition, FieldBoundary, ProfileSnapshot, SourceTerms, TransportCoefficients
from .step import SimulationState, StepDiagnostics, advance_one_step

__all__ = [
    "constants",
    "grid",
    "CoreTransportError",
    "RadialGrid",
    "TransportOrchestrator",
    "SolverConfig",
    "BoundaryCondition",
    "FieldBoundary",
    "ProfileSnapshot",
    "SourceTerms",
    "TransportCoefficients",
    "SimulationState",
    "StepDiagnostics",
    "advance_one_step",
]
