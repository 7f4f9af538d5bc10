from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from coretransport.grid import RadialGrid
from coretransport.state import BoundaryCondition, FieldBoundary, ProfileSnapshot


def uniform_profile(grid: RadialGrid, value: float = 2.0, *, dirichlet: bool = True) -> ProfileSnapshot:
    values = np.full(grid.n_cells, value)
    if dirichlet:
        bc = FieldBoundary(BoundaryCondition.dirichlet(value), BoundaryCondition.dirichlet(value))
        boundaries = {name: bc for name in ("T_i", "T_e", "n_e", "psi")}
    else:
        boundaries = {}
    return ProfileSnapshot(values, values, values, values, boundaries=boundaries)


def peaked_profile(grid: RadialGrid, boundaries=None) -> ProfileSnapshot:
    r = grid.r
    temperature = 0.2 + 2.0 * np.exp(-(r**2) / 0.1)
    density = 0.5 + 0.5 * (1.0 - r**2)
    psi = 0.5 * r**2
    return ProfileSnapshot(temperature, 0.8 * temperature, density, psi, boundaries=boundaries or {})


@pytest.fixture
def grid() -> RadialGrid:
    return RadialGrid.linear(0.0, 1.0, 20)


@pytest.fixture
def slab_grid() -> RadialGrid:
    return RadialGrid.linear(0.0, 1.0, 100, kind="slab")


@pytest.fixture
def peaked(grid: RadialGrid) -> ProfileSnapshot:
    return peaked_profile(grid)


@pytest.fixture
def make_uniform():
    return uniform_profile


@pytest.fixture
def make_peaked():
    return peaked_profile
