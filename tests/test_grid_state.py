import math

import numpy as np
import pytest

from coretransport.errors import NonFiniteStateError, PreconditionError
from coretransport.grid import RadialGrid
from coretransport.state import BoundaryCondition, ProfileSnapshot, SourceTerms, unflatten_fields


def test_cylindrical_volumes_sum_to_disc_area():
    grid = RadialGrid.linear(0.0, 2.0, 50)
    assert math.isclose(float(np.sum(grid.volumes)), math.pi * 4.0, rel_tol=1e-12)
    assert grid.face_areas[0] == 0.0
    assert grid.n_faces == grid.n_cells + 1


def test_toroidal_geometry_scales_with_major_radius():
    cyl = RadialGrid.linear(0.0, 1.0, 10)
    tor = RadialGrid.linear(0.0, 1.0, 10, kind="toroidal", major_radius=3.0)
    np.testing.assert_allclose(tor.volumes, cyl.volumes * 2.0 * math.pi * 3.0)


def test_face_spacing_uses_half_cells_at_boundaries(slab_grid):
    spacing = slab_grid.face_spacing
    assert spacing.size == slab_grid.n_faces
    assert spacing[0] == pytest.approx(0.005)
    assert spacing[1] == pytest.approx(0.01)


@pytest.mark.parametrize("edges", [[0.0, 1.0], [0.0, 0.5, 0.5, 1.0], [0.0, np.nan, 1.0]])
def test_invalid_edges_rejected(edges):
    with pytest.raises(PreconditionError):
        RadialGrid.from_edges(edges)


def test_grid_arrays_are_read_only(grid):
    with pytest.raises(ValueError):
        grid.r[0] = 1.0


def test_mismatched_field_lengths_abort():
    with pytest.raises(PreconditionError):
        ProfileSnapshot(np.ones(4), np.ones(4), np.ones(5), np.ones(4))


def test_profile_is_immutable_and_replace_returns_new_snapshot(peaked):
    with pytest.raises(ValueError):
        peaked.T_i[0] = 0.0
    doubled = peaked.replace(n_e=peaked.n_e * 2.0)
    np.testing.assert_allclose(doubled.n_e, 2.0 * peaked.n_e)
    np.testing.assert_allclose(doubled.T_i, peaked.T_i)
    assert doubled.boundaries == peaked.boundaries


def test_state_vector_is_cell_major(peaked):
    x = peaked.to_vector()
    assert x[0] == peaked.T_i[0]
    assert x[1] == peaked.T_e[0]
    assert x[4] == peaked.T_i[1]
    np.testing.assert_allclose(unflatten_fields(x, peaked.n_cells)[2], peaked.n_e)
    np.testing.assert_allclose(peaked.with_vector(x).psi, peaked.psi)


def test_feasibility_and_finiteness(grid):
    ones = np.ones(grid.n_cells)
    bad = ProfileSnapshot(ones, ones, -ones, ones)
    assert not bad.is_feasible()
    nan_profile = ProfileSnapshot(ones * np.nan, ones, ones, ones)
    with pytest.raises(NonFiniteStateError) as excinfo:
        nan_profile.require_finite()
    assert excinfo.value.quantity == "T_i"


def test_unknown_boundary_kind_rejected():
    with pytest.raises(PreconditionError):
        BoundaryCondition("robin", 1.0)


def test_source_terms_add_sums_implicit_parts():
    a = SourceTerms(np.ones(3), np.zeros(3), np.zeros(3), np.zeros(3), implicit={"T_i": -np.ones(3)})
    b = SourceTerms(np.ones(3), np.ones(3), np.zeros(3), np.zeros(3), implicit={"T_i": -np.ones(3)})
    total = a + b
    np.testing.assert_allclose(total.ion_heating, 2.0)
    np.testing.assert_allclose(total.implicit["T_i"], -2.0)
