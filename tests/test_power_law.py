import numpy as np
import pytest

from coretransport.numerics.power_law import (
    face_flux,
    face_flux_coefficients,
    peclet_number,
    power_law_weight,
    upwind_fraction,
)


def test_weight_is_one_without_convection():
    assert power_law_weight(np.array([0.0]))[0] == 1.0
    a_left, a_right = face_flux_coefficients(np.array([2.0]), np.array([0.0]), np.array([0.1]))
    assert a_left[0] == pytest.approx(20.0)
    assert a_right[0] == pytest.approx(20.0)


@pytest.mark.parametrize("pe", [10.0, 12.5, 50.0, -10.0, -1e4])
def test_high_peclet_is_upwind_dominated(pe):
    d, dx = 1.0, 0.1
    v = pe * d / dx
    assert power_law_weight(np.array([pe]))[0] == 0.0
    frac = upwind_fraction(np.array([d]), np.array([v]), np.array([dx]))[0]
    assert frac >= 0.9


@pytest.mark.parametrize("pe", [0.0, 0.5, 2.0, 5.0, 9.9])
def test_weight_matches_power_law(pe):
    expected = max(0.0, 1.0 - 0.1 * pe) ** 5
    assert power_law_weight(np.array([pe]))[0] == pytest.approx(expected)
    assert power_law_weight(np.array([-pe]))[0] == pytest.approx(expected)


@pytest.mark.parametrize("v", [0.0, 1.0, 50.0, 500.0])
def test_no_flux_reversal_for_monotone_outward_transport(v):
    """With u_L > u_R and v >= 0 the face flux points outward."""
    flux = face_flux(np.array([2.0]), np.array([1.0]), np.array([0.3]), np.array([v]), np.array([0.05]))
    assert flux[0] > 0.0


def test_pure_upwind_flux_carries_left_value():
    flux = face_flux(np.array([3.0]), np.array([1.0]), np.array([1e-3]), np.array([10.0]), np.array([0.1]))
    assert flux[0] == pytest.approx(30.0)


def test_peclet_number_guards_zero_diffusivity():
    pe = peclet_number(np.array([1.0]), np.array([0.0]), np.array([0.1]))
    assert np.isfinite(pe[0]) and pe[0] > 1e20
