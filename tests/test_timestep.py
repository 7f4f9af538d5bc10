import numpy as np
import pytest

from coretransport.errors import PreconditionError
from coretransport.numerics.timestep import TimestepBounds, TimestepController, cfl_numbers
from coretransport.schema import TimestepConfig
from coretransport.state import TransportCoefficients


def _transport(n, d=1.0, v=None):
    diff = np.full(n, d)
    conv = None if v is None else np.full(n + 1, v)
    return TransportCoefficients(diff, diff, diff, particle_convection=conv)


def test_diffusive_limit_matches_safety_bound(slab_grid):
    controller = TimestepController(0.5)
    dt = controller.next_dt(_transport(slab_grid.n_cells), slab_grid)
    assert dt == pytest.approx(5.0e-5)
    assert dt <= 0.5 * 0.01**2 / 1.0 * (1.0 + 1e-12)


def test_doubling_diffusivity_halves_timestep(slab_grid):
    controller = TimestepController(0.5)
    dt1 = controller.next_dt(_transport(slab_grid.n_cells, 1.0), slab_grid)
    dt2 = controller.next_dt(_transport(slab_grid.n_cells, 2.0), slab_grid)
    assert dt2 == pytest.approx(0.5 * dt1)


def test_result_is_clamped_to_bounds(slab_grid):
    controller = TimestepController(0.5, bounds=TimestepBounds(1.0e-4, 1.0e-3))
    low = controller.assess(_transport(slab_grid.n_cells, 10.0), slab_grid)
    assert low.dt == pytest.approx(1.0e-4)
    assert low.limiter == "min_dt"
    high = controller.assess(_transport(slab_grid.n_cells, 1.0e-6), slab_grid)
    assert high.dt == pytest.approx(1.0e-3)
    assert high.limiter == "max_dt"


def test_zero_transport_returns_max_dt(slab_grid):
    controller = TimestepController(0.5)
    assert controller.next_dt(_transport(slab_grid.n_cells, 0.0), slab_grid) == pytest.approx(1.0e-2)


def test_convective_limit_can_dominate(slab_grid):
    controller = TimestepController(0.5, convection_safety=0.5)
    report = controller.assess(_transport(slab_grid.n_cells, 1.0e-4, v=100.0), slab_grid)
    assert report.limiter == "convection"
    assert report.dt == pytest.approx(0.5 * 0.01 / 100.0)
    assert report.dt_diffusive > report.dt_convective


def test_growth_limit_and_stability_cap(slab_grid):
    controller = TimestepController(0.5, max_growth=1.5, min_shrink=0.5)
    grown = controller.assess(_transport(slab_grid.n_cells), slab_grid, previous_dt=1.0e-5)
    assert grown.dt == pytest.approx(1.5e-5)
    assert grown.limiter == "growth"
    # A large previous dt must not hold the next one above the diffusive limit.
    shrunk = controller.assess(_transport(slab_grid.n_cells), slab_grid, previous_dt=1.0e-3)
    assert shrunk.dt == pytest.approx(5.0e-5)
    assert shrunk.limiter == "diffusion"


@pytest.mark.parametrize("previous_dt", [1.0e-6, 5.0e-5, 1.0e-3, 1.0e-2])
def test_default_controller_keeps_cfl_below_safety(slab_grid, previous_dt):
    cfg = TimestepConfig()
    controller = TimestepController.from_config(cfg)
    transport = _transport(slab_grid.n_cells)
    dt = controller.next_dt(transport, slab_grid, previous_dt=previous_dt)
    assert max(cfl_numbers(transport, slab_grid, dt).values()) <= cfg.safety * (1.0 + 1e-12)


def test_convective_cap_holds_with_previous_dt(slab_grid):
    controller = TimestepController.from_config(TimestepConfig())
    report = controller.assess(_transport(slab_grid.n_cells, 1.0e-4, v=100.0), slab_grid, previous_dt=1.0e-3)
    assert report.dt == pytest.approx(0.5 * 0.01 / 100.0)
    assert report.limiter == "convection"


def test_cfl_numbers_at_chosen_timestep(slab_grid):
    transport = _transport(slab_grid.n_cells)
    cfl = cfl_numbers(transport, slab_grid, 5.0e-5)
    assert cfl["T_i"] == pytest.approx(0.5)
    assert cfl["psi"] == 0.0


def test_non_finite_coefficients_fall_back_to_min_dt(slab_grid):
    chi = np.ones(slab_grid.n_cells)
    chi[3] = np.nan
    transport = TransportCoefficients(chi, chi, np.ones(slab_grid.n_cells))
    report = TimestepController(0.5).assess(transport, slab_grid)
    assert report.dt == TimestepBounds().min_dt
    assert report.limiter == "non_finite"


def test_change_limiter_scales_by_largest_relative_change(grid, make_uniform):
    old = make_uniform(grid, 2.0)
    new = old.replace(T_e=old.T_e * 1.5)
    controller = TimestepController(0.5, max_relative_change=0.1)
    assert controller.limit_by_change(1.0e-3, 1.0e-3, old, new) == pytest.approx(2.0e-4)
    assert TimestepController(0.5).limit_by_change(1.0e-3, 1.0e-3, old, new) == 1.0e-3


def test_change_limiter_reduction_stops_at_min_shrink(grid, make_uniform):
    old = make_uniform(grid, 2.0)
    new = old.replace(T_e=old.T_e * 3.0)
    controller = TimestepController(0.5, max_relative_change=0.1, min_shrink=0.5)
    # Unbounded, the change limiter would ask for 1e-3 * 0.1 / 2 = 5e-5.
    assert controller.limit_by_change(1.0e-3, 1.0e-3, old, new) == pytest.approx(5.0e-4)
    # The floor never raises dt above the stability-limited input.
    assert controller.limit_by_change(1.0e-4, 1.0e-3, old, new) == pytest.approx(1.0e-4)


def test_from_config_and_invalid_arguments():
    controller = TimestepController.from_config(TimestepConfig(safety=0.25, max_dt=1.0e-3))
    assert controller.safety == 0.25
    assert controller.bounds.max_dt == 1.0e-3
    with pytest.raises(PreconditionError):
        TimestepController(0.0)
    with pytest.raises(PreconditionError):
        TimestepBounds(1.0, 0.1)
