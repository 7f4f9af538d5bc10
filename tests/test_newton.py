import math

import numpy as np
import pytest

from coretransport.errors import NonFiniteStateError
from coretransport.numerics.jacobian import CallableOperator, FiniteDifferenceOperator
from coretransport.numerics.linear import LinearSystemSolver
from coretransport.numerics.newton import SolveStatus, line_search, newton_solve, rms_norm
from coretransport.schema import LinearSolverConfig
from coretransport.warnings import IllConditionedSystemWarning


def test_linear_residual_accepts_full_step_in_one_iteration():
    target = np.array([1.0, -2.0, 3.0])
    op = CallableOperator(lambda x: x - target, lambda x: np.eye(3), 3)
    result = newton_solve(op, np.zeros(3), tol=1e-12)
    assert result.converged
    assert result.status is SolveStatus.CONVERGED
    assert result.iterations == 1
    assert result.multipliers == (1.0,)
    np.testing.assert_allclose(result.x, target)


def test_line_search_takes_multiplier_one_for_improving_step():
    target = np.array([4.0, 5.0])
    x = np.zeros(2)
    ls = line_search(lambda y: y - target, x, target - x, rms_norm(x - target))
    assert ls.multiplier == 1.0
    assert ls.improved
    assert ls.attempts == 1


def test_non_finite_candidates_are_skipped_before_comparison():
    def residual(y):
        if y[0] > 0.6:
            return np.array([np.nan])
        return np.array([y[0] - 0.5])

    ls = line_search(residual, np.array([0.0]), np.array([1.0]), 0.5)
    assert ls.multiplier == 0.5
    assert np.isfinite(ls.norm)
    assert np.all(np.isfinite(ls.x))


def test_residual_assembly_errors_reject_candidates():
    def residual(y):
        if y[0] > 0.3:
            raise NonFiniteStateError("bad coefficients", quantity="T_e")
        return np.array([y[0] - 0.2])

    ls = line_search(residual, np.array([0.0]), np.array([1.0]), 0.2)
    assert ls.multiplier == 0.25
    assert ls.improved


def test_infeasible_trials_are_rejected_outright():
    evaluated = []

    def residual(y):
        evaluated.append(y.copy())
        return y + 1.0

    ls = line_search(
        residual,
        np.array([1.0]),
        np.array([-4.0]),
        2.0,
        is_feasible=lambda y: bool(np.all(y > 0.0)),
    )
    assert ls.multiplier == 0.1
    assert all(item[0] > 0.0 for item in evaluated)


def test_line_search_never_returns_non_finite_state():
    x = np.array([1.0, 2.0])
    ls = line_search(lambda y: np.full(2, np.inf), x, np.ones(2), 1.0, current_residual=np.ones(2))
    assert not ls.improved
    assert ls.multiplier == 0.0
    np.testing.assert_allclose(ls.x, x)
    assert np.all(np.isfinite(ls.residual))


def test_smallest_candidate_is_taken_when_nothing_improves():
    ls = line_search(lambda y: np.array([10.0 + y[0]]), np.array([0.0]), np.array([1.0]), 1.0)
    assert not ls.improved
    assert ls.multiplier == pytest.approx(0.001)


def test_nonlinear_scalar_system_converges_with_finite_differences():
    def residual(x):
        return np.array([x[0] ** 3 - 8.0, np.exp(x[1]) - 1.0])

    op = FiniteDifferenceOperator(residual, 2)
    result = newton_solve(op, np.array([1.0, 1.0]), tol=1e-10, max_iterations=50)
    assert result.converged
    np.testing.assert_allclose(result.x, [2.0, 0.0], atol=1e-8)
    assert result.norm_history[0] > result.norm_history[-1]
    assert result.eval_count > result.iterations


def test_iteration_cap_reports_without_raising():
    op = FiniteDifferenceOperator(lambda x: np.array([np.arctan(x[0])]), 1)
    result = newton_solve(op, np.array([3.0]), tol=1e-14, max_iterations=1)
    assert not result.converged
    assert result.status in (SolveStatus.MAX_ITERATIONS, SolveStatus.STALLED)
    assert result.iterations == 1


def test_stall_detection_stops_early():
    op = CallableOperator(lambda x: np.array([1.0 + 0.0 * x[0]]), lambda x: np.eye(1), 1)
    result = newton_solve(
        op,
        np.array([0.0]),
        tol=1e-12,
        stall_floor=1e-3,
        stall_patience=2,
        stall_accept_norm=0.5,
        max_iterations=20,
    )
    assert result.status is SolveStatus.STALLED
    assert not result.converged
    assert result.iterations == 2
    assert result.non_improving == 2


def test_stall_below_acceptance_norm_counts_as_converged():
    op = CallableOperator(lambda x: np.array([1.0e-7 + 0.0 * x[0]]), lambda x: np.eye(1), 1)
    result = newton_solve(
        op,
        np.array([0.0]),
        tol=1e-8,
        stall_floor=1e-3,
        stall_patience=3,
        stall_accept_norm=1e-6,
        max_iterations=20,
    )
    assert result.status is SolveStatus.STALLED
    assert result.converged
    assert result.iterations == 3
    assert result.residual_norm == pytest.approx(1e-7)


def test_unconverged_sweeps_are_counted():
    mat = np.diag([1.0, 1.0e-3])
    rhs = np.array([1.0, 2.0e-3])
    op = CallableOperator(lambda x: mat @ x - rhs, lambda x: mat, 2)
    solver = LinearSystemSolver(LinearSolverConfig(condition_threshold=10.0, iterative_max_iterations=2))
    with pytest.warns(IllConditionedSystemWarning):
        result = newton_solve(op, np.zeros(2), linear_solver=solver, tol=1e-14, max_iterations=3)
    assert result.linear_unconverged == result.iterations == 3
    assert result.ill_conditioned
    assert result.jacobian_severity == "ok"
    assert result.condition_number == pytest.approx(1.0e3, rel=1e-3)


def test_non_finite_initial_residual_is_reported():
    op = CallableOperator(lambda x: np.array([math.nan]), lambda x: np.eye(1), 1)
    result = newton_solve(op, np.array([0.0]))
    assert result.status is SolveStatus.NON_FINITE
    assert not result.converged


def test_coloured_finite_differences_match_dense():
    def residual(x):
        out = 2.0 * x**2
        out[1:] -= x[:-1]
        out[:-1] -= np.sin(x[1:])
        return out

    x = np.linspace(0.5, 1.5, 12)
    dense = FiniteDifferenceOperator(residual, 12).jacobian(x)
    coloured_op = FiniteDifferenceOperator(residual, 12, block=2, stencil_halfwidth=1)
    coloured = coloured_op.jacobian(x)
    np.testing.assert_allclose(coloured, dense, atol=1e-6)
    assert coloured_op.eval_count < 12
    np.testing.assert_allclose(coloured_op.vjp(x, np.ones(12)), dense.T @ np.ones(12), atol=1e-5)
