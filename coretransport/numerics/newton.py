"""Damped Newton-Raphson iteration for one implicit timestep.

The generic core (:func:`newton_solve`) works on any
:class:`~coretransport.numerics.jacobian.DifferentiableOperator`.
:class:`NewtonRaphsonSolver` wraps it for the transport equations:

* unknowns are scaled by ``max(|x_old|, floor)`` per entry;
* residual rows are scaled by ``c·scale/dt`` so the RMS norm measures a
  relative change per step;
* trial states with non-positive ``T_i``, ``T_e`` or ``n_e`` are rejected
  outright before the residual is evaluated.
"""
from __future__ import annotations

import enum
import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Optional, Sequence, Tuple

import numpy as np

from .. import constants
from ..errors import LinearSolveError, NonFiniteStateError, PreconditionError
from ..grid import RadialGrid
from ..schema import NewtonConfig
from ..state import N_QUANTITIES, POSITIVE_QUANTITIES, QUANTITIES, ProfileSnapshot, flatten_fields, unflatten_fields
from .coefficients import BlockCoeffs, CoeffsCallback
from .jacobian import CallableOperator, DifferentiableOperator, FiniteDifferenceOperator, condition_severity
from .linear import LinearSystemSolver, solve_tridiagonal
from .operator import (
    assemble_residual,
    linearized_jacobian,
    operator_matrix,
    require_finite_coeffs,
    split_residual_norms,
)

logger = logging.getLogger(__name__)

DEFAULT_MULTIPLIERS: Tuple[float, ...] = (1.0, 0.5, 0.25, 0.1, 0.01, 0.001)

__all__ = [
    "SolveStatus",
    "LineSearchResult",
    "NewtonResult",
    "NewtonSolution",
    "NewtonRaphsonSolver",
    "rms_norm",
    "line_search",
    "newton_solve",
    "predict_linear_step",
]


class SolveStatus(str, enum.Enum):
    CONVERGED = "converged"
    MAX_ITERATIONS = "max_iterations"
    STALLED = "stalled"
    LINEAR_FAILURE = "linear_failure"
    NON_FINITE = "non_finite"


def rms_norm(residual: np.ndarray) -> float:
    """Root-mean-square norm; ``inf`` for non-finite vectors."""

    arr = np.asarray(residual, dtype=float)
    if arr.size == 0:
        return 0.0
    if not np.all(np.isfinite(arr)):
        return math.inf
    return float(np.sqrt(np.mean(arr * arr)))


@dataclass(frozen=True, eq=False)
class LineSearchResult:
    """Accepted trial of one backtracking line search.

    ``multiplier`` is ``0.0`` when no finite, feasible candidate existed and
    the iterate was left unchanged.
    """

    x: np.ndarray
    residual: np.ndarray
    norm: float
    multiplier: float
    improved: bool
    attempts: int


def line_search(
    residual_fn: Callable[[np.ndarray], np.ndarray],
    x: np.ndarray,
    delta: np.ndarray,
    current_norm: float,
    *,
    current_residual: Optional[np.ndarray] = None,
    multipliers: Sequence[float] = DEFAULT_MULTIPLIERS,
    is_feasible: Optional[Callable[[np.ndarray], bool]] = None,
    norm: Callable[[np.ndarray], float] = rms_norm,
) -> LineSearchResult:
    """Backtrack along ``delta`` over a fixed multiplier sequence.

    A candidate qualifies when the trial state is finite and feasible, its
    residual evaluates without :class:`NonFiniteStateError`, is finite, and
    its norm is strictly below ``current_norm``.  The largest qualifying
    multiplier is accepted.  Otherwise the smallest finite, feasible candidate
    is taken and the result is marked non-improving; when even that does not
    exist the iterate is returned unchanged.
    """

    x_arr = np.asarray(x, dtype=float)
    delta_arr = np.asarray(delta, dtype=float)
    fallback: Optional[Tuple[np.ndarray, np.ndarray, float, float]] = None
    attempts = 0
    for multiplier in multipliers:
        attempts += 1
        trial = x_arr + multiplier * delta_arr
        if not np.all(np.isfinite(trial)):
            continue
        if is_feasible is not None and not is_feasible(trial):
            logger.debug("line_search: multiplier %.3g rejected (infeasible trial)", multiplier)
            continue
        try:
            trial_residual = np.asarray(residual_fn(trial), dtype=float)
        except NonFiniteStateError as exc:
            logger.debug("line_search: multiplier %.3g rejected (%s)", multiplier, exc)
            continue
        trial_norm = norm(trial_residual)
        if not math.isfinite(trial_norm):
            continue
        if trial_norm < current_norm:
            return LineSearchResult(trial, trial_residual, trial_norm, float(multiplier), True, attempts)
        fallback = (trial, trial_residual, trial_norm, float(multiplier))

    if fallback is not None:
        trial, trial_residual, trial_norm, multiplier = fallback
        return LineSearchResult(trial, trial_residual, trial_norm, multiplier, False, attempts)
    if current_residual is None:
        current_residual = np.asarray(residual_fn(x_arr), dtype=float)
    return LineSearchResult(x_arr.copy(), np.asarray(current_residual, dtype=float), current_norm, 0.0, False, attempts)


@dataclass(frozen=True, eq=False)
class NewtonResult:
    """Structured outcome of :func:`newton_solve`."""

    x: np.ndarray
    residual: np.ndarray
    residual_norm: float
    initial_residual_norm: float
    iterations: int
    converged: bool
    status: SolveStatus
    norm_history: Tuple[float, ...] = ()
    multipliers: Tuple[float, ...] = ()
    non_improving: int = 0
    linear_iterations: int = 0
    condition_number: float = math.nan
    ill_conditioned: bool = False
    linear_unconverged: int = 0
    jacobian_severity: str = ""
    eval_count: int = 0
    message: str = ""


def newton_solve(
    operator: DifferentiableOperator,
    x0: np.ndarray,
    *,
    linear_solver: Optional[LinearSystemSolver] = None,
    max_iterations: int = 30,
    tol: float = 1.0e-6,
    relative_tol: float = 0.0,
    stall_floor: float = 0.0,
    stall_patience: int = 3,
    stall_accept_norm: float = math.inf,
    multipliers: Sequence[float] = DEFAULT_MULTIPLIERS,
    is_feasible: Optional[Callable[[np.ndarray], bool]] = None,
) -> NewtonResult:
    """Solve ``F(x) = 0`` by damped Newton iteration.

    Converges when ``‖F‖ < tol`` or ``‖F‖ <= relative_tol·‖F(x0)‖``.  After
    ``stall_patience`` consecutive iterations whose relative decrease is
    below ``stall_floor`` the iteration stops with
    :attr:`SolveStatus.STALLED`; the stalled iterate counts as converged when
    ``‖F‖ <= stall_accept_norm``.  ``converged=False`` results are returned,
    never raised.
    """

    solver = linear_solver or LinearSystemSolver()
    x = np.asarray(x0, dtype=float).copy()
    if x.shape != (operator.size,):
        raise PreconditionError(f"x0 has shape {x.shape}; expected ({operator.size},)")

    def _result(status: SolveStatus, message: str = "", *, converged: Optional[bool] = None) -> NewtonResult:
        return NewtonResult(
            x=x,
            residual=residual,
            residual_norm=res_norm,
            initial_residual_norm=initial_norm,
            iterations=iterations,
            converged=status is SolveStatus.CONVERGED if converged is None else converged,
            status=status,
            norm_history=tuple(history),
            multipliers=tuple(accepted),
            non_improving=non_improving,
            linear_iterations=linear_iterations,
            condition_number=kappa,
            ill_conditioned=ill_conditioned,
            linear_unconverged=linear_unconverged,
            jacobian_severity="" if math.isnan(kappa) else condition_severity(kappa),
            eval_count=operator.eval_count,
            message=message,
        )

    iterations = 0
    non_improving = 0
    linear_iterations = 0
    linear_unconverged = 0
    stalled = 0
    kappa = math.nan
    ill_conditioned = False
    accepted: list[float] = []
    try:
        residual = np.asarray(operator(x), dtype=float)
    except NonFiniteStateError as exc:
        residual = np.full(operator.size, np.nan)
        res_norm = initial_norm = math.inf
        history = [res_norm]
        return _result(SolveStatus.NON_FINITE, str(exc))
    res_norm = rms_norm(residual)
    initial_norm = res_norm
    history = [res_norm]
    if not math.isfinite(res_norm):
        return _result(SolveStatus.NON_FINITE, "initial residual is not finite")

    while True:
        if res_norm < tol or (relative_tol > 0.0 and res_norm <= relative_tol * initial_norm):
            return _result(SolveStatus.CONVERGED)
        if iterations >= max_iterations:
            return _result(SolveStatus.MAX_ITERATIONS, f"no convergence in {max_iterations} iterations")

        try:
            if isinstance(operator, FiniteDifferenceOperator):
                jac = operator.jacobian(x, f0=residual)
            else:
                jac = operator.jacobian(x)
            lin = solver.solve(jac, -residual)
        except (LinearSolveError, NonFiniteStateError) as exc:
            logger.debug("newton_solve: linear stage failed at iteration %d: %s", iterations, exc)
            return _result(SolveStatus.LINEAR_FAILURE, str(exc))
        linear_iterations += lin.iterations
        if not lin.converged:
            linear_unconverged += 1
            logger.debug("newton_solve: using an unconverged %s update at iteration %d", lin.method, iterations)
        kappa = lin.condition_number if math.isnan(kappa) else max(kappa, lin.condition_number)
        ill_conditioned = ill_conditioned or lin.ill_conditioned

        ls = line_search(
            operator,
            x,
            lin.dx,
            res_norm,
            current_residual=residual,
            multipliers=multipliers,
            is_feasible=is_feasible,
        )
        iterations += 1
        accepted.append(ls.multiplier)
        if not ls.improved:
            non_improving += 1
        decrease = (res_norm - ls.norm) / res_norm if res_norm > 0.0 else 0.0
        logger.debug(
            "newton_solve: iter=%d norm=%.3e -> %.3e multiplier=%.3g", iterations, res_norm, ls.norm, ls.multiplier
        )
        x, residual, res_norm = ls.x, ls.residual, ls.norm
        history.append(res_norm)
        if res_norm < tol:
            continue
        stalled = stalled + 1 if decrease < stall_floor else 0
        if stalled >= stall_patience:
            message = f"relative decrease below {stall_floor:g} for {stalled} iterations"
            return _result(SolveStatus.STALLED, message, converged=res_norm <= stall_accept_norm)


def predict_linear_step(
    old_profile: ProfileSnapshot,
    coeffs_old: BlockCoeffs,
    geometry: RadialGrid,
    dt: float,
    theta: float,
) -> ProfileSnapshot:
    """Linearised θ-step with coefficients frozen at the old profile.

    Solves ``(c/dt - θL) u_new = c/dt u_old + (1-θ) L u_old + s`` per quantity
    with the tridiagonal kernel.
    """

    fields = {}
    for name in QUANTITIES:
        eq = coeffs_old[name]
        op = operator_matrix(eq, geometry)
        u_old = old_profile.field(name)
        c_dt = eq.transient / dt
        rhs = c_dt * u_old + op.source
        if theta < 1.0:
            rhs = rhs + (1.0 - theta) * (op.apply(u_old) - op.source)
        fields[name] = solve_tridiagonal(-theta * op.lower, c_dt - theta * op.diag, -theta * op.upper, rhs)
    return old_profile.replace(**fields)


@dataclass(frozen=True, eq=False)
class NewtonSolution:
    """Profile-level outcome of :meth:`NewtonRaphsonSolver.solve`."""

    profile: ProfileSnapshot
    iterations: int
    converged: bool
    result: NewtonResult
    worst_quantity: Optional[str] = None
    wall_time: float = 0.0


class NewtonRaphsonSolver:
    """Per-timestep nonlinear solve for the coupled transport equations."""

    def __init__(
        self,
        config: Optional[NewtonConfig] = None,
        linear_solver: Optional[LinearSystemSolver] = None,
    ) -> None:
        self.config = config or NewtonConfig()
        self.linear_solver = linear_solver or LinearSystemSolver()

    @staticmethod
    def variable_scale(x_old: np.ndarray, n_cells: int) -> np.ndarray:
        """Per-entry scale ``max(|x|, 1e-3·max|field|, MIN_VARIABLE_SCALE)``."""

        fields = np.abs(unflatten_fields(x_old, n_cells))
        floors = np.maximum(1.0e-3 * fields.max(axis=1, keepdims=True), constants.MIN_VARIABLE_SCALE)
        return flatten_fields(np.maximum(fields, floors))

    def solve(
        self,
        dt: float,
        coeffs_callback: CoeffsCallback,
        old_profile: ProfileSnapshot,
        geometry: RadialGrid,
        initial_guess: Optional[ProfileSnapshot] = None,
        max_iterations: Optional[int] = None,
        tol: Optional[float] = None,
        *,
        coeffs_old: Optional[BlockCoeffs] = None,
    ) -> NewtonSolution:
        """Advance ``old_profile`` by ``dt``.

        ``coeffs_callback(trial_profile, geometry)`` is invoked for every
        trial state.  A non-converged solve returns ``converged=False`` for
        the caller to retry with a smaller ``dt``.

        Raises
        ------
        PreconditionError
            If ``dt`` is not positive or shapes disagree.
        NonFiniteStateError
            If ``old_profile`` or its coefficients are not finite.
        """

        if not (dt > 0.0 and math.isfinite(dt)):
            raise PreconditionError(f"dt must be positive and finite; got {dt!r}")
        if old_profile.n_cells != geometry.n_cells:
            raise PreconditionError(
                f"profile has {old_profile.n_cells} cells but grid has {geometry.n_cells}"
            )
        old_profile.require_finite()
        cfg = self.config
        started = time.perf_counter()
        n = geometry.n_cells
        size = N_QUANTITIES * n
        if coeffs_old is None:
            coeffs_old = coeffs_callback(old_profile, geometry)
        require_finite_coeffs(coeffs_old, "previous-step coefficients")
        theta = coeffs_old.theta
        x_old = old_profile.to_vector()
        scale = self.variable_scale(x_old, n)
        transient_old = flatten_fields([coeffs_old[name].transient for name in QUANTITIES])
        row_scale = np.abs(transient_old) * scale / dt
        row_scale = np.where(row_scale > 0.0, row_scale, 1.0)
        positive_mask = np.zeros(size, dtype=bool)
        for q, name in enumerate(QUANTITIES):
            if name in POSITIVE_QUANTITIES:
                positive_mask[q::N_QUANTITIES] = True

        def _coeffs_for(x: np.ndarray) -> BlockCoeffs:
            return coeffs_callback(old_profile.with_vector(x), geometry)

        def scaled_residual(y: np.ndarray) -> np.ndarray:
            x = y * scale
            coeffs_new = _coeffs_for(x)
            return assemble_residual(x, x_old, coeffs_new, coeffs_old, geometry, dt, theta) / row_scale

        def is_feasible(y: np.ndarray) -> bool:
            return bool(np.all(y[positive_mask] > 0.0))

        if cfg.jacobian == "analytic_linear":
            def scaled_jacobian(y: np.ndarray) -> np.ndarray:
                jac = linearized_jacobian(_coeffs_for(y * scale), geometry, dt, theta)
                return jac * scale[None, :] / row_scale[:, None]

            operator: DifferentiableOperator = CallableOperator(scaled_residual, scaled_jacobian, size)
        else:
            operator = FiniteDifferenceOperator(
                scaled_residual,
                size,
                block=N_QUANTITIES,
                stencil_halfwidth=cfg.fd_stencil_halfwidth,
                relative_step=cfg.fd_relative_step,
            )

        guess = initial_guess if initial_guess is not None else old_profile
        if guess.n_cells != n:
            raise PreconditionError("initial guess does not match the grid")
        y0 = guess.to_vector() / scale
        if not (np.all(np.isfinite(y0)) and is_feasible(y0)):
            logger.debug("NewtonRaphsonSolver: initial guess rejected; starting from the previous profile")
            y0 = x_old / scale

        result = newton_solve(
            operator,
            y0,
            linear_solver=self.linear_solver,
            max_iterations=cfg.max_iterations if max_iterations is None else max_iterations,
            tol=cfg.tol if tol is None else tol,
            relative_tol=cfg.relative_tol,
            stall_floor=cfg.stall_floor,
            stall_patience=cfg.stall_patience,
            stall_accept_norm=cfg.stall_accept_norm,
            multipliers=cfg.line_search_multipliers,
            is_feasible=is_feasible,
        )
        worst = None
        if np.all(np.isfinite(result.residual)):
            per_quantity = split_residual_norms(result.residual, n)
            worst = QUANTITIES[int(np.argmax(per_quantity))]
        profile = old_profile.with_vector(result.x * scale) if result.converged else old_profile
        elapsed = time.perf_counter() - started
        if not result.converged:
            logger.debug(
                "NewtonRaphsonSolver: %s after %d iterations (residual %.3e, worst %s)",
                result.status.value,
                result.iterations,
                result.residual_norm,
                worst,
            )
        return NewtonSolution(
            profile=profile,
            iterations=result.iterations,
            converged=result.converged,
            result=result,
            worst_quantity=worst,
            wall_time=elapsed,
        )
