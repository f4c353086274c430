from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Literal, get_args, overload

import jax_dataclasses as jdc
from jax import numpy as jnp
from loguru import logger

from ._errors import LinearSolveError
from ._factor_graph import FactorGraph
from ._linear_solvers import (
    ConjugateGradientConfig,
    LinearSolverType,
    compute_damping_diagonal,
    solve_damped_normal_equations,
)
from ._variables import Ordering, VarValues

OptimizerStatus = Literal[
    "initial",
    "iterating",
    "converged",
    "stopped_no_progress",
    "exceeded_max_iterations",
]
Verbosity = Literal["silent", "error", "trylambda"]

_TERMINAL_STATUSES: tuple[OptimizerStatus, ...] = (
    "converged",
    "stopped_no_progress",
    "exceeded_max_iterations",
)


@jdc.pytree_dataclass
class TrustRegionConfig:
    # Levenberg-Marquardt parameters.
    lambda_initial: float = 1e-5
    """Initial damping factor."""
    lambda_increase_factor: float = 10.0
    """Damping is multiplied by this after a rejected step."""
    lambda_decrease_factor: float = 10.0
    """Damping is divided by this after an accepted step."""
    lambda_min: float = 0.0
    """Floor applied when decreasing damping."""
    lambda_max: float = 1e5
    """We give up on an iteration once damping exceeds this."""
    diagonal_damping: jdc.Static[bool] = True
    """If True, damp with the clamped diagonal of `A^T A`. Otherwise, damp with
    the identity."""
    min_diagonal: float = 1e-6
    max_diagonal: float = 1e32


@jdc.pytree_dataclass
class TerminationConfig:
    # Termination criteria.
    max_iterations: jdc.Static[int] = 100
    """Maximum number of optimization steps."""
    max_retries: jdc.Static[int] = 10
    """Maximum number of damping increases within a single iteration."""
    absolute_error_tolerance: float = 1e-5
    """We terminate if the error decreases by less than this."""
    relative_error_tolerance: float = 1e-5
    """We terminate if `error decrease / error` is less than this."""
    error_tolerance: float = 0.0
    """We terminate if the error is at or below this."""
    step_tolerance: float = 1e-9
    """We terminate if the norm of the linear step is at or below this."""


@dataclass(frozen=True)
class OptimizerState:
    """Snapshot of the optimizer. Replaced, never mutated, by each iteration."""

    vals: VarValues
    error: float
    lambd: float
    iterations: int
    status: OptimizerStatus
    error_history: tuple[float, ...]
    """Error after initialization and after every accepted step."""
    lambda_history: tuple[float, ...]
    """Every damping value that was tried."""

    @property
    def done(self) -> bool:
        return self.status in _TERMINAL_STATUSES


@dataclass(frozen=True)
class SolveSummary:
    iterations: int
    status: OptimizerStatus
    initial_error: float
    final_error: float
    error_history: tuple[float, ...]
    lambda_history: tuple[float, ...]


def check_convergence(
    relative_error_tolerance: float,
    absolute_error_tolerance: float,
    error_tolerance: float,
    current_error: float,
    new_error: float,
) -> bool:
    """Decide whether an error decrease from `current_error` to `new_error`
    means that we've converged."""
    if current_error <= error_tolerance:
        return True
    if new_error <= error_tolerance:
        return True

    absolute_decrease = current_error - new_error
    relative_decrease = absolute_decrease / current_error
    if absolute_decrease < 0.0:
        logger.warning(
            "Error increased from {} to {} while checking convergence",
            current_error,
            new_error,
        )
    return (
        relative_decrease <= relative_error_tolerance
        or absolute_decrease <= absolute_error_tolerance
    )


class LevenbergMarquardtOptimizer:
    """Levenberg-Marquardt optimizer for factor graphs.

    Example:
        >>> optimizer = LevenbergMarquardtOptimizer(graph, initial_vals)
        >>> solution = optimizer.optimize()

    `iterate()` can also be called directly to step through the optimization;
    the current snapshot is available as `optimizer.state`.
    """

    def __init__(
        self,
        graph: FactorGraph,
        initial_vals: VarValues,
        ordering: Ordering | None = None,
        *,
        trust_region: TrustRegionConfig = TrustRegionConfig(),
        termination: TerminationConfig = TerminationConfig(),
        linear_solver: LinearSolverType = "dense_cholesky",
        cg_config: ConjugateGradientConfig | None = None,
        verbosity: Verbosity = "silent",
    ) -> None:
        if ordering is None:
            ordering = Ordering.make(sorted(graph.get_variables()))

        _validate_configuration(trust_region, termination, linear_solver, verbosity)
        for var in graph.get_variables():
            if var not in ordering:
                raise ValueError(f"{var} is used by the graph but not in the ordering.")
        for var in ordering:
            if var not in initial_vals:
                raise ValueError(f"{var} is in the ordering but has no initial value.")

        self.graph = graph
        self.ordering = ordering
        self.trust_region = trust_region
        self.termination = termination
        self.linear_solver: LinearSolverType = linear_solver
        self.cg_config = cg_config
        self.verbosity: Verbosity = verbosity

        error = graph.compute_error(initial_vals)
        self.state = OptimizerState(
            vals=initial_vals,
            error=error,
            lambd=trust_region.lambda_initial,
            iterations=0,
            status="initial",
            error_history=(error,),
            lambda_history=(),
        )
        if verbosity != "silent":
            logger.info(
                "Initial error: {} ({} factors, {} tangent dimensions)",
                error,
                len(graph),
                ordering.tangent_dim,
            )

    @property
    def vals(self) -> VarValues:
        return self.state.vals

    @property
    def error(self) -> float:
        return self.state.error

    @property
    def lambd(self) -> float:
        return self.state.lambd

    @property
    def iterations(self) -> int:
        return self.state.iterations

    @property
    def status(self) -> OptimizerStatus:
        return self.state.status

    def iterate(self) -> OptimizerState:
        """Run a single Levenberg-Marquardt iteration. Does nothing if the
        optimizer has already terminated."""
        self.state = self._step(self.state)
        return self.state

    def optimize(self) -> VarValues:
        """Iterate until termination, then return the final values."""
        while not self.state.done:
            self.iterate()
        if self.verbosity != "silent":
            logger.info(
                "Terminated @ iteration #{}: error={} status={}",
                self.state.iterations,
                self.state.error,
                self.state.status,
            )
        return self.state.vals

    @overload
    def solve(self, return_summary: Literal[False] = False) -> VarValues: ...

    @overload
    def solve(
        self, return_summary: Literal[True]
    ) -> tuple[VarValues, SolveSummary]: ...

    def solve(
        self, return_summary: bool = False
    ) -> VarValues | tuple[VarValues, SolveSummary]:
        """Same as `optimize()`, but can also return a summary of the run."""
        vals = self.optimize()
        if not return_summary:
            return vals
        state = self.state
        return vals, SolveSummary(
            iterations=state.iterations,
            status=state.status,
            initial_error=state.error_history[0],
            final_error=state.error,
            error_history=state.error_history,
            lambda_history=state.lambda_history,
        )

    def _step(self, state: OptimizerState) -> OptimizerState:
        if state.done:
            return state

        trust_region = self.trust_region
        termination = self.termination

        if state.error <= termination.error_tolerance:
            return dataclasses.replace(state, status="converged")
        if state.iterations >= termination.max_iterations:
            return dataclasses.replace(state, status="exceeded_max_iterations")

        if self.verbosity != "silent":
            logger.info(
                "Iteration #{}: error={:.8e} lambda={:.2e}",
                state.iterations,
                state.error,
                state.lambd,
            )

        system = self.graph.linearize(state.vals, self.ordering)
        ATb = system.compute_ATb()
        damping_diagonal = compute_damping_diagonal(
            system.A,
            diagonal_damping=trust_region.diagonal_damping,
            min_diagonal=trust_region.min_diagonal,
            max_diagonal=trust_region.max_diagonal,
        )
        iterations = state.iterations + 1

        lambd = state.lambd
        lambda_history = state.lambda_history
        solve_failed = False
        for _ in range(termination.max_retries + 1):
            lambda_history = lambda_history + (lambd,)
            try:
                delta = solve_damped_normal_equations(
                    system.A,
                    ATb,
                    lambd,
                    damping_diagonal,
                    linear_solver=self.linear_solver,
                    cg_config=self.cg_config,
                )
            except LinearSolveError as e:
                solve_failed = True
                if self.verbosity != "silent":
                    logger.warning("Linear solve failed with lambda={:.2e}: {}", lambd, e)
            else:
                if float(jnp.linalg.norm(delta)) <= termination.step_tolerance:
                    return dataclasses.replace(
                        state,
                        lambd=lambd,
                        iterations=iterations,
                        status="converged",
                        lambda_history=lambda_history,
                    )

                vals_proposed = state.vals.retract(delta, self.ordering)
                error_proposed = self.graph.compute_error(vals_proposed)
                accepted = error_proposed < state.error

                if self.verbosity == "trylambda":
                    logger.info(
                        "  trying lambda={:.2e}: error {:.8e} -> {:.8e} ({})",
                        lambd,
                        state.error,
                        error_proposed,
                        "accepted" if accepted else "rejected",
                    )

                if accepted:
                    if check_convergence(
                        relative_error_tolerance=termination.relative_error_tolerance,
                        absolute_error_tolerance=termination.absolute_error_tolerance,
                        error_tolerance=termination.error_tolerance,
                        current_error=state.error,
                        new_error=error_proposed,
                    ):
                        status: OptimizerStatus = "converged"
                    elif iterations >= termination.max_iterations:
                        status = "exceeded_max_iterations"
                    else:
                        status = "iterating"
                    return OptimizerState(
                        vals=vals_proposed,
                        error=error_proposed,
                        lambd=max(
                            trust_region.lambda_min,
                            lambd / trust_region.lambda_decrease_factor,
                        ),
                        iterations=iterations,
                        status=status,
                        error_history=state.error_history + (error_proposed,),
                        lambda_history=lambda_history,
                    )

            # Rejected: increase damping and retry.
            lambd = lambd * trust_region.lambda_increase_factor
            if lambd > trust_region.lambda_max:
                break

        # Every try was rejected. Without solver failures, this is a zero error
        # decrease, which passes the convergence check.
        if not solve_failed and check_convergence(
            relative_error_tolerance=termination.relative_error_tolerance,
            absolute_error_tolerance=termination.absolute_error_tolerance,
            error_tolerance=termination.error_tolerance,
            current_error=state.error,
            new_error=state.error,
        ):
            status = "converged"
        else:
            status = "stopped_no_progress"
            if self.verbosity != "silent":
                logger.warning(
                    "No progress at iteration #{}: lambda={:.2e} exceeded bounds or retries",
                    iterations,
                    lambd,
                )
        return dataclasses.replace(
            state,
            lambd=lambd,
            iterations=iterations,
            status=status,
            lambda_history=lambda_history,
        )


def _validate_configuration(
    trust_region: TrustRegionConfig,
    termination: TerminationConfig,
    linear_solver: str,
    verbosity: str,
) -> None:
    if not trust_region.lambda_initial > 0.0:
        raise ValueError("lambda_initial must be positive.")
    if not trust_region.lambda_increase_factor > 1.0:
        raise ValueError("lambda_increase_factor must be greater than 1.")
    if not trust_region.lambda_decrease_factor > 1.0:
        raise ValueError("lambda_decrease_factor must be greater than 1.")
    if not 0.0 <= trust_region.lambda_min <= trust_region.lambda_max:
        raise ValueError("Expected 0 <= lambda_min <= lambda_max.")
    if not 0.0 < trust_region.min_diagonal <= trust_region.max_diagonal:
        raise ValueError("Expected 0 < min_diagonal <= max_diagonal.")
    if termination.max_iterations < 0 or termination.max_retries < 0:
        raise ValueError("max_iterations and max_retries must be non-negative.")
    for name in (
        "absolute_error_tolerance",
        "relative_error_tolerance",
        "error_tolerance",
        "step_tolerance",
    ):
        if not getattr(termination, name) >= 0.0:
            raise ValueError(f"{name} must be non-negative.")
    if linear_solver not in get_args(LinearSolverType):
        raise ValueError(f"Unknown linear solver {linear_solver!r}.")
    if verbosity not in get_args(Verbosity):
        raise ValueError(f"Unknown verbosity {verbosity!r}.")
