from __future__ import annotations

from typing import TYPE_CHECKING, Hashable, Literal, assert_never

import jax
import jax.scipy.linalg
import jax.scipy.sparse.linalg
import jax_dataclasses as jdc
import numpy as onp
import scipy.sparse
from jax import numpy as jnp

from ._errors import LinearSolveError
from ._sparse_matrices import SparseCooMatrix

if TYPE_CHECKING:
    import sksparse.cholmod

LinearSolverType = Literal["dense_cholesky", "cholmod", "conjugate_gradient"]


@jdc.pytree_dataclass
class ConjugateGradientConfig:
    """Iterative solver for sparse linear systems. Never forms `A^T A`."""

    tolerance: float = 1e-7
    """Relative residual tolerance for CG."""
    max_iterations: jdc.Static[int | None] = None
    """If None, we use the number of unknowns."""
    preconditioner: jdc.Static[Literal["point_jacobi"] | None] = "point_jacobi"
    """Preconditioner to use for linear solves."""


def compute_damping_diagonal(
    A: SparseCooMatrix,
    diagonal_damping: bool,
    min_diagonal: float,
    max_diagonal: float,
) -> jax.Array:
    """Diagonal `D` of the damping term `lambda * D`.

    With diagonal damping, `D` is the diagonal of `A^T A` clamped to
    `[min_diagonal, max_diagonal]`, which makes damping invariant to variable
    scaling. Otherwise, `D` is all ones.
    """
    if not diagonal_damping:
        return jnp.ones(A.shape[1], dtype=A.values.dtype)
    return jnp.clip(A.compute_column_squared_norms(), min_diagonal, max_diagonal)


def solve_damped_normal_equations(
    A: SparseCooMatrix,
    ATb: jax.Array,
    lambd: float,
    damping_diagonal: jax.Array,
    linear_solver: LinearSolverType = "dense_cholesky",
    cg_config: ConjugateGradientConfig | None = None,
) -> jax.Array:
    """Solve `(A^T A + lambda * diag(D)) delta = A^T b` for `delta`.

    Raises:
        LinearSolveError: if the system can't be solved, or if the solution
            isn't finite.
    """
    assert ATb.shape == (A.shape[1],), "ATb should be 1D and match A!"
    assert damping_diagonal.shape == ATb.shape

    if not bool(jnp.all(jnp.isfinite(ATb))) or not bool(
        jnp.all(jnp.isfinite(A.values))
    ):
        raise LinearSolveError("Linear system contains non-finite values.")

    if linear_solver == "dense_cholesky":
        delta = _solve_dense_cholesky(A, ATb, lambd, damping_diagonal)
    elif linear_solver == "cholmod":
        delta = _solve_cholmod(A, ATb, lambd, damping_diagonal)
    elif linear_solver == "conjugate_gradient":
        delta = _solve_conjugate_gradient(
            A,
            ATb,
            lambd,
            damping_diagonal,
            cg_config if cg_config is not None else ConjugateGradientConfig(),
        )
    else:
        assert_never(linear_solver)

    if not bool(jnp.all(jnp.isfinite(delta))):
        raise LinearSolveError(
            f"{linear_solver} produced a non-finite solution with lambda={lambd}."
        )
    return delta


def _solve_dense_cholesky(
    A: SparseCooMatrix, ATb: jax.Array, lambd: float, damping_diagonal: jax.Array
) -> jax.Array:
    A_dense = A.as_dense()
    ATA = A_dense.T @ A_dense
    diag_idx = jnp.arange(ATA.shape[0])
    ATA = ATA.at[diag_idx, diag_idx].add(lambd * damping_diagonal)

    # Failed factorizations show up as NaNs, which are caught by the caller.
    cho_factor = jax.scipy.linalg.cho_factor(ATA)
    return jax.scipy.linalg.cho_solve(cho_factor, ATb)


_cholmod_analyze_cache: dict[Hashable, sksparse.cholmod.Factor] = {}


def _solve_cholmod(
    A: SparseCooMatrix, ATb: jax.Array, lambd: float, damping_diagonal: jax.Array
) -> jax.Array:
    """Sparse Cholesky solve using CHOLMOD. Requires `scikit-sparse`."""
    import sksparse.cholmod

    A_scipy = A.as_scipy_coo_matrix().tocsc()
    ATA = (
        A_scipy.T @ A_scipy
        + scipy.sparse.diags(lambd * onp.asarray(damping_diagonal))
    ).tocsc()

    # Cache sparsity pattern analysis.
    cache_key = (ATA.indices.tobytes(), ATA.indptr.tobytes(), ATA.shape)
    factor = _cholmod_analyze_cache.get(cache_key, None)
    if factor is None:
        factor = sksparse.cholmod.analyze(ATA)
        _cholmod_analyze_cache[cache_key] = factor

        max_cache_size = 512
        if len(_cholmod_analyze_cache) > max_cache_size:
            _cholmod_analyze_cache.pop(next(iter(_cholmod_analyze_cache)))

    try:
        factor = factor.cholesky(ATA)
    except sksparse.cholmod.CholmodError as e:
        raise LinearSolveError(f"CHOLMOD factorization failed: {e}") from e
    return jnp.asarray(factor.solve_A(onp.asarray(ATb)))


def _solve_conjugate_gradient(
    A: SparseCooMatrix,
    ATb: jax.Array,
    lambd: float,
    damping_diagonal: jax.Array,
    cg_config: ConjugateGradientConfig,
) -> jax.Array:
    initial_x = jnp.zeros_like(ATb)

    def ATA_function(x: jax.Array) -> jax.Array:
        return A.T @ (A @ x) + lambd * damping_diagonal * x

    if cg_config.preconditioner == "point_jacobi":
        # Get diagonals of ATA, for Jacobi preconditioning.
        preconditioner_diagonal = (
            A.compute_column_squared_norms() + lambd * damping_diagonal
        )
        preconditioner_diagonal = jnp.where(
            preconditioner_diagonal > 0.0, preconditioner_diagonal, 1.0
        )

        def preconditioner(x: jax.Array) -> jax.Array:
            return x / preconditioner_diagonal

    elif cg_config.preconditioner is None:

        def preconditioner(x: jax.Array) -> jax.Array:
            return x

    else:
        assert_never(cg_config.preconditioner)

    solution, _ = jax.scipy.sparse.linalg.cg(
        A=ATA_function,
        b=ATb,
        x0=initial_x,
        # https://en.wikipedia.org/wiki/Conjugate_gradient_method#Convergence_properties
        maxiter=cg_config.max_iterations
        if cg_config.max_iterations is not None
        else max(len(initial_x), 1),
        tol=cg_config.tolerance,
        M=preconditioner,
    )
    return solution
