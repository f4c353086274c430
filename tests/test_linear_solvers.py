import numpy as onp
import pytest
import scipy.sparse
from jax import numpy as jnp

import jaxlm
from jaxlm import LinearSolveError


def _random_sparse_matrix(seed: int, shape=(20, 5)) -> tuple[onp.ndarray, jaxlm.SparseCooMatrix]:
    rng = onp.random.default_rng(seed)
    A_onp = rng.normal(size=shape) * rng.integers(low=0, high=2, size=shape)
    # Make sure every column has an entry.
    A_onp[: shape[1], :] += onp.eye(shape[1])
    return A_onp, jaxlm.SparseCooMatrix.from_scipy_coo_matrix(
        scipy.sparse.coo_matrix(A_onp)
    )


def test_sparse_matrix_ops():
    A_onp, A = _random_sparse_matrix(0)
    x = jnp.asarray(onp.random.default_rng(1).normal(size=5))
    y = jnp.asarray(onp.random.default_rng(2).normal(size=20))

    onp.testing.assert_allclose(A.as_dense(), A_onp, atol=1e-12)
    onp.testing.assert_allclose(A @ x, A_onp @ x, atol=1e-12)
    onp.testing.assert_allclose(A.T @ y, A_onp.T @ y, atol=1e-12)
    onp.testing.assert_allclose(
        A.compute_column_squared_norms(), onp.sum(A_onp**2, axis=0), atol=1e-12
    )
    onp.testing.assert_allclose(A.as_scipy_coo_matrix().toarray(), A_onp, atol=1e-12)
    assert A.T.shape == (5, 20)


def test_damping_diagonal():
    A_onp, A = _random_sparse_matrix(3)
    onp.testing.assert_allclose(
        jaxlm.compute_damping_diagonal(
            A, diagonal_damping=False, min_diagonal=1e-6, max_diagonal=1e32
        ),
        onp.ones(5),
    )
    onp.testing.assert_allclose(
        jaxlm.compute_damping_diagonal(
            A, diagonal_damping=True, min_diagonal=1e-6, max_diagonal=1.0
        ),
        onp.minimum(onp.sum(A_onp**2, axis=0), 1.0),
    )


@pytest.mark.parametrize("linear_solver", ["dense_cholesky", "conjugate_gradient"])
@pytest.mark.parametrize("lambd", [0.0, 0.1])
def test_solve_damped(linear_solver: str, lambd: float):
    A_onp, A = _random_sparse_matrix(4)
    ATb = jnp.asarray(onp.random.default_rng(5).normal(size=5))
    D = jnp.asarray(onp.sum(A_onp**2, axis=0))

    x = jaxlm.solve_damped_normal_equations(
        A,
        ATb,
        lambd,
        D,
        linear_solver=linear_solver,  # type: ignore
        cg_config=jaxlm.ConjugateGradientConfig(tolerance=1e-12, max_iterations=50),
    )
    x_onp = onp.linalg.solve(A_onp.T @ A_onp + lambd * onp.diag(D), ATb)
    onp.testing.assert_allclose(x, x_onp, atol=1e-5, rtol=1e-5)


def test_solve_cholmod():
    pytest.importorskip("sksparse.cholmod")
    A_onp, A = _random_sparse_matrix(6)
    ATb = jnp.asarray(onp.random.default_rng(7).normal(size=5))
    D = jnp.ones(5)

    x = jaxlm.solve_damped_normal_equations(A, ATb, 0.5, D, linear_solver="cholmod")
    x_onp = onp.linalg.solve(A_onp.T @ A_onp + 0.5 * onp.eye(5), ATb)
    onp.testing.assert_allclose(x, x_onp, atol=1e-8, rtol=1e-8)


def test_solve_singular_raises():
    # Second column is all zeros, and there's no damping.
    A = jaxlm.SparseCooMatrix.from_scipy_coo_matrix(
        scipy.sparse.coo_matrix(onp.array([[1.0, 0.0], [2.0, 0.0]]))
    )
    with pytest.raises(LinearSolveError):
        jaxlm.solve_damped_normal_equations(
            A, jnp.array([1.0, 1.0]), 0.0, jnp.ones(2), linear_solver="dense_cholesky"
        )


def test_solve_non_finite_raises():
    A = jaxlm.SparseCooMatrix.from_scipy_coo_matrix(
        scipy.sparse.coo_matrix(onp.eye(2))
    )
    with pytest.raises(LinearSolveError):
        jaxlm.solve_damped_normal_equations(
            A, jnp.array([onp.nan, 1.0]), 1.0, jnp.ones(2)
        )
