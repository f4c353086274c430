from __future__ import annotations

import jax
import jax_dataclasses as jdc
import numpy as onp
import scipy.sparse
from jax import numpy as jnp


@jdc.pytree_dataclass
class SparseCooCoordinates:
    rows: jax.Array
    """Row indices of non-zero entries. Shape should be `(N,)`."""
    cols: jax.Array
    """Column indices of non-zero entries. Shape should be `(N,)`."""


@jdc.pytree_dataclass
class SparseCooMatrix:
    """Sparse matrix in COO form. Duplicate coordinates are summed."""

    values: jax.Array
    """Non-zero matrix values. Shape should be `(N,)`."""
    coords: SparseCooCoordinates
    """Row and column indices of non-zero entries. Shapes should be `(N,)`."""
    shape: jdc.Static[tuple[int, int]]
    """Shape of matrix."""

    def __matmul__(self, other: jax.Array) -> jax.Array:
        """Compute `Ax`, where `x` is a 1D vector."""
        assert other.shape == (
            self.shape[1],
        ), "Inner product only supported for 1D vectors!"
        return (
            jnp.zeros(self.shape[0], dtype=other.dtype)
            .at[self.coords.rows]
            .add(self.values * other[self.coords.cols])
        )

    def as_dense(self) -> jax.Array:
        """Convert to a dense JAX array."""
        return (
            jnp.zeros(self.shape, dtype=self.values.dtype)
            .at[self.coords.rows, self.coords.cols]
            .add(self.values)
        )

    def compute_column_squared_norms(self) -> jax.Array:
        """Diagonal of `A^T A`, without forming the product."""
        return (
            jnp.zeros(self.shape[1], dtype=self.values.dtype)
            .at[self.coords.cols]
            .add(self.values**2)
        )

    @staticmethod
    def from_scipy_coo_matrix(matrix: scipy.sparse.coo_matrix) -> SparseCooMatrix:
        """Build from a sparse scipy matrix."""
        return SparseCooMatrix(
            values=jnp.asarray(matrix.data),
            coords=SparseCooCoordinates(
                rows=jnp.asarray(matrix.row),
                cols=jnp.asarray(matrix.col),
            ),
            shape=(int(matrix.shape[0]), int(matrix.shape[1])),
        )

    def as_scipy_coo_matrix(self) -> scipy.sparse.coo_matrix:
        """Convert to a sparse scipy matrix."""
        return scipy.sparse.coo_matrix(
            (
                onp.asarray(self.values),
                (onp.asarray(self.coords.rows), onp.asarray(self.coords.cols)),
            ),
            shape=self.shape,
        )

    @property
    def T(self) -> SparseCooMatrix:
        """Return transpose of our sparse matrix."""
        return SparseCooMatrix(
            values=self.values,
            coords=SparseCooCoordinates(
                rows=self.coords.cols,
                cols=self.coords.rows,
            ),
            shape=(self.shape[1], self.shape[0]),
        )
