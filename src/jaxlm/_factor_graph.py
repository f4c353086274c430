from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from typing import Any

import jax
import jax_dataclasses as jdc
import numpy as onp
from jax import numpy as jnp
from loguru import logger

from ._factor import Factor
from ._sparse_matrices import SparseCooCoordinates, SparseCooMatrix
from ._variables import Ordering, Var, VarValues


@jdc.pytree_dataclass
class LinearizedSystem:
    """First-order approximation of a factor graph around some values.

    The local error model is `0.5 * ||A delta + b||^2`, where `A` is the
    whitened Jacobian and `b` is the whitened residual vector. Columns of `A`
    are laid out by `ordering`.
    """

    A: SparseCooMatrix
    residual_vector: jax.Array
    ordering: jdc.Static[Ordering]

    def compute_ATb(self) -> jax.Array:
        """Right-hand side of the normal equations, `-A^T b`. Equal to the
        negative gradient of the error."""
        return self.A.T @ -self.residual_vector

    def compute_model_error(self, delta: jax.Array) -> jax.Array:
        """Error predicted by the linear model for a step `delta`."""
        linear_residual = self.A @ delta + self.residual_vector
        return 0.5 * jnp.sum(linear_residual**2)


@dataclass(frozen=True)
class FactorGraph:
    """Collection of factors. The graph's error is the sum of its factors'
    errors; variables are whatever the factors refer to."""

    factors: tuple[Factor, ...]

    @staticmethod
    def make(factors: Iterable[Factor]) -> FactorGraph:
        factors = tuple(factors)
        logger.info(
            "Building factor graph with {} factors and {} variables",
            len(factors),
            len({var for f in factors for var in f.get_variables()}),
        )
        return FactorGraph(factors)

    def __len__(self) -> int:
        return len(self.factors)

    def __iter__(self) -> Iterator[Factor]:
        return iter(self.factors)

    def __getitem__(self, index: int) -> Factor:
        return self.factors[index]

    def add(self, factor: Factor) -> FactorGraph:
        """Returns a new graph with `factor` appended."""
        return FactorGraph(self.factors + (factor,))

    def get_variables(self) -> tuple[Var[Any], ...]:
        """All variables referenced by factors, in order of first appearance."""
        return tuple(
            dict.fromkeys(var for f in self.factors for var in f.get_variables())
        )

    def compute_error(self, vals: VarValues) -> float:
        """Total error: sum of `0.5 * ||whitened residual||^2` over factors."""
        if len(self.factors) == 0:
            return 0.0
        return float(sum(f.compute_error(vals) for f in self.factors))

    def compute_whitened_residual_vector(self, vals: VarValues) -> jax.Array:
        if len(self.factors) == 0:
            return jnp.zeros((0,))
        return jnp.concatenate(
            [f.compute_whitened_residual_vector(vals) for f in self.factors]
        )

    def linearize(self, vals: VarValues, ordering: Ordering) -> LinearizedSystem:
        """Linearize every factor around `vals`, and assemble a sparse whitened
        Jacobian with columns laid out by `ordering`."""
        residuals = list[jax.Array]()
        values = list[jax.Array]()
        rows = list[onp.ndarray]()
        cols = list[onp.ndarray]()

        residual_dim_sum = 0
        for factor in self.factors:
            residual, jacobian = factor.linearize(vals)
            (residual_dim,) = residual.shape
            residuals.append(residual)

            jac_col = 0
            for var in factor.get_variables():
                if var not in ordering:
                    raise ValueError(
                        f"{var} is used by {factor._get_name()} but missing from the ordering."
                    )
                tangent_dim = type(var).tangent_dim
                start = ordering.offset_from_var[var]

                values.append(jacobian[:, jac_col : jac_col + tangent_dim].flatten())
                rows.append(
                    onp.repeat(onp.arange(residual_dim) + residual_dim_sum, tangent_dim)
                )
                cols.append(onp.tile(onp.arange(tangent_dim) + start, residual_dim))
                jac_col += tangent_dim

            residual_dim_sum += residual_dim

        def _concatenate(arrays: list[Any], dtype: Any = None) -> jax.Array:
            if len(arrays) == 0:
                return jnp.zeros((0,), dtype=dtype)
            return jnp.concatenate([jnp.asarray(a) for a in arrays])

        A = SparseCooMatrix(
            values=_concatenate(values),
            coords=SparseCooCoordinates(
                rows=_concatenate(rows, dtype=jnp.int32),
                cols=_concatenate(cols, dtype=jnp.int32),
            ),
            shape=(residual_dim_sum, ordering.tangent_dim),
        )
        return LinearizedSystem(
            A=A, residual_vector=_concatenate(residuals), ordering=ordering
        )
