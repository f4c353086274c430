from __future__ import annotations

import abc
from typing import Sequence

import jax
import jax_dataclasses as jdc
from jax import numpy as jnp
from overrides import EnforceOverrides, overrides


class NoiseModelBase(abc.ABC, EnforceOverrides):
    """Whitens residuals and Jacobians. A factor's error is half the squared
    norm of its whitened residual."""

    @abc.abstractmethod
    def get_residual_dim(self) -> int:
        pass

    @abc.abstractmethod
    def whiten_residual_vector(self, residual_vector: jax.Array) -> jax.Array:
        pass

    @abc.abstractmethod
    def whiten_jacobian(self, jacobian: jax.Array) -> jax.Array:
        pass


@jdc.pytree_dataclass
class Gaussian(NoiseModelBase):
    sqrt_precision_matrix: jax.Array
    """Square root precision matrix `W`, where `W^T W` is the inverse
    covariance."""

    @staticmethod
    def make_from_covariance(covariance: jax.Array) -> Gaussian:
        covariance = jnp.asarray(covariance)
        assert (
            len(covariance.shape) == 2 and covariance.shape[0] == covariance.shape[1]
        ), "Covariance must be a square matrix!"
        # If covariance = L L^T, then precision = L^-T L^-1.
        return Gaussian(
            sqrt_precision_matrix=jnp.linalg.inv(jnp.linalg.cholesky(covariance))
        )

    @staticmethod
    def make_from_information(information: jax.Array) -> Gaussian:
        information = jnp.asarray(information)
        assert (
            len(information.shape) == 2
            and information.shape[0] == information.shape[1]
        ), "Information matrix must be square!"
        return Gaussian(sqrt_precision_matrix=jnp.linalg.cholesky(information).T)

    @overrides
    def get_residual_dim(self) -> int:
        return self.sqrt_precision_matrix.shape[-1]

    @overrides
    def whiten_residual_vector(self, residual_vector: jax.Array) -> jax.Array:
        return jnp.einsum("ij,j->i", self.sqrt_precision_matrix, residual_vector)

    @overrides
    def whiten_jacobian(self, jacobian: jax.Array) -> jax.Array:
        return jnp.einsum("ij,jk->ik", self.sqrt_precision_matrix, jacobian)


@jdc.pytree_dataclass
class DiagonalGaussian(NoiseModelBase):
    sqrt_precision_diagonal: jax.Array
    """Diagonal elements of square root precision matrix."""

    @staticmethod
    def make_from_covariance(
        diagonal: jax.Array | Sequence[float],
    ) -> DiagonalGaussian:
        return DiagonalGaussian(
            sqrt_precision_diagonal=1.0 / jnp.sqrt(jnp.asarray(diagonal))
        )

    @staticmethod
    def make_from_sigmas(sigmas: jax.Array | Sequence[float]) -> DiagonalGaussian:
        return DiagonalGaussian(sqrt_precision_diagonal=1.0 / jnp.asarray(sigmas))

    @overrides
    def get_residual_dim(self) -> int:
        return self.sqrt_precision_diagonal.shape[-1]

    @overrides
    def whiten_residual_vector(self, residual_vector: jax.Array) -> jax.Array:
        assert residual_vector.shape == self.sqrt_precision_diagonal.shape
        return self.sqrt_precision_diagonal * residual_vector

    @overrides
    def whiten_jacobian(self, jacobian: jax.Array) -> jax.Array:
        assert len(jacobian.shape) == 2
        assert self.sqrt_precision_diagonal.shape == (jacobian.shape[0],)
        return self.sqrt_precision_diagonal[:, None] * jacobian


@jdc.pytree_dataclass
class Isotropic(NoiseModelBase):
    """Same standard deviation on every residual entry."""

    sqrt_precision: float | jax.Array
    dim: jdc.Static[int]

    @staticmethod
    def make_from_sigma(dim: int, sigma: float) -> Isotropic:
        assert sigma > 0.0
        return Isotropic(sqrt_precision=1.0 / sigma, dim=dim)

    @overrides
    def get_residual_dim(self) -> int:
        return self.dim

    @overrides
    def whiten_residual_vector(self, residual_vector: jax.Array) -> jax.Array:
        assert residual_vector.shape == (self.dim,)
        return self.sqrt_precision * residual_vector

    @overrides
    def whiten_jacobian(self, jacobian: jax.Array) -> jax.Array:
        assert len(jacobian.shape) == 2 and jacobian.shape[0] == self.dim
        return self.sqrt_precision * jacobian


@jdc.pytree_dataclass
class Unit(NoiseModelBase):
    """Identity whitening."""

    dim: jdc.Static[int]

    @overrides
    def get_residual_dim(self) -> int:
        return self.dim

    @overrides
    def whiten_residual_vector(self, residual_vector: jax.Array) -> jax.Array:
        assert residual_vector.shape == (self.dim,)
        return residual_vector

    @overrides
    def whiten_jacobian(self, jacobian: jax.Array) -> jax.Array:
        assert len(jacobian.shape) == 2 and jacobian.shape[0] == self.dim
        return jacobian
