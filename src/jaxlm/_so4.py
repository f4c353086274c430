from __future__ import annotations

import functools
from typing import ClassVar, Literal, overload

import jax
import jax_dataclasses as jdc
import numpy as onp
from jax import numpy as jnp

from ._errors import InvalidEigenstructureError, UnimplementedOperationError

# (row, col, tangent index, sign) for each upper-triangle entry of `hat(xi)`.
# The upper-left 3x3 block is the SO(3) subgroup.
_HAT_UPPER_TRIANGLE = (
    (0, 1, 2, -1.0),
    (0, 2, 1, 1.0),
    (1, 2, 0, -1.0),
    (0, 3, 3, -1.0),
    (1, 3, 4, -1.0),
    (2, 3, 5, -1.0),
)

_EIGENVALUE_TOLERANCE = 1e-9
"""Relative tolerance for real parts and pairing of eigenvalues in `SO4.exp()`."""

_EQUAL_ANGLE_TOLERANCE = 1e-5
"""Relative tolerance below which the two rotation angles are treated as equal."""

_ZERO_ANGLE_TOLERANCE = 1e-12
"""Relative tolerance below which the smaller rotation angle is treated as zero."""

_SMALL_ANGLE_THRESHOLD = 1e-4
"""Below this rotation angle, `SO4.exp()` uses a truncated Taylor series."""


@functools.cache
def so4_generators() -> onp.ndarray:
    """Lie algebra basis elements `G_i = hat(e_i)`, stacked with shape `(6, 4, 4)`.

    Computed once per process and marked read-only."""
    generators = onp.zeros((6, 4, 4))
    for row, col, i, sign in _HAT_UPPER_TRIANGLE:
        generators[i, row, col] = sign
        generators[i, col, row] = -sign
    generators.setflags(write=False)
    return generators


@functools.cache
def so4_vectorized_generators() -> onp.ndarray:
    """Projection matrix `P` with shape `(16, 6)`. Column `i` is the
    column-major vectorization of `G_i`."""
    P = onp.stack([G.flatten(order="F") for G in so4_generators()], axis=1)
    P.setflags(write=False)
    return P


def _rotation_angles(X: onp.ndarray) -> tuple[float, float]:
    """Compute the angles `a >= b >= 0` of a 4x4 skew-symmetric matrix, whose
    eigenvalues should be `+/- ai` and `+/- bi`."""
    eigenvalues = onp.linalg.eigvals(X)
    tol = _EIGENVALUE_TOLERANCE * max(1.0, float(onp.max(onp.abs(X))))

    # Sorted ascending, we expect [-a, -b, b, a].
    imag = onp.sort(eigenvalues.imag)
    if (
        onp.any(onp.abs(eigenvalues.real) > tol)
        or abs(imag[0] + imag[3]) > tol
        or abs(imag[1] + imag[2]) > tol
    ):
        raise InvalidEigenstructureError(
            f"SO4.exp: wrong eigenvalues {eigenvalues}."
        )
    return float(imag[3] - imag[0]) / 2.0, float(imag[2] - imag[1]) / 2.0


@jdc.pytree_dataclass
class SO4:
    """Special orthogonal group for 4D rotations, stored as a 4x4 matrix.

    Instances are immutable; all operations return new elements.

    Tangent vectors have 6 entries. The first three parameterize the SO(3)
    subgroup acting on the first three axes, and the last three the rotations
    mixing each of these axes with the fourth one.
    """

    matrix: jax.Array
    """Orthogonal matrix with unit determinant. Shape should be `(4, 4)`."""

    matrix_dim: ClassVar[int] = 4
    parameters_dim: ClassVar[int] = 16
    tangent_dim: ClassVar[int] = 6

    # Construction.

    @classmethod
    def identity(cls) -> SO4:
        return cls(matrix=jnp.eye(4))

    @classmethod
    def from_matrix(cls, matrix: jax.Array | onp.ndarray) -> SO4:
        matrix = jnp.asarray(matrix)
        assert matrix.shape == (4, 4), f"Expected (4, 4) matrix, got {matrix.shape}."
        return cls(matrix=matrix)

    @classmethod
    def sample_uniform(cls, key: jax.Array) -> SO4:
        """Draw a random element: the exponential of two stacked axis-angle
        vectors, each with a uniform direction and an angle in `[-pi, pi)`."""

        def random_omega(key: jax.Array) -> jax.Array:
            key_direction, key_angle = jax.random.split(key)
            direction = jax.random.normal(key_direction, (3,))
            angle = jax.random.uniform(key_angle, minval=-jnp.pi, maxval=jnp.pi)
            return direction / jnp.linalg.norm(direction) * angle

        key0, key1 = jax.random.split(key)
        return cls.exp(jnp.concatenate([random_omega(key0), random_omega(key1)]))

    # Accessors.

    def as_matrix(self) -> jax.Array:
        return self.matrix

    def allclose(self, other: SO4, atol: float = 1e-9) -> bool:
        """Element-wise comparison with an absolute tolerance."""
        return bool(jnp.all(jnp.abs(self.matrix - other.matrix) <= atol))

    # Group operations.

    def inverse(self) -> SO4:
        return SO4(matrix=self.matrix.T)

    def multiply(self, other: SO4) -> SO4:
        return SO4(matrix=self.matrix @ other.matrix)

    def apply(self, target: jax.Array) -> jax.Array:
        """Rotate a 4D vector."""
        assert target.shape == (4,)
        return self.matrix @ target

    @overload
    def __matmul__(self, other: SO4) -> SO4: ...

    @overload
    def __matmul__(self, other: jax.Array) -> jax.Array: ...

    def __matmul__(self, other: SO4 | jax.Array) -> SO4 | jax.Array:
        if isinstance(other, SO4):
            return self.multiply(other)
        return self.apply(other)

    def normalize(self) -> SO4:
        """Project back onto the group, removing accumulated numerical drift."""
        U, _, Vt = jnp.linalg.svd(self.matrix)
        return SO4(matrix=U @ Vt)

    # Lie algebra.

    @staticmethod
    def hat(tangent: jax.Array) -> jax.Array:
        """Map a tangent vector to its skew-symmetric matrix."""
        assert tangent.shape[-1:] == (6,)
        return jnp.einsum("...i,ijk->...jk", tangent, so4_generators())

    @staticmethod
    def vee(skew: jax.Array) -> jax.Array:
        """Inverse of `hat()`. Only the upper triangle is read, so the input
        must be skew-symmetric."""
        assert skew.shape[-2:] == (4, 4)
        by_index = sorted(_HAT_UPPER_TRIANGLE, key=lambda entry: entry[2])
        return jnp.stack(
            [sign * skew[..., row, col] for row, col, _, sign in by_index],
            axis=-1,
        )

    @classmethod
    def exp(cls, tangent: jax.Array, jacobian: bool = False) -> SO4:
        """Closed-form exponential map.

        Following Rohan, "Some remarks on the exponential map on the groups SO(n)
        and SE(n)": `exp(X) = c0 I + c1 X + c2 X^2 + c3 X^3`, where the
        coefficients depend on the two rotation angles of `X = hat(tangent)`.

        Angles are computed from an eigen-decomposition on the host, so this
        can't be traced by `jax.jit()` or differentiated.
        """
        if jacobian:
            raise UnimplementedOperationError("SO4.exp Jacobian")

        X = cls.hat(jnp.asarray(tangent))
        a, b = _rotation_angles(onp.asarray(X))

        if a == 0.0:
            return cls.identity()

        eye = jnp.eye(4)
        X2 = X @ X
        X3 = X2 @ X

        if a < _SMALL_ANGLE_THRESHOLD:
            # Closed-form coefficients divide by powers of `a`, which underflow.
            return cls(matrix=eye + X + X2 / 2.0 + X3 / 6.0 + (X2 @ X2) / 24.0)

        a2 = a * a
        a3 = a2 * a
        sin_a, cos_a = onp.sin(a), onp.cos(a)

        if b <= _ZERO_ANGLE_TOLERANCE * a:
            # Single plane of rotation.
            c2 = (1.0 - cos_a) / a2
            c3 = (a - sin_a) / a3
            return cls(matrix=eye + X + c2 * X2 + c3 * X3)
        elif a - b <= _EQUAL_ANGLE_TOLERANCE * a:
            # Isoclinic rotation.
            a = (a + b) / 2.0
            a3 = a * a * a
            sin_a, cos_a = onp.sin(a), onp.cos(a)
            c0 = (a * sin_a + 2.0 * cos_a) / 2.0
            c1 = (3.0 * sin_a - a * cos_a) / (2.0 * a)
            c2 = sin_a / (2.0 * a)
            c3 = (sin_a - a * cos_a) / (2.0 * a3)
            return cls(matrix=c0 * eye + c1 * X + c2 * X2 + c3 * X3)
        else:
            b2 = b * b
            b3 = b2 * b
            sin_b, cos_b = onp.sin(b), onp.cos(b)
            c0 = (b2 * cos_a - a2 * cos_b) / (b2 - a2)
            c1 = (b3 * sin_a - a3 * sin_b) / (a * b * (b2 - a2))
            c2 = (cos_a - cos_b) / (b2 - a2)
            c3 = (b * sin_a - a * sin_b) / (a * b * (b2 - a2))
            return cls(matrix=c0 * eye + c1 * X + c2 * X2 + c3 * X3)

    def log(self, jacobian: bool = False) -> jax.Array:
        """Logarithm map. Not implemented: always raises."""
        if jacobian:
            raise UnimplementedOperationError("SO4.log Jacobian")
        raise UnimplementedOperationError("SO4.log")

    def adjoint(self) -> jax.Array:
        """Adjoint map, with shape `(6, 6)`. Column `i` is `vee(Q G_i Q^T)`."""
        Q = self.matrix
        conjugated = jnp.einsum("ij,njk,lk->nil", Q, so4_generators(), Q)
        return self.vee(conjugated).T

    # Chart at the origin.

    @classmethod
    def retract(cls, tangent: jax.Array, jacobian: bool = False) -> SO4:
        """Cayley retraction, `(I + X/2)(I - X/2)^-1` for `X = hat(tangent)`.

        Cheaper than `exp()`, and exactly inverted by `local()`."""
        if jacobian:
            raise UnimplementedOperationError("SO4.retract Jacobian")
        X = cls.hat(tangent / 2.0)
        eye = jnp.eye(4)
        # Factors commute, so we can solve instead of inverting.
        return cls(matrix=jnp.linalg.solve(eye - X, eye + X))

    def local(self, jacobian: bool = False) -> jax.Array:
        """Inverse of `retract()`: `-2 vee((I - Q)(I + Q)^-1)`. Undefined when
        `Q` has an eigenvalue of -1."""
        if jacobian:
            raise UnimplementedOperationError("SO4.local Jacobian")
        eye = jnp.eye(4)
        return -2.0 * self.vee(jnp.linalg.solve(eye + self.matrix, eye - self.matrix))

    # Projections.

    @overload
    def vec(self, jacobian: Literal[False] = False) -> jax.Array: ...

    @overload
    def vec(self, jacobian: Literal[True]) -> tuple[jax.Array, jax.Array]: ...

    def vec(self, jacobian: bool = False) -> jax.Array | tuple[jax.Array, jax.Array]:
        """Column-major vectorization, shape `(16,)`. Optionally also returns
        the `(16, 6)` Jacobian with respect to a right perturbation."""
        out = self.matrix.T.flatten()
        if not jacobian:
            return out
        P = so4_vectorized_generators()
        H = jnp.concatenate(
            [self.matrix @ P[4 * j : 4 * (j + 1)] for j in range(4)], axis=0
        )
        return out, H

    @overload
    def top_left(self, jacobian: Literal[False] = False) -> jax.Array: ...

    @overload
    def top_left(self, jacobian: Literal[True]) -> tuple[jax.Array, jax.Array]: ...

    def top_left(
        self, jacobian: bool = False
    ) -> jax.Array | tuple[jax.Array, jax.Array]:
        """Upper-left 3x3 block. Optionally also returns the `(9, 6)` Jacobian
        of its column-major vectorization."""
        M = self.matrix[:3, :3]
        if not jacobian:
            return M
        return M, _projection_jacobian(
            M[:, 0], M[:, 1], M[:, 2], q=self.matrix[:3, 3]
        )

    @overload
    def stiefel(self, jacobian: Literal[False] = False) -> jax.Array: ...

    @overload
    def stiefel(self, jacobian: Literal[True]) -> tuple[jax.Array, jax.Array]: ...

    def stiefel(
        self, jacobian: bool = False
    ) -> jax.Array | tuple[jax.Array, jax.Array]:
        """First three columns, an element of the Stiefel manifold V(4, 3).
        Optionally also returns the `(12, 6)` Jacobian."""
        M = self.matrix[:, :3]
        if not jacobian:
            return M
        return M, _projection_jacobian(
            M[:, 0], M[:, 1], M[:, 2], q=self.matrix[:, 3]
        )


def _projection_jacobian(
    m1: jax.Array, m2: jax.Array, m3: jax.Array, q: jax.Array
) -> jax.Array:
    """Jacobian of `[m1; m2; m3]` for a slice of the first three columns of
    `Q`, where `q` is the matching slice of the fourth column."""
    z = jnp.zeros_like(m1)
    columns = [
        (z, m3, -m2),
        (-m3, z, m1),
        (m2, -m1, z),
        (q, z, z),
        (z, q, z),
        (z, z, q),
    ]
    return jnp.stack([jnp.concatenate(blocks) for blocks in columns], axis=1)


def so4_rplus(Q: SO4, delta: jax.Array) -> SO4:
    """Retract a tangent vector around `Q` with the Cayley chart."""
    return Q @ SO4.retract(delta)


def so4_rminus(Q0: SO4, Q1: SO4) -> jax.Array:
    """Local coordinates of `Q1` in the chart around `Q0`."""
    return (Q0.inverse() @ Q1).local()
