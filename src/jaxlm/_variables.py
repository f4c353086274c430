from __future__ import annotations

import functools
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from functools import total_ordering
from typing import Any, Callable, ClassVar, Generic, TypeVar, cast

import jax
import jax_dataclasses as jdc
import numpy as onp
from jax import flatten_util
from jax import numpy as jnp

T = TypeVar("T")


@total_ordering
class _HashableSortableMeta(type):
    """We use variable types as parts of dictionary keys, and sort variables by
    type. This metaclass makes sure that the types themselves can be hashed and
    ordered.

    Relevant: https://github.com/google/jax/issues/15358
    """

    def __hash__(cls):
        return object.__hash__(cls)

    def __lt__(cls, other):
        if cls.__name__ == other.__name__:
            return id(cls) < id(other)
        else:
            return cls.__name__ < other.__name__


@jdc.pytree_dataclass
class VarWithValue(Generic[T]):
    """Structure containing a single variable with a value. Returned by
    `Var.with_value()`."""

    variable: Var[T]
    value: T


@jdc.pytree_dataclass
class Var(Generic[T], metaclass=_HashableSortableMeta):
    """A symbolic representation of an optimization variable, used as the key
    for looking up values.

    Manifold behavior is declared once per variable type, as keyword arguments
    in the class definition:

        class Point2Var(Var[jax.Array], default_factory=lambda: jnp.zeros(2)): ...

        class SO4Var(
            Var[SO4],
            default_factory=SO4.identity,
            retract_fn=so4_rplus,
            local_fn=so4_rminus,
            tangent_dim=6,
        ): ...

    If `retract_fn` is omitted, the variable is treated as Euclidean.
    """

    id: jdc.Static[int]

    default_factory: ClassVar[Callable[[], Any]]
    """Default value for this variable."""
    tangent_dim: ClassVar[int]
    """Dimension of the tangent space."""
    retract_fn: ClassVar[Callable[[Any, jax.Array], Any]]
    """Retraction: value and tangent vector to a new value."""
    local_fn: ClassVar[Callable[[Any, Any], jax.Array]]
    """Inverse of the retraction: local coordinates of the second value in the
    chart around the first."""

    def with_value(self, value: T) -> VarWithValue[T]:
        """Assign a value to this variable. Returned value can be used as input
        for `VarValues.make()`."""
        return VarWithValue(self, value)

    def __lt__(self, other: Var[Any]) -> bool:
        if type(self) is type(other):
            return self.id < other.id
        return type(self) < type(other)

    def __init_subclass__(
        cls,
        *,
        default_factory: Callable[[], Any],
        retract_fn: Callable[[Any, jax.Array], Any] | None = None,
        local_fn: Callable[[Any, Any], jax.Array] | None = None,
        tangent_dim: int | None = None,
    ) -> None:
        cls.default_factory = staticmethod(default_factory)  # type: ignore
        if retract_fn is not None:
            assert local_fn is not None and tangent_dim is not None
            cls.tangent_dim = tangent_dim
            cls.retract_fn = staticmethod(retract_fn)  # type: ignore
            cls.local_fn = staticmethod(local_fn)  # type: ignore
        else:
            assert local_fn is None and tangent_dim is None
            parameter_dim = int(
                sum(
                    [
                        onp.prod(leaf.shape)
                        for leaf in jax.tree.leaves(jax.eval_shape(default_factory))
                    ]
                )
            )
            cls.tangent_dim = parameter_dim
            cls.retract_fn = staticmethod(_euclidean_retract)  # type: ignore
            cls.local_fn = staticmethod(_euclidean_local)  # type: ignore

        super().__init_subclass__()

        # Subclasses need to be registered as PyTrees.
        jdc.pytree_dataclass(cls)


def _euclidean_retract(pytree: T, delta: jax.Array) -> T:
    _, unravel = flatten_util.ravel_pytree(pytree)
    return cast(T, jax.tree.map(jnp.add, pytree, unravel(delta)))


def _euclidean_local(pytree0: Any, pytree1: Any) -> jax.Array:
    return flatten_util.ravel_pytree(pytree1)[0] - flatten_util.ravel_pytree(pytree0)[0]


@dataclass(frozen=True)
class Ordering:
    """A total order over variables, supplied by the caller.

    Determines the column layout of linearized systems and the layout of
    tangent vectors passed to `VarValues.retract()`. Orderings only affect
    performance and conditioning, not the solution. We never compute
    elimination orderings ourselves.
    """

    variables: tuple[Var[Any], ...]

    def __post_init__(self) -> None:
        if len(set(self.variables)) != len(self.variables):
            raise ValueError("Orderings can't contain duplicate variables.")

    @staticmethod
    def make(variables: Iterable[Var[Any]]) -> Ordering:
        return Ordering(tuple(variables))

    @staticmethod
    def from_values(vals: VarValues) -> Ordering:
        """Deterministic ordering of all variables in `vals`: sorted by
        variable type name, then ID."""
        return Ordering(tuple(sorted(vals.variables())))

    @functools.cached_property
    def offset_from_var(self) -> dict[Var[Any], int]:
        """Start index of each variable in a tangent vector."""
        out = dict[Var[Any], int]()
        offset = 0
        for var in self.variables:
            out[var] = offset
            offset += type(var).tangent_dim
        return out

    @functools.cached_property
    def tangent_dim(self) -> int:
        return sum(type(var).tangent_dim for var in self.variables)

    def tangent_slice(self, var: Var[Any]) -> slice:
        start = self.offset_from_var[var]
        return slice(start, start + type(var).tangent_dim)

    def __len__(self) -> int:
        return len(self.variables)

    def __iter__(self) -> Iterator[Var[Any]]:
        return iter(self.variables)

    def __contains__(self, var: object) -> bool:
        return var in self.offset_from_var


@dataclass(frozen=True, eq=False)
class VarValues:
    """A mapping from variables to variable values. Values can have different
    types, for example `jaxlie.SE3` for poses and arrays for landmarks.

    Given a variable object `var` and a values object `vals`, we can get the
    value by calling one of:

        # Equivalent.
        vals.get_value(var)
        vals[var]

    Instances are never mutated. Updates go through `retract()`, which returns
    a new object.
    """

    vals_from_var: Mapping[Var[Any], Any]

    def get_value(self, var: Var[T]) -> T:
        """Get the value of a specific variable."""
        try:
            return self.vals_from_var[var]
        except KeyError:
            raise KeyError(f"No value assigned to {var}.") from None

    def __getitem__(self, var: Var[T]) -> T:
        return self.get_value(var)

    def __contains__(self, var: object) -> bool:
        return var in self.vals_from_var

    def __len__(self) -> int:
        return len(self.vals_from_var)

    def __iter__(self) -> Iterator[Var[Any]]:
        return iter(self.vals_from_var)

    def variables(self) -> tuple[Var[Any], ...]:
        return tuple(self.vals_from_var.keys())

    def __repr__(self) -> str:
        out_lines = [
            f"  {var_type_and_id}: ".ljust(14) + f"{val},"
            for var_type_and_id, val in (
                (f"{type(var).__name__}({var.id})", self.vals_from_var[var])
                for var in sorted(self.vals_from_var.keys())
            )
        ]
        return "VarValues(\n" + "\n".join(out_lines) + "\n)"

    @staticmethod
    def make(variables: Iterable[Var[Any] | VarWithValue[Any]]) -> VarValues:
        """Create a VarValues object from a list of variables with or without
        values assigned to them. In the latter case, values are set to the
        default value of the variable type.

        Example:
            >>> v1 = SomeVar(1)
            >>> v2 = AnotherVar(2)
            >>>
            >>> # Set v1 to default, v2 to custom value:
            >>> values = VarValues.make([v1, v2.with_value(custom_value)])
        """
        vals_from_var = dict[Var[Any], Any]()
        for v in variables:
            if isinstance(v, Var):
                var, val = v, type(v).default_factory()
            else:
                var, val = v.variable, v.value
            if var in vals_from_var:
                raise ValueError(f"Duplicate value for {var}.")
            vals_from_var[var] = val
        return VarValues(vals_from_var)

    def get_tangent_dim(self) -> int:
        """Sum of tangent dimensions of all variables in this structure."""
        return sum(type(var).tangent_dim for var in self.vals_from_var)

    def retract(self, tangent: jax.Array, ordering: Ordering) -> VarValues:
        """Apply each variable's retraction to its slice of `tangent`, laid
        out by `ordering`. Variables that aren't in the ordering are left
        unchanged."""
        assert tangent.shape == (ordering.tangent_dim,), (
            f"Tangent shape {tangent.shape} doesn't match ordering dimension "
            f"{ordering.tangent_dim}."
        )
        vals_from_var = dict(self.vals_from_var)
        for var in ordering:
            vals_from_var[var] = type(var).retract_fn(
                self.get_value(var), tangent[ordering.tangent_slice(var)]
            )
        return VarValues(vals_from_var)

    def local_coordinates(self, other: VarValues, ordering: Ordering) -> jax.Array:
        """Inverse of `retract()`: the tangent vector taking `self` to `other`."""
        if ordering.tangent_dim == 0:
            return jnp.zeros((0,))
        return jnp.concatenate(
            [
                type(var).local_fn(self.get_value(var), other.get_value(var))
                for var in ordering
            ]
        )

    def allclose(self, other: VarValues, atol: float = 1e-9) -> bool:
        """Check that both objects hold the same variables, with values that
        are equal up to an absolute tolerance."""
        if set(self.vals_from_var.keys()) != set(other.vals_from_var.keys()):
            return False
        for var, val in self.vals_from_var.items():
            flat0 = flatten_util.ravel_pytree(val)[0]
            flat1 = flatten_util.ravel_pytree(other.vals_from_var[var])[0]
            if flat0.shape != flat1.shape or not bool(
                jnp.all(jnp.abs(flat0 - flat1) <= atol)
            ):
                return False
        return True
