from __future__ import annotations

from typing import Any, Callable, Concatenate, Literal, ParamSpec, cast, overload

import jax
import jax_dataclasses as jdc
from jax import numpy as jnp

from ._noise_models import NoiseModelBase
from ._variables import Ordering, Var, VarValues

Args = ParamSpec("Args")

ResidualFunc = Callable[Concatenate[VarValues, Args], jax.Array]
JacobianFunc = Callable[Concatenate[VarValues, Args], jax.Array]
FactorFactory = Callable[Args, "Factor"]


@jdc.pytree_dataclass
class Factor:
    """A nonlinear factor in our graph: a residual function, the arguments to
    evaluate it with, and a noise model for whitening.

    The error of a factor is `0.5 * ||W r(x)||^2`, where `W` comes from the
    noise model (identity if none is set).

    Use the :meth:`~jaxlm.Factor.factory` decorator to create factors from a
    residual function.

    Each ``Factor.compute_residual`` must include at least one ``jaxlm.Var(id)``
    in its inputs. Variables can appear anywhere in the input structure,
    including nested within pytrees (lists, dicts, dataclasses, etc.).
    """

    compute_residual: jdc.Static[Callable[..., jax.Array]]
    """Residual computation function. Takes a `VarValues` object followed by
    `*args`, and returns a residual array of any shape. Residuals are
    flattened before whitening."""

    args: tuple[Any, ...]
    """Arguments to the residual function. This should include at least one
    `jaxlm.Var` object, which can either be in the root of the tuple or nested
    within a PyTree structure arbitrarily."""

    noise_model: NoiseModelBase | None = None
    """Whitening applied to the residual and its Jacobian."""

    jac_mode: jdc.Static[Literal["auto", "forward", "reverse"]] = "auto"
    """Depending on the function being differentiated, it may be faster to use
    forward-mode or reverse-mode autodiff. Ignored if `jac_custom_fn` is
    specified."""

    jac_custom_fn: jdc.Static[Callable[..., jax.Array] | None] = None
    """Optional custom Jacobian function. If None, we use autodiff. Inputs are
    the same as `compute_residual`. Output is a single 2D Jacobian matrix with
    shape (residual_dim, sum_of_tangent_dims_of_variables), before whitening.
    Columns follow the order of `get_variables()`."""

    name: jdc.Static[str | None] = None
    """Custom name for debugging and logging."""

    def _get_name(self) -> str:
        """Get the name. If not set, falls back to the function name."""
        if self.name is None:
            return getattr(self.compute_residual, "__name__", type(self).__name__)
        return self.name

    def get_variables(self) -> tuple[Var[Any], ...]:
        """Extract all Var objects from args (walks the pytree). Duplicates are
        removed, first occurrence wins."""
        leaves = jax.tree.leaves(self.args, is_leaf=lambda x: isinstance(x, Var))
        variables = tuple(dict.fromkeys(x for x in leaves if isinstance(x, Var)))
        assert len(variables) != 0, f"No variables found in {self._get_name()}!"
        return variables

    def compute_residual_vector(self, vals: VarValues) -> jax.Array:
        """Unwhitened residual, flattened to 1D."""
        return jnp.atleast_1d(self.compute_residual(vals, *self.args)).flatten()

    def compute_whitened_residual_vector(self, vals: VarValues) -> jax.Array:
        residual_vector = self.compute_residual_vector(vals)
        if self.noise_model is None:
            return residual_vector
        assert self.noise_model.get_residual_dim() == residual_vector.shape[0], (
            f"Noise model dimension {self.noise_model.get_residual_dim()} doesn't "
            f"match residual dimension {residual_vector.shape[0]} in {self._get_name()}."
        )
        return self.noise_model.whiten_residual_vector(residual_vector)

    def compute_error(self, vals: VarValues) -> jax.Array:
        """Half the squared norm of the whitened residual."""
        whitened = self.compute_whitened_residual_vector(vals)
        return 0.5 * jnp.sum(whitened**2)

    def linearize(self, vals: VarValues) -> tuple[jax.Array, jax.Array]:
        """Compute the whitened residual and whitened Jacobian at `vals`.

        Jacobian columns are taken with respect to each variable's retraction,
        in the order of `get_variables()`.

        Returns:
            Tuple of (residual, Jacobian), with shapes `(residual_dim,)` and
            `(residual_dim, tangent_dim)`.
        """
        local_ordering = Ordering(self.get_variables())
        residual_vector = self.compute_residual_vector(vals)

        if self.jac_custom_fn is not None:
            jacobian = jnp.asarray(self.jac_custom_fn(vals, *self.args))
        else:
            jacfunc = {
                "forward": jax.jacfwd,
                "reverse": jax.jacrev,
                "auto": jax.jacrev
                if residual_vector.shape[0] < local_ordering.tangent_dim
                else jax.jacfwd,
            }[self.jac_mode]
            jacobian = jacfunc(
                lambda tangent: self.compute_residual_vector(
                    vals.retract(tangent, local_ordering)
                )
            )(jnp.zeros((local_ordering.tangent_dim,)))

        assert jacobian.shape == (
            residual_vector.shape[0],
            local_ordering.tangent_dim,
        ), f"Unexpected Jacobian shape {jacobian.shape} in {self._get_name()}."

        if self.noise_model is None:
            return residual_vector, jacobian
        return (
            self.noise_model.whiten_residual_vector(residual_vector),
            self.noise_model.whiten_jacobian(jacobian),
        )

    # Simple decorator.
    @overload
    @staticmethod
    def factory(compute_residual: ResidualFunc[Args]) -> FactorFactory[Args]: ...

    # Decorator factory with keyword arguments.
    @overload
    @staticmethod
    def factory(
        *,
        jac_mode: Literal["auto", "forward", "reverse"] = "auto",
        jac_custom_fn: JacobianFunc[Args] | None = None,
        name: str | None = None,
    ) -> Callable[[ResidualFunc[Args]], FactorFactory[Args]]: ...

    @staticmethod
    def factory(
        compute_residual: ResidualFunc[Args] | None = None,
        *,
        jac_mode: Literal["auto", "forward", "reverse"] = "auto",
        jac_custom_fn: JacobianFunc[Args] | None = None,
        name: str | None = None,
    ) -> Callable[[ResidualFunc[Args]], FactorFactory[Args]] | FactorFactory[Args]:
        """Decorator for creating factors from a residual function.

        The decorated function should take ``VarValues`` as its first argument
        and return a residual array. The resulting factory will have the same
        signature but without the ``VarValues`` argument, plus an optional
        keyword-only ``noise_model`` argument. Positional and keyword
        arguments are checked against the residual function by type
        checkers; ``noise_model`` is consumed by the factory itself.

        Example:
            >>> @Factor.factory
            ... def prior(vals, var, target):
            ...     return vals[var] - target
            >>>
            >>> factor = prior(Point2Var(0), jnp.ones(2), noise_model=Unit(2))
        """

        def decorator(compute_residual: ResidualFunc[Args]) -> FactorFactory[Args]:
            def inner(
                *args: Any, noise_model: NoiseModelBase | None = None, **kwargs: Any
            ) -> Factor:
                return Factor(
                    compute_residual=lambda values, args, kwargs: compute_residual(
                        values, *args, **kwargs
                    ),
                    args=(args, kwargs),
                    noise_model=noise_model,
                    jac_mode=jac_mode,
                    jac_custom_fn=(
                        lambda values, args, kwargs: cast(
                            Callable[..., jax.Array], jac_custom_fn
                        )(values, *args, **kwargs)
                    )
                    if jac_custom_fn is not None
                    else None,
                    name=name if name is not None else compute_residual.__name__,
                )

            return inner

        if compute_residual is None:
            return decorator
        return decorator(compute_residual)
