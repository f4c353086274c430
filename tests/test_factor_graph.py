import jax
import jaxlie
import numpy as onp
import pytest
from jax import numpy as jnp

import jaxlm


class Point2Var(jaxlm.Var[jax.Array], default_factory=lambda: jnp.zeros(2)): ...


@jaxlm.Factor.factory
def point_prior(vals: jaxlm.VarValues, var: Point2Var, target: jax.Array) -> jax.Array:
    return vals[var] - target


@jaxlm.Factor.factory
def point_between(
    vals: jaxlm.VarValues, var0: Point2Var, var1: Point2Var, delta: jax.Array
) -> jax.Array:
    return vals[var1] - vals[var0] - delta


@jaxlm.Factor.factory
def se2_prior(vals: jaxlm.VarValues, var: jaxlm.SE2Var, target: jaxlie.SE2) -> jax.Array:
    return (target.inverse() @ vals[var]).log()


def test_factory_variables_and_name():
    factor = point_between(Point2Var(1), Point2Var(0), jnp.ones(2))
    assert factor.get_variables() == (Point2Var(1), Point2Var(0))
    assert factor._get_name() == "point_between"

    @jaxlm.Factor.factory(name="custom")
    def named(vals: jaxlm.VarValues, var: Point2Var) -> jax.Array:
        return vals[var]

    assert named(Point2Var(0))._get_name() == "custom"


def test_factory_signature_forwarding():
    # Factory signatures are typed by the residual function, minus `vals`.
    assert jaxlm._factor.ResidualFunc.__parameters__ == (jaxlm._factor.Args,)
    assert jaxlm._factor.FactorFactory.__parameters__ == (jaxlm._factor.Args,)

    @jaxlm.Factor.factory
    def scaled_prior(
        vals: jaxlm.VarValues, var: Point2Var, target: jax.Array, scale: float = 1.0
    ) -> jax.Array:
        return scale * (vals[var] - target)

    factor = scaled_prior(
        Point2Var(0), target=jnp.ones(2), scale=2.0, noise_model=jaxlm.Unit(2)
    )
    assert factor.get_variables() == (Point2Var(0),)
    vals = jaxlm.VarValues.make([Point2Var(0)])
    onp.testing.assert_allclose(factor.compute_residual_vector(vals), [-2.0, -2.0])
    assert isinstance(factor.noise_model, jaxlm.Unit)


def test_nested_and_duplicate_variables():
    factor = jaxlm.Factor(
        lambda vals, pair, again: vals[pair["a"]] + vals[pair["b"]] + vals[again],
        ({"a": Point2Var(0), "b": Point2Var(1)}, Point2Var(0)),
    )
    assert set(factor.get_variables()) == {Point2Var(0), Point2Var(1)}
    assert len(factor.get_variables()) == 2


def test_factor_error_with_noise_model():
    factor = point_prior(
        Point2Var(0),
        jnp.array([1.0, 0.0]),
        noise_model=jaxlm.Isotropic.make_from_sigma(2, 0.5),
    )
    vals = jaxlm.VarValues.make([Point2Var(0)])
    onp.testing.assert_allclose(factor.compute_residual_vector(vals), [-1.0, 0.0])
    onp.testing.assert_allclose(factor.compute_whitened_residual_vector(vals), [-2.0, 0.0])
    assert float(factor.compute_error(vals)) == pytest.approx(2.0)


def test_factor_linearize_lie_group():
    target = jaxlie.SE2.from_xy_theta(1.0, 2.0, 0.3)
    factor = se2_prior(jaxlm.SE2Var(0), target)
    vals = jaxlm.VarValues.make([jaxlm.SE2Var(0).with_value(target)])
    residual, jacobian = factor.linearize(vals)
    onp.testing.assert_allclose(residual, onp.zeros(3), atol=1e-12)
    # At the target, the Jacobian of log(exp(delta)) is the identity.
    onp.testing.assert_allclose(jacobian, onp.eye(3), atol=1e-9)


@pytest.mark.parametrize("jac_mode", ["auto", "forward", "reverse"])
def test_factor_jac_modes_agree(jac_mode: str):
    factor = jaxlm.Factor(
        lambda vals, var: jnp.sin(vals[var]) * jnp.array([1.0, 2.0]),
        (Point2Var(0),),
        jac_mode=jac_mode,  # type: ignore
    )
    vals = jaxlm.VarValues.make([Point2Var(0).with_value(jnp.array([0.3, -0.2]))])
    _, jacobian = factor.linearize(vals)
    onp.testing.assert_allclose(
        jacobian, onp.diag(onp.cos([0.3, -0.2]) * onp.array([1.0, 2.0])), atol=1e-12
    )


def test_factor_custom_jacobian():
    calls = []

    def jac(vals, var, target):
        calls.append(var)
        return 3.0 * jnp.eye(2)

    factor = jaxlm.Factor.factory(jac_custom_fn=jac)(
        lambda vals, var, target: 3.0 * (vals[var] - target)
    )(Point2Var(0), jnp.zeros(2), noise_model=jaxlm.DiagonalGaussian.make_from_sigmas([1.0, 0.5]))
    vals = jaxlm.VarValues.make([Point2Var(0).with_value(jnp.ones(2))])
    residual, jacobian = factor.linearize(vals)
    assert calls == [Point2Var(0)]
    onp.testing.assert_allclose(residual, [3.0, 6.0])
    onp.testing.assert_allclose(jacobian, [[3.0, 0.0], [0.0, 6.0]])


def test_graph_error_and_variables():
    graph = jaxlm.FactorGraph.make(
        [
            point_prior(Point2Var(0), jnp.zeros(2)),
            point_between(Point2Var(0), Point2Var(1), jnp.array([1.0, 0.0])),
        ]
    )
    assert len(graph) == 2
    assert graph.get_variables() == (Point2Var(0), Point2Var(1))

    vals = jaxlm.VarValues.make(
        [Point2Var(0), Point2Var(1).with_value(jnp.array([1.0, 1.0]))]
    )
    # Only the between factor has a non-zero residual, (0, 1).
    assert graph.compute_error(vals) == pytest.approx(0.5)
    onp.testing.assert_allclose(
        graph.compute_whitened_residual_vector(vals), [0.0, 0.0, 0.0, 1.0]
    )

    empty = jaxlm.FactorGraph.make([])
    assert empty.compute_error(vals) == 0.0


def test_graph_add():
    graph = jaxlm.FactorGraph.make([point_prior(Point2Var(0), jnp.zeros(2))])
    bigger = graph.add(point_prior(Point2Var(1), jnp.zeros(2)))
    assert len(graph) == 1
    assert len(bigger) == 2


def _numerical_jacobian(graph, vals, ordering, eps=1e-6):
    """Central differences of the whitened residual through the retraction."""
    columns = []
    for i in range(ordering.tangent_dim):
        delta = onp.zeros(ordering.tangent_dim)
        delta[i] = eps
        plus = graph.compute_whitened_residual_vector(
            vals.retract(jnp.asarray(delta), ordering)
        )
        minus = graph.compute_whitened_residual_vector(
            vals.retract(jnp.asarray(-delta), ordering)
        )
        columns.append((plus - minus) / (2 * eps))
    return onp.stack(columns, axis=1)


@pytest.mark.parametrize("reverse_ordering", [False, True])
def test_linearize_matches_numerical(reverse_ordering: bool):
    @jaxlm.Factor.factory
    def pose_point(
        vals: jaxlm.VarValues, pose: jaxlm.SE2Var, point: Point2Var, measured: jax.Array
    ) -> jax.Array:
        return vals[pose].inverse() @ vals[point] - measured

    graph = jaxlm.FactorGraph.make(
        [
            se2_prior(
                jaxlm.SE2Var(0),
                jaxlie.SE2.from_xy_theta(0.0, 0.0, 0.0),
                noise_model=jaxlm.DiagonalGaussian.make_from_sigmas([0.1, 0.1, 0.05]),
            ),
            pose_point(
                jaxlm.SE2Var(0),
                Point2Var(0),
                jnp.array([1.0, 2.0]),
                noise_model=jaxlm.Isotropic.make_from_sigma(2, 0.2),
            ),
        ]
    )
    vals = jaxlm.VarValues.make(
        [
            jaxlm.SE2Var(0).with_value(jaxlie.SE2.from_xy_theta(0.1, -0.2, 0.3)),
            Point2Var(0).with_value(jnp.array([1.5, 1.0])),
        ]
    )
    variables = [jaxlm.SE2Var(0), Point2Var(0)]
    if reverse_ordering:
        variables = variables[::-1]
    ordering = jaxlm.Ordering.make(variables)

    system = graph.linearize(vals, ordering)
    assert system.A.shape == (5, 5)
    assert system.ordering == ordering
    onp.testing.assert_allclose(
        system.residual_vector, graph.compute_whitened_residual_vector(vals)
    )
    onp.testing.assert_allclose(
        system.A.as_dense(), _numerical_jacobian(graph, vals, ordering), atol=1e-5
    )

    # Gradient of the error is A^T b.
    onp.testing.assert_allclose(
        system.compute_ATb(),
        -system.A.as_dense().T @ system.residual_vector,
        atol=1e-12,
    )
    assert float(system.compute_model_error(jnp.zeros(5))) == pytest.approx(
        graph.compute_error(vals)
    )


def test_linearize_missing_from_ordering():
    graph = jaxlm.FactorGraph.make(
        [point_between(Point2Var(0), Point2Var(1), jnp.zeros(2))]
    )
    vals = jaxlm.VarValues.make([Point2Var(0), Point2Var(1)])
    with pytest.raises(ValueError):
        graph.linearize(vals, jaxlm.Ordering.make([Point2Var(0)]))
