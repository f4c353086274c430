import dataclasses

import jax
import jaxlie
import numpy as onp
import pytest
from jax import numpy as jnp

import jaxlm


class Point2Var(jaxlm.Var[jax.Array], default_factory=lambda: jnp.zeros(2)): ...


def test_euclidean_var():
    assert Point2Var.tangent_dim == 2
    x = jnp.array([1.0, 2.0])
    onp.testing.assert_allclose(Point2Var.retract_fn(x, jnp.array([0.5, -1.0])), [1.5, 1.0])
    onp.testing.assert_allclose(Point2Var.local_fn(x, jnp.array([3.0, 3.0])), [2.0, 1.0])


def test_lie_group_var_dims():
    assert jaxlm.SO2Var.tangent_dim == 1
    assert jaxlm.SE2Var.tangent_dim == 3
    assert jaxlm.SO3Var.tangent_dim == 3
    assert jaxlm.SE3Var.tangent_dim == 6
    assert jaxlm.SO4Var.tangent_dim == 6
    assert isinstance(jaxlm.SO4Var.default_factory(), jaxlm.SO4)


def test_var_equality_and_hashing():
    assert jaxlm.SE3Var(0) == jaxlm.SE3Var(0)
    assert jaxlm.SE3Var(0) != jaxlm.SE3Var(1)
    assert jaxlm.SE3Var(0) != jaxlm.SO3Var(0)
    assert len({jaxlm.SE3Var(0), jaxlm.SE3Var(0), jaxlm.SO3Var(0)}) == 2


def test_var_sorting():
    variables = [jaxlm.SE3Var(2), Point2Var(1), jaxlm.SE3Var(0), Point2Var(0)]
    assert sorted(variables) == [
        Point2Var(0),
        Point2Var(1),
        jaxlm.SE3Var(0),
        jaxlm.SE3Var(2),
    ]


def test_values_make_and_lookup():
    pose = jaxlie.SE3.from_translation(jnp.array([1.0, 2.0, 3.0]))
    vals = jaxlm.VarValues.make(
        [jaxlm.SE3Var(0).with_value(pose), Point2Var(0)]
    )
    assert len(vals) == 2
    assert jaxlm.SE3Var(0) in vals
    assert jaxlm.SE3Var(1) not in vals
    onp.testing.assert_allclose(vals[jaxlm.SE3Var(0)].translation(), [1.0, 2.0, 3.0])
    onp.testing.assert_allclose(vals.get_value(Point2Var(0)), [0.0, 0.0])
    assert vals.get_tangent_dim() == 8
    assert "SE3Var(0)" in repr(vals)


def test_values_missing_key():
    vals = jaxlm.VarValues.make([Point2Var(0)])
    with pytest.raises(KeyError):
        vals[Point2Var(1)]


def test_values_duplicate():
    with pytest.raises(ValueError):
        jaxlm.VarValues.make([Point2Var(0), Point2Var(0).with_value(jnp.ones(2))])


def test_values_immutable():
    vals = jaxlm.VarValues.make([Point2Var(0)])
    with pytest.raises(dataclasses.FrozenInstanceError):
        vals.vals_from_var = {}  # type: ignore


def test_ordering():
    ordering = jaxlm.Ordering.make([jaxlm.SE3Var(0), Point2Var(3), jaxlm.SO4Var(1)])
    assert len(ordering) == 3
    assert ordering.tangent_dim == 6 + 2 + 6
    assert ordering.offset_from_var == {
        jaxlm.SE3Var(0): 0,
        Point2Var(3): 6,
        jaxlm.SO4Var(1): 8,
    }
    assert ordering.tangent_slice(Point2Var(3)) == slice(6, 8)
    assert Point2Var(3) in ordering
    assert Point2Var(4) not in ordering
    assert list(ordering) == [jaxlm.SE3Var(0), Point2Var(3), jaxlm.SO4Var(1)]


def test_ordering_duplicates():
    with pytest.raises(ValueError):
        jaxlm.Ordering.make([Point2Var(0), Point2Var(0)])


def test_ordering_from_values():
    vals = jaxlm.VarValues.make([jaxlm.SE3Var(1), Point2Var(5), jaxlm.SE3Var(0)])
    ordering = jaxlm.Ordering.from_values(vals)
    assert ordering.variables == (Point2Var(5), jaxlm.SE3Var(0), jaxlm.SE3Var(1))


def test_retract_and_local_coordinates():
    vals = jaxlm.VarValues.make(
        [
            jaxlm.SE3Var(0).with_value(
                jaxlie.SE3.exp(jnp.array([0.1, 0.2, 0.3, 0.4, 0.5, 0.6]))
            ),
            Point2Var(0).with_value(jnp.array([1.0, 1.0])),
            jaxlm.SO4Var(0).with_value(
                jaxlm.SO4.exp(jnp.array([0.3, 0.2, 0.1, -0.1, -0.2, -0.3]))
            ),
        ]
    )
    ordering = jaxlm.Ordering.from_values(vals)
    delta = jnp.linspace(-0.1, 0.1, ordering.tangent_dim)

    retracted = vals.retract(delta, ordering)
    assert retracted is not vals
    assert not retracted.allclose(vals)
    onp.testing.assert_allclose(
        vals.local_coordinates(retracted, ordering), delta, atol=1e-9
    )

    # Zero tangent leaves values unchanged.
    assert vals.retract(jnp.zeros(ordering.tangent_dim), ordering).allclose(vals)


def test_retract_partial_ordering():
    vals = jaxlm.VarValues.make([Point2Var(0), Point2Var(1)])
    ordering = jaxlm.Ordering.make([Point2Var(1)])
    retracted = vals.retract(jnp.array([1.0, 2.0]), ordering)
    onp.testing.assert_allclose(retracted[Point2Var(0)], [0.0, 0.0])
    onp.testing.assert_allclose(retracted[Point2Var(1)], [1.0, 2.0])


def test_allclose():
    vals0 = jaxlm.VarValues.make([Point2Var(0)])
    vals1 = jaxlm.VarValues.make([Point2Var(0).with_value(jnp.array([0.0, 1e-12]))])
    vals2 = jaxlm.VarValues.make([Point2Var(1)])
    assert vals0.allclose(vals1)
    assert not vals0.allclose(vals1, atol=1e-14)
    assert not vals0.allclose(vals2)
