"""Rotation averaging on SO(4): a chain of 4D rotations is estimated from noisy
relative measurements, plus one prior that anchors the gauge.

For a summary of options:

    python 2_so4_rotation_averaging.py --help

"""

from typing import Literal

import jax
import tyro
from jax import numpy as jnp

import jaxlm


@jaxlm.Factor.factory
def so4_prior(vals: jaxlm.VarValues, var: jaxlm.SO4Var, target: jaxlm.SO4) -> jax.Array:
    return jaxlm.so4_rminus(target, vals[var])


@jaxlm.Factor.factory
def so4_between(
    vals: jaxlm.VarValues,
    var0: jaxlm.SO4Var,
    var1: jaxlm.SO4Var,
    delta: jaxlm.SO4,
) -> jax.Array:
    return jaxlm.so4_rminus(delta, vals[var0].inverse() @ vals[var1])


def main(
    num_rotations: int = 10,
    noise_sigma: float = 0.01,
    loop_closure: bool = True,
    linear_solver: Literal[
        "dense_cholesky", "cholmod", "conjugate_gradient"
    ] = "dense_cholesky",
    verbosity: Literal["silent", "error", "trylambda"] = "error",
    seed: int = 0,
) -> None:
    keys = jax.random.split(jax.random.PRNGKey(seed), num_rotations)
    ground_truth = [jaxlm.SO4.sample_uniform(key) for key in keys]
    rotation_vars = tuple(jaxlm.SO4Var(i) for i in range(num_rotations))

    def noisy_delta(i: int, j: int, key: jax.Array) -> jaxlm.SO4:
        noise = noise_sigma * jax.random.normal(key, (6,))
        return jaxlm.so4_rplus(ground_truth[i].inverse() @ ground_truth[j], noise)

    with jaxlm.utils.stopwatch("Building graph"):
        pairs = [(i, i + 1) for i in range(num_rotations - 1)]
        if loop_closure and num_rotations > 2:
            pairs.append((num_rotations - 1, 0))
        noise_keys = jax.random.split(jax.random.PRNGKey(seed + 1), len(pairs))
        between_noise = jaxlm.Isotropic.make_from_sigma(6, noise_sigma)

        deltas = [noisy_delta(i, j, key) for (i, j), key in zip(pairs, noise_keys)]
        factors = [so4_prior(rotation_vars[0], ground_truth[0])]
        for (i, j), delta in zip(pairs, deltas):
            factors.append(
                so4_between(
                    rotation_vars[i],
                    rotation_vars[j],
                    delta,
                    noise_model=between_noise,
                )
            )
        graph = jaxlm.FactorGraph.make(factors)

    # Initialize by chaining the first rotation through the noisy odometry.
    initial = [ground_truth[0]]
    for (i, _), delta in zip(pairs[: num_rotations - 1], deltas):
        initial.append(initial[i] @ delta)
    initial_vals = jaxlm.VarValues.make(
        [var.with_value(Q) for var, Q in zip(rotation_vars, initial)]
    )

    with jaxlm.utils.stopwatch("Solving"):
        optimizer = jaxlm.LevenbergMarquardtOptimizer(
            graph,
            initial_vals,
            linear_solver=linear_solver,
            verbosity=verbosity,
        )
        solution, summary = optimizer.solve(return_summary=True)

    print("Status:", summary.status)
    print("Iterations:", summary.iterations)
    print(f"Error: {summary.initial_error:.6f} -> {summary.final_error:.6f}")
    for var, Q in zip(rotation_vars, ground_truth):
        error = jnp.linalg.norm(solution[var].as_matrix() - Q.as_matrix())
        print(f"Rotation {var.id}: Frobenius error {float(error):.2e}")


if __name__ == "__main__":
    tyro.cli(main)
