"""Small urban mapping problem: a robot on a planar street takes two steps and
measures four lamp posts in its own frame.

Starts from a perturbed copy of the ground truth and recovers it with
Levenberg-Marquardt.

For a summary of options:

    python 1_urban_graph.py --help

"""

from typing import Literal

import jax
import jaxlie
import numpy as onp
import tyro
from jax import numpy as jnp

import jaxlm


class Point2Var(jaxlm.Var[jax.Array], default_factory=lambda: jnp.zeros(2)):
    """Landmark position on the street plane."""


@jaxlm.Factor.factory
def landmark_measurement(
    vals: jaxlm.VarValues, pose: jaxlm.SE3Var, landmark: Point2Var, measured: jax.Array
) -> jax.Array:
    landmark_xy = vals[landmark]
    landmark_world = jnp.array([landmark_xy[0], landmark_xy[1], 0.0])
    return (vals[pose].inverse() @ landmark_world)[:2] - measured


@jaxlm.Factor.factory
def odometry(
    vals: jaxlm.VarValues, pose0: jaxlm.SE3Var, pose1: jaxlm.SE3Var, delta: jaxlie.SE3
) -> jax.Array:
    return ((vals[pose0].inverse() @ vals[pose1]) @ delta.inverse()).log()


@jaxlm.Factor.factory
def origin_constraint(
    vals: jaxlm.VarValues, pose: jaxlm.SE3Var, origin: jaxlie.SE3
) -> jax.Array:
    return (origin.inverse() @ vals[pose]).log()


def main(
    linear_solver: Literal[
        "dense_cholesky", "cholmod", "conjugate_gradient"
    ] = "dense_cholesky",
    verbosity: Literal["silent", "error", "trylambda"] = "error",
    perturbation_scale: float = 0.1,
    seed: int = 0,
) -> None:
    # Robot x axis points along world y; its z axis points down.
    rotation = jaxlie.SO3.from_matrix(
        jnp.array([[0.0, 1.0, 0.0], [1.0, 0.0, 0.0], [0.0, 0.0, -1.0]])
    )
    poses = (
        jaxlie.SE3.from_rotation_and_translation(rotation, jnp.zeros(3)),
        jaxlie.SE3.from_rotation_and_translation(rotation, jnp.array([0.0, 1.0, 0.0])),
    )
    landmarks = (
        jnp.array([2.0, 5.0]),
        jnp.array([2.0, 10.0]),
        jnp.array([-2.0, 5.0]),
        jnp.array([-2.0, 10.0]),
    )
    pose_vars = (jaxlm.SE3Var(1), jaxlm.SE3Var(2))
    landmark_vars = tuple(Point2Var(i) for i in range(1, 5))

    with jaxlm.utils.stopwatch("Building graph"):
        measurement_noise = jaxlm.Isotropic.make_from_sigma(2, 0.2)
        factors = [
            origin_constraint(
                pose_vars[0],
                poses[0],
                noise_model=jaxlm.Isotropic.make_from_sigma(6, 1e-3),
            ),
            odometry(
                pose_vars[0],
                pose_vars[1],
                jaxlie.SE3.from_translation(jnp.array([1.0, 0.0, 0.0])),
                noise_model=jaxlm.DiagonalGaussian.make_from_sigmas(
                    [0.01, 0.01, 0.01] + [onp.pi / 180] * 3
                ),
            ),
        ]
        for pose_var, pose in zip(pose_vars, poses):
            for landmark_var, landmark in zip(landmark_vars, landmarks):
                measured = (pose.inverse() @ jnp.array([*landmark, 0.0]))[:2]
                factors.append(
                    landmark_measurement(
                        pose_var, landmark_var, measured, noise_model=measurement_noise
                    )
                )
        graph = jaxlm.FactorGraph.make(factors)

    ground_truth = jaxlm.VarValues.make(
        [var.with_value(pose) for var, pose in zip(pose_vars, poses)]
        + [var.with_value(l) for var, l in zip(landmark_vars, landmarks)]
    )
    ordering = jaxlm.Ordering.make(landmark_vars + pose_vars)
    perturbation = perturbation_scale * jnp.asarray(
        onp.random.default_rng(seed).normal(size=(ordering.tangent_dim,))
    )
    initial_vals = ground_truth.retract(perturbation, ordering)

    with jaxlm.utils.stopwatch("Solving"):
        optimizer = jaxlm.LevenbergMarquardtOptimizer(
            graph,
            initial_vals,
            ordering,
            linear_solver=linear_solver,
            verbosity=verbosity,
        )
        solution, summary = optimizer.solve(return_summary=True)

    print("Status:", summary.status)
    print("Iterations:", summary.iterations)
    print(f"Error: {summary.initial_error:.6f} -> {summary.final_error:.6e}")
    for var in landmark_vars:
        print(f"Landmark {var.id}:", solution[var])
    for var in pose_vars:
        print(f"Pose {var.id}:", solution[var])


if __name__ == "__main__":
    tyro.cli(main)
