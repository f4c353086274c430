"""Simple pose graph example with two pose variables and three factors:

┌────────┐             ┌────────┐
│ Pose 0 ├───Between───┤ Pose 1 │
└───┬────┘             └────┬───┘
    │                       │
    │                       │
  Prior                   Prior

"""

import jax
import jaxlie
import jaxlm

# Create variables: each variable object represents something that we want to solve for.
#
# The variable objects themselves don't hold any values, but can be used as a key for
# accessing values from a VarValues object. (see below)
vars = (jaxlm.SE2Var(0), jaxlm.SE2Var(1))


# Create factors. In this example, we use a decorator-based syntax.
@jaxlm.Factor.factory
def prior_factor(
    vals: jaxlm.VarValues, var: jaxlm.SE2Var, target: jaxlie.SE2
) -> jax.Array:
    """Prior factor for a pose variable. Penalizes deviations from the target"""
    return (vals[var] @ target.inverse()).log()


@jaxlm.Factor.factory
def between_factor(
    vals: jaxlm.VarValues, delta: jaxlie.SE2, var0: jaxlm.SE2Var, var1: jaxlm.SE2Var
) -> jax.Array:
    """'Between' factor for two pose variables. Penalizes deviations from the delta."""
    return ((vals[var0].inverse() @ vals[var1]) @ delta.inverse()).log()


graph = jaxlm.FactorGraph.make(
    [
        prior_factor(vars[0], jaxlie.SE2.from_xy_theta(0.0, 0.0, 0.0)),
        prior_factor(vars[1], jaxlie.SE2.from_xy_theta(2.0, 0.0, 0.0)),
        between_factor(jaxlie.SE2.from_xy_theta(1.0, 0.0, 0.0), vars[0], vars[1]),
    ]
)

# Solve the optimization problem, starting from default values. The ordering
# determines the column layout of the linearized system.
optimizer = jaxlm.LevenbergMarquardtOptimizer(
    graph,
    jaxlm.VarValues.make(vars),
    jaxlm.Ordering.make(vars),
    verbosity="error",
)
solution = optimizer.optimize()
print("All solutions", solution)
print("Pose 0", solution[vars[0]])
print("Pose 1", solution[vars[1]])
