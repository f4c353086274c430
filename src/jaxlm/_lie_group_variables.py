import jaxlie

from ._so4 import SO4, so4_rminus, so4_rplus
from ._variables import Var


class SO2Var(
    Var[jaxlie.SO2],
    default_factory=jaxlie.SO2.identity,
    retract_fn=jaxlie.manifold.rplus,
    local_fn=jaxlie.manifold.rminus,
    tangent_dim=jaxlie.SO2.tangent_dim,
): ...


class SO3Var(
    Var[jaxlie.SO3],
    default_factory=jaxlie.SO3.identity,
    retract_fn=jaxlie.manifold.rplus,
    local_fn=jaxlie.manifold.rminus,
    tangent_dim=jaxlie.SO3.tangent_dim,
): ...


class SE2Var(
    Var[jaxlie.SE2],
    default_factory=jaxlie.SE2.identity,
    retract_fn=jaxlie.manifold.rplus,
    local_fn=jaxlie.manifold.rminus,
    tangent_dim=jaxlie.SE2.tangent_dim,
): ...


class SE3Var(
    Var[jaxlie.SE3],
    default_factory=jaxlie.SE3.identity,
    retract_fn=jaxlie.manifold.rplus,
    local_fn=jaxlie.manifold.rminus,
    tangent_dim=jaxlie.SE3.tangent_dim,
): ...


class SO4Var(
    Var[SO4],
    default_factory=SO4.identity,
    retract_fn=so4_rplus,
    local_fn=so4_rminus,
    tangent_dim=SO4.tangent_dim,
):
    """4D rotation variable. Updates use the Cayley chart, so only the
    operations needed for optimization are required of `SO4`."""
