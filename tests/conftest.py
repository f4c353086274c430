import jax

# Tolerances in the tests assume double precision.
jax.config.update("jax_enable_x64", True)
