import jax
import jax.numpy as jnp
import jax.scipy

import topfit
from .base import ResolutionFunction
export, __all__ = topfit.exporter()


@export
@jax.tree_util.register_pytree_node_class
class MissingETResolution(ResolutionFunction):
    """Gaussian resolution of one missing transverse energy component.

    The width depends on the scalar transverse energy sum of the event:
        sigma(sumet) = p0 + p1 / (1 + exp(-p2 * (sumet - p3)))

    If sumet is not given, the true value is used in its place.
    """

    n_coefficients = 4

    def width(self, true_value, sumet=None):
        if sumet is None:
            sumet = true_value
        p0, p1, p2, p3 = self.coefficients
        sigma = p0 + p1 / (1 + jnp.exp(-p2 * (sumet - p3)))
        return jnp.maximum(sigma, 0.)

    def log_density(self, true_value, measured_value, sumet=None):
        sigma = self.width(true_value, sumet=sumet)
        valid = sigma > 0
        safe_sigma = jnp.where(valid, sigma, 1.)
        log_p = jax.scipy.stats.norm.logpdf(
            measured_value, loc=true_value, scale=safe_sigma)
        return log_p, valid
