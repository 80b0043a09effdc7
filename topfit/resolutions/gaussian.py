"""Gaussian resolution functions for jet and lepton energies"""
import jax
import jax.numpy as jnp
import jax.scipy

import topfit
from .base import ResolutionFunction
from topfit.kinematics import safe_sqrt
export, __all__ = topfit.exporter()


@export
@jax.tree_util.register_pytree_node_class
class GaussianResolution(ResolutionFunction):
    r"""Gaussian resolution with an energy-dependent width:

    .. math::
        \sigma(x) = \sqrt{a^2 x^2 + b^2 x + c^2}

    i.e. constant, stochastic and noise terms added in quadrature.
    The measured value is distributed as Norm(x, sigma(x)).
    """

    n_coefficients = 3

    def width(self, true_value, sumet=None):
        a, b, c = self.coefficients
        # The stochastic term can drive the variance negative for x < 0
        variance = a**2 * true_value**2 + b**2 * true_value + c**2
        return safe_sqrt(variance)

    def log_density(self, true_value, measured_value, sumet=None):
        sigma = self.width(true_value)
        valid = sigma > 0
        # Keep the pdf finite for invalid widths, the caller ignores it anyway
        safe_sigma = jnp.where(valid, sigma, 1.)
        log_p = jax.scipy.stats.norm.logpdf(
            measured_value, loc=true_value, scale=safe_sigma)
        return log_p, valid


@export
@jax.tree_util.register_pytree_node_class
class DoubleGaussianResolution(ResolutionFunction):
    """Sum of two Gaussians in the relative response dx = (x - x_meas) / x.

    Ten coefficients p0..p9 give parameters linear in the true value x:
        mean1 = p0 + p1 x,    sigma1 = p2 + p3 x,
        amp2  = p4 + p5 x,
        mean2 = p6 + p7 x,    sigma2 = p8 + p9 x

    The density is normalized in the measured value, hence the 1/x Jacobian.
    """

    n_coefficients = 10

    def _shape(self, x):
        p = self.coefficients
        return (
            p[0] + p[1] * x,
            p[2] + p[3] * x,
            p[4] + p[5] * x,
            p[6] + p[7] * x,
            p[8] + p[9] * x)

    def width(self, true_value, sumet=None):
        _, sigma1, amp2, _, sigma2 = self._shape(true_value)
        # Amplitude-weighted width of the two components, in absolute units
        rel = (sigma1 + amp2 * sigma2) / (1 + amp2)
        return jnp.abs(true_value * rel)

    def log_density(self, true_value, measured_value, sumet=None):
        x = true_value
        mean1, sigma1, amp2, mean2, sigma2 = self._shape(x)
        valid = (sigma1 > 0) & (sigma2 > 0) & (amp2 >= 0) & (x > 0)
        sigma1 = jnp.where(valid, sigma1, 1.)
        sigma2 = jnp.where(valid, sigma2, 1.)
        amp2 = jnp.where(valid, amp2, 0.)
        x = jnp.where(valid, x, 1.)

        dx = (x - measured_value) / x
        log_g1 = -0.5 * ((dx - mean1) / sigma1)**2
        log_g2 = -0.5 * ((dx - mean2) / sigma2)**2
        # Each Gaussian carries its own width in the normalization, so
        # amp2 is the ratio of peak heights rather than of areas
        log_p = (
            jnp.logaddexp(log_g1, jnp.log(amp2) + log_g2)
            - 0.5 * jnp.log(2 * jnp.pi)
            - jnp.log(sigma1 + amp2 * sigma2)
            - jnp.log(x))
        return log_p, valid
