"""Common machinery for resolution (transfer) functions.

A resolution function models the probability density of measuring a value,
given the true value of the same quantity. Concrete forms only need to
implement ``width`` and ``log_density``; everything else is shared.
"""
from pathlib import Path

import jax.numpy as jnp
import numpy as np

import topfit
from topfit.exceptions import ResolutionConfigError
export, __all__ = topfit.exporter()


@export
def read_coefficients(path, n_expected):
    """Return coefficients read from a whitespace-separated text file

    Raises ResolutionConfigError if the file can't be parsed or
    does not contain exactly n_expected numbers.
    """
    path = Path(path)
    try:
        coefficients = [float(x) for x in path.read_text().split()]
    except (OSError, ValueError) as e:
        raise ResolutionConfigError(
            f"Could not read resolution coefficients from {path}: {e}") from e
    if len(coefficients) != n_expected:
        raise ResolutionConfigError(
            f"{path} contains {len(coefficients)} coefficients, "
            f"expected {n_expected}")
    return coefficients


@export
class ResolutionFunction:
    """Probability density of a measured value given a true value.

    Subclasses set n_coefficients and implement width and log_density.
    Instances are immutable and registered as jax pytrees (with the
    coefficients as the only leaf), so they can be passed to jitted functions
    and shared freely between likelihoods.
    """

    n_coefficients = None

    def __init__(self, coefficients):
        coefficients = np.asarray(coefficients, dtype=float).ravel()
        if len(coefficients) != self.n_coefficients:
            raise ResolutionConfigError(
                f"{self.__class__.__name__} takes {self.n_coefficients} "
                f"coefficients, got {len(coefficients)}")
        coefficients.setflags(write=False)
        self.coefficients = coefficients

    @classmethod
    def from_file(cls, path):
        return cls(read_coefficients(path, cls.n_coefficients))

    def __repr__(self):
        return f"{self.__class__.__name__}({list(self.coefficients)})"

    # pytree protocol

    def tree_flatten(self):
        return (self.coefficients,), None

    @classmethod
    def tree_unflatten(cls, aux_data, children):
        # Bypass __init__: inside jit the children are tracers
        obj = object.__new__(cls)
        obj.coefficients = children[0]
        return obj

    # Functions to override in child classes

    def width(self, true_value, sumet=None):
        """Return the resolution (standard deviation) at true_value"""
        raise NotImplementedError

    def log_density(self, true_value, measured_value, sumet=None):
        """Return (log density of measured_value given true_value, valid)

        If valid is False the model does not apply, and the density must not
        be used (it is not the same as a zero density).
        """
        raise NotImplementedError

    def density(self, true_value, measured_value, sumet=None):
        """Return (density of measured_value given true_value, valid)"""
        log_p, valid = self.log_density(true_value, measured_value, sumet=sumet)
        return jnp.exp(log_p), valid
