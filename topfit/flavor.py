"""Reweighting of permutations with jet flavour information.

Up-type and down-type light quarks share a resolution function, so the
kinematic likelihood cannot tell them apart. Their transverse momentum and
b-tagging weight distributions do differ, which can be used to weight the
permutations. The distributions are injected as callables returning a
density; BinnedDensity and BinnedDensity2D are simple histogram-based ones.
"""
import dataclasses
import typing as ty

import numpy as np

import topfit
from topfit.exceptions import ResolutionConfigError
export, __all__ = topfit.exporter()

METHODS = ('none', 'pt_and_tag', 'pt_and_tag_2d')
__all__ += ['METHODS']


@export
class BinnedDensity:
    """Histogram lookup: density at x is the content of the bin containing x,
    zero outside the binned range.

    Arguments:
        edges: bin edges, (n_bins + 1,) array
        values: bin contents, (n_bins,) array
    """

    def __init__(self, edges, values):
        self.edges = np.asarray(edges, dtype=float)
        self.values = np.asarray(values, dtype=float)
        if self.edges.shape != (len(self.values) + 1,):
            raise ResolutionConfigError(
                f"{len(self.edges)} bin edges for {len(self.values)} bins")

    @classmethod
    def from_samples(cls, samples, bins=50, range=None, weights=None):
        values, edges = np.histogram(
            samples, bins=bins, range=range, weights=weights, density=True)
        return cls(edges, values)

    def __call__(self, x):
        return self.evaluate(x)

    def evaluate(self, x):
        index = _bin_index(self.edges, x)
        return np.where(index >= 0, self.values[np.maximum(index, 0)], 0.)


@export
class BinnedDensity2D:
    """Two-dimensional histogram lookup, zero outside the binned range"""

    def __init__(self, x_edges, y_edges, values):
        self.x_edges = np.asarray(x_edges, dtype=float)
        self.y_edges = np.asarray(y_edges, dtype=float)
        self.values = np.asarray(values, dtype=float)
        if self.values.shape != (len(x_edges) - 1, len(y_edges) - 1):
            raise ResolutionConfigError(
                f"Histogram of shape {self.values.shape} does not match "
                f"{len(x_edges)} x edges and {len(y_edges)} y edges")

    @classmethod
    def from_samples(cls, x, y, bins=20, range=None, weights=None):
        values, x_edges, y_edges = np.histogram2d(
            x, y, bins=bins, range=range, weights=weights, density=True)
        return cls(x_edges, y_edges, values)

    def __call__(self, x, y):
        return self.evaluate(x, y)

    def evaluate(self, x, y):
        ix = _bin_index(self.x_edges, x)
        iy = _bin_index(self.y_edges, y)
        inside = (ix >= 0) & (iy >= 0)
        return np.where(
            inside, self.values[np.maximum(ix, 0), np.maximum(iy, 0)], 0.)


def _bin_index(edges, x):
    """Return index of the bin containing x, -1 if outside"""
    x = np.asarray(x, dtype=float)
    n = len(edges) - 1
    index = np.searchsorted(edges, x, side='right') - 1
    # The last edge belongs to the last bin, as in np.histogram
    index = np.where(x == edges[-1], n - 1, index)
    return np.where((index >= 0) & (index < n), index, -1)


@export
class JetInfo(ty.NamedTuple):
    """Flavour-related observables of one jet"""
    pt: float
    tag_weight: float


@export
@dataclasses.dataclass(frozen=True, kw_only=True)
class FlavorReweighting:
    """Weights permutations by how well the jets in each role match
    the pt and b-tag weight distributions of b, up and down quark jets.

    method:
        'none': no reweighting
        'pt_and_tag': product of 1D pt and tag weight densities
        'pt_and_tag_2d': 2D densities of (tag weight, pt)
    """

    method: str = 'none'

    up_pt: ty.Callable = None
    down_pt: ty.Callable = None
    b_pt: ty.Callable = None
    up_tag_weight: ty.Callable = None
    down_tag_weight: ty.Callable = None
    b_tag_weight: ty.Callable = None

    up_2d: ty.Callable = None
    down_2d: ty.Callable = None
    b_2d: ty.Callable = None

    def __post_init__(self):
        if self.method not in METHODS:
            raise ResolutionConfigError(
                f"Unknown flavour reweighting {self.method!r}, "
                f"options are {METHODS}")
        if self.method == 'pt_and_tag':
            required = ('up_pt', 'down_pt', 'b_pt',
                        'up_tag_weight', 'down_tag_weight', 'b_tag_weight')
        elif self.method == 'pt_and_tag_2d':
            required = ('up_2d', 'down_2d', 'b_2d')
        else:
            required = tuple()
        missing = [name for name in required if getattr(self, name) is None]
        if missing:
            raise ResolutionConfigError(
                f"Flavour reweighting {self.method!r} needs densities {missing}")

    @property
    def distinguishes_light_quarks(self):
        return self.method != 'none'

    def probability(self, flavor, jet):
        """Return density of a jet (JetInfo) under a flavour hypothesis:
        'up', 'down' or 'b'.
        """
        if self.method == 'pt_and_tag':
            return (
                getattr(self, f'{flavor}_pt')(jet.pt)
                * getattr(self, f'{flavor}_tag_weight')(jet.tag_weight))
        if self.method == 'pt_and_tag_2d':
            return getattr(self, f'{flavor}_2d')(jet.tag_weight, jet.pt)
        return 1.

    def log_weight(self, jets):
        """Return log weight of a permutation

        Arguments:
            jets: JetInfo (or (pt, tag_weight) pairs) of the jets assigned to
                hadronic b, leptonic b, light quark 1 (up) and
                light quark 2 (down), in that order.
        """
        if self.method == 'none':
            return 0.
        bhad, blep, lq1, lq2 = [JetInfo(*jet) for jet in jets]
        p = np.array([
            self.probability('b', bhad),
            self.probability('b', blep),
            self.probability('up', lq1),
            self.probability('down', lq2)], dtype=float)
        with np.errstate(divide='ignore'):
            return float(np.sum(np.log(p)))
