"""Selection of resolution functions by object kind and detector region.

A detector layout is plain data: eta bin boundaries per object kind, and
where to find the coefficients for each bin. Loading a layout gives a
ResolutionRegistry, which does the actual lookup.
"""
import dataclasses
import logging
from pathlib import Path

import numpy as np

import topfit
from topfit.exceptions import RegionOutOfRangeError, ResolutionConfigError
from topfit.resolutions import FORMS
export, __all__ = topfit.exporter()

log = logging.getLogger(__name__)

#: Object kinds known to the likelihoods
OBJECT_KINDS = ('light_jet', 'b_jet', 'electron', 'muon', 'met')
__all__ += ['OBJECT_KINDS']


@export
class ResolutionRegistry:
    """Resolution functions of one detector, binned in |region|.

    Arguments:
        bins: dict mapping object kind to (boundaries, functions).
            boundaries are the strictly ascending upper edges of the
            |region| bins, one per resolution function. Bin i covers
            boundaries[i-1] <= |region| < boundaries[i].
        name: name of the detector, for messages only.

    The registry is read-only after construction and can be shared between
    likelihoods.
    """

    def __init__(self, bins, name=''):
        self.name = name
        self._bins = dict()
        for kind, (boundaries, functions) in bins.items():
            boundaries = np.array(boundaries, dtype=float)
            functions = tuple(functions)
            if not len(functions):
                raise ResolutionConfigError(f"No resolution functions for {kind}")
            if len(boundaries) != len(functions):
                raise ResolutionConfigError(
                    f"{kind}: {len(boundaries)} bin boundaries "
                    f"for {len(functions)} resolution functions")
            if np.any(np.diff(boundaries) <= 0) or boundaries[0] <= 0:
                raise ResolutionConfigError(
                    f"{kind}: bin boundaries {boundaries} are not "
                    "positive and strictly ascending")
            boundaries.setflags(write=False)
            self._bins[kind] = (boundaries, functions)

    def __repr__(self):
        return f"ResolutionRegistry({self.name!r}, kinds={self.kinds})"

    @property
    def kinds(self):
        return tuple(self._bins.keys())

    def boundaries(self, kind):
        return self._lookup(kind)[0]

    def functions(self, kind):
        return self._lookup(kind)[1]

    def _lookup(self, kind):
        try:
            return self._bins[kind]
        except KeyError:
            raise ResolutionConfigError(
                f"Detector {self.name!r} has no resolution functions "
                f"for {kind!r}; it has {self.kinds}") from None

    def bin_index(self, kind, region):
        """Return index of the bin of |region| for object kind

        Raises RegionOutOfRangeError if |region| is beyond the last bin.
        """
        boundaries, _ = self._lookup(kind)
        index = int(np.searchsorted(boundaries, abs(float(region)), side='right'))
        if index >= len(boundaries):
            raise RegionOutOfRangeError(
                f"|region| = {abs(float(region))} for {kind} exceeds "
                f"the last bin boundary {boundaries[-1]}")
        return index

    def resolution_for(self, kind, region=0.):
        """Return resolution function for object kind at region

        Regions beyond the last bin get the last bin's function,
        with a warning.
        """
        _, functions = self._lookup(kind)
        try:
            return functions[self.bin_index(kind, region)]
        except RegionOutOfRangeError as e:
            log.warning(f"{self.name}: {e}, using the outermost bin")
            return functions[-1]


@export
@dataclasses.dataclass(frozen=True)
class DetectorLayout:
    """Bin boundaries and coefficient file names of a detector.

    Coefficient files are looked up in a folder as
    ``{prefix}_eta{i}.txt`` for i = 1, 2, ... and ``{met_file}``.
    """

    name: str
    jet_bins: tuple
    electron_bins: tuple
    muon_bins: tuple

    jet_prefix: str = 'par_energy_jets'
    electron_prefix: str = 'par_pt_electrons'
    muon_prefix: str = 'par_pt_muons'
    met_file: str = 'par_misset.txt'

    jet_form: str = 'gauss'
    lepton_form: str = 'gauss'
    met_form: str = 'met'

    def _load_binned(self, folder, prefix, form, boundaries):
        cls = _form(form)
        return (
            boundaries,
            [cls.from_file(folder / f'{prefix}_eta{i + 1}.txt')
             for i in range(len(boundaries))])

    def load(self, folder):
        """Return ResolutionRegistry with coefficients read from folder"""
        folder = Path(folder)
        log.debug(f"Loading {self.name} resolution functions from {folder}")
        jets = self._load_binned(
            folder, self.jet_prefix, self.jet_form, self.jet_bins)
        bins = dict(
            light_jet=jets,
            b_jet=jets,
            electron=self._load_binned(
                folder, self.electron_prefix, self.lepton_form,
                self.electron_bins),
            muon=self._load_binned(
                folder, self.muon_prefix, self.lepton_form, self.muon_bins),
            met=((np.inf,), [_form(self.met_form).from_file(
                folder / self.met_file)]))
        return ResolutionRegistry(bins, name=self.name)


def _form(name):
    try:
        return FORMS[name]
    except KeyError:
        raise ResolutionConfigError(
            f"Unknown resolution form {name!r}, "
            f"options are {tuple(FORMS)}") from None


ATLAS_DELPHES = DetectorLayout(
    name='atlas_delphes',
    jet_bins=(1.7, 3.2, 4.9),
    electron_bins=(0.5, 1.5, 2.5),
    muon_bins=(0.5, 1.5, 2.5))

CMS_DELPHES = DetectorLayout(
    name='cms_delphes',
    jet_bins=(3.0, 5.0),
    electron_bins=(0.5, 1.5, 2.5),
    muon_bins=(0.5, 1.5, 2.5))

LAYOUTS = {layout.name: layout for layout in (ATLAS_DELPHES, CMS_DELPHES)}
__all__ += ['ATLAS_DELPHES', 'CMS_DELPHES', 'LAYOUTS']


@export
def load_layout(name, folder):
    """Return ResolutionRegistry for the named detector layout,
    with coefficients read from folder.
    """
    try:
        layout = LAYOUTS[name]
    except KeyError:
        raise ResolutionConfigError(
            f"Unknown detector layout {name!r}, "
            f"options are {tuple(LAYOUTS)}") from None
    return layout.load(folder)
