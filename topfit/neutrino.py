"""Longitudinal neutrino momentum from a W-boson mass constraint"""
import numpy as np

import topfit
export, __all__ = topfit.exporter()

# Discriminants within this fraction of b**2 + |4ac| count as zero,
# i.e. the two roots are considered one
DEGENERATE_TOLERANCE = 1e-12


@export
def neutrino_pz_solutions(lepton, met_x, met_y, mass, extra=None):
    """Return list of neutrino pz values for which the lepton and neutrino
    have invariant mass `mass`.

    The neutrino is massless, with transverse momentum equal to the missing
    transverse energy (met_x, met_y). Returns an empty list if there is no
    real solution, one value if the solutions are degenerate, and two values
    (in no particular order) otherwise.

    Arguments:
        lepton: charged lepton, anything with e, px, py, pz attributes
            (e.g. a MeasuredObject)
        met_x, met_y: missing transverse energy components
        mass: invariant mass to impose, usually the W pole mass
        extra: optional (E, px, py, pz) four-momentum added to the lepton,
            e.g. a radiated photon.
    """
    p4 = np.array([lepton.e, lepton.px, lepton.py, lepton.pz], dtype=float)
    if extra is not None:
        p4 = p4 + np.asarray(extra, dtype=float)
    e, px, py, pz = p4
    m2_lepton = e**2 - px**2 - py**2 - pz**2

    alpha = mass**2 - m2_lepton + 2 * (px * met_x + py * met_y)
    a = pz**2 - e**2
    b = alpha * pz
    c = -e**2 * (met_x**2 + met_y**2) + alpha**2 / 4

    if a == 0:
        # Lepton along the beam line: the quadratic term vanishes
        if b == 0:
            return []
        return [float(-c / b)]

    discriminant = b**2 - 4 * a * c
    tolerance = DEGENERATE_TOLERANCE * (b**2 + abs(4 * a * c))
    if discriminant < -tolerance:
        return []
    offset = -b / (2 * a)
    if discriminant <= tolerance:
        return [float(offset)]
    root = np.sqrt(discriminant)
    return [float(offset + root / (2 * a)), float(offset - root / (2 * a))]


@export
def default_neutrino_pz(solutions):
    """Return the solution with the smallest magnitude, or 0 if there is none"""
    if not len(solutions):
        return 0.
    return float(min(solutions, key=abs))
