"""Measured objects, four-vector arithmetic and resonance line shapes.

Four-momenta are (E, px, py, pz) arrays along the last axis. Everything here
works on jax arrays, so it can be used inside jitted likelihood code.
"""
import math
import typing as ty

import jax
import jax.numpy as jnp
import numpy as np

import topfit
export, __all__ = topfit.exporter()


@export
def top_width(mass_top, mass_w, alpha_s=0.118, g_fermi=1.16637e-5):
    """Return the top-quark decay width in GeV, for t -> W b

    Leading-order width with first-order QCD correction.

    Arguments:
        mass_top: top-quark mass (GeV)
        mass_w: W-boson mass (GeV)
        alpha_s: strong coupling at the top mass scale
        g_fermi: Fermi constant (GeV^-2)
    """
    r = (mass_w / mass_top)**2
    lo = g_fermi * mass_top**3 / (8 * math.pi * math.sqrt(2))
    qcd = 1 - 2 * alpha_s / (3 * math.pi) * (2 * math.pi**2 / 3 - 5 / 2)
    return lo * (1 - r)**2 * (1 + 2 * r) * qcd


@export
class PhysicsConstants(ty.NamedTuple):
    """Pole masses and widths in GeV"""
    mass_w: float = 80.4
    gamma_w: float = 2.1
    mass_top: float = 172.5
    gamma_top: float = top_width(172.5, 80.4)
    mass_bottom: float = 4.7


@export
class MeasuredObject(ty.NamedTuple):
    """A reconstructed detector object: jet, charged lepton, ...

    Momenta in GeV. region is the detector pseudorapidity used to select
    resolution functions; it can differ from the physics eta of the momentum.
    """
    e: float
    px: float
    py: float
    pz: float
    region: float = 0.

    @classmethod
    def from_pt_eta_phi_e(cls, pt, eta, phi, e, region=None):
        if region is None:
            region = eta
        return cls(
            e=float(e),
            px=float(pt * np.cos(phi)),
            py=float(pt * np.sin(phi)),
            pz=float(pt * np.sinh(eta)),
            region=float(region))

    @property
    def p4(self):
        return jnp.stack([self.e, self.px, self.py, self.pz])

    @property
    def p(self):
        return jnp.sqrt(self.px**2 + self.py**2 + self.pz**2)

    @property
    def pt(self):
        return jnp.hypot(self.px, self.py)

    @property
    def sintheta(self):
        return self.pt / self.p

    @property
    def eta(self):
        return jnp.arcsinh(self.pz / self.pt)

    @property
    def phi(self):
        return jnp.arctan2(self.py, self.px)

    @property
    def m(self):
        return invariant_mass(self.p4)


@export
def safe_sqrt(x):
    """Return sqrt(x) for x > 0 and zero elsewhere.

    The gradient is zero, not NaN, where x <= 0.
    """
    positive = x > 0
    return jnp.where(positive, jnp.sqrt(jnp.where(positive, x, 1.)), 0.)


@export
def invariant_mass(p4):
    """Return invariant mass of (..., 4) four-momenta.
    Spacelike vectors (from rounding errors) give zero.
    """
    m2 = p4[..., 0]**2 - jnp.sum(p4[..., 1:]**2, axis=-1)
    return safe_sqrt(m2)


@export
def with_energy(obj, energy, mass):
    """Return (four-momentum, valid) of an object with the direction of
    the measured obj, but with the given energy and rest mass.

    valid is False if the energy is below the rest mass; the momentum is then
    set to zero.
    """
    valid = energy >= mass
    p = safe_sqrt(energy**2 - mass**2)
    scale = p / obj.p
    p4 = jnp.stack([energy, obj.px * scale, obj.py * scale, obj.pz * scale])
    return p4, valid


@export
@jax.jit
def log_breit_wigner(mass, pole_mass, width):
    r"""Return log of the normalized relativistic Breit-Wigner density

    .. math::
        f(m) = \frac{k}{(m^2 - M^2)^2 + M^2 \Gamma^2}

    with :math:`k = 2\sqrt{2} M \Gamma \gamma / (\pi \sqrt{M^2 + \gamma})`
    and :math:`\gamma = \sqrt{M^2 (M^2 + \Gamma^2)}`.
    """
    m2 = pole_mass**2
    gamma = jnp.sqrt(m2 * (m2 + width**2))
    log_k = (
        jnp.log(2 * jnp.sqrt(2.) * pole_mass * width * gamma)
        - jnp.log(jnp.pi * jnp.sqrt(m2 + gamma)))
    return log_k - jnp.log((mass**2 - m2)**2 + m2 * width**2)
