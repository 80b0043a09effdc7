"""Kinematic likelihood for top-quark pairs in the lepton+jets channel.

The decay is tt -> (b q q') (b l nu): the hadronic top decays to a b quark
and a W boson decaying to two light quarks, the leptonic top to a b quark and
a W boson decaying to a charged lepton and a neutrino. One likelihood
evaluation tests one assignment of detector objects to these roles.

The fit parameters are the true energies of the four jets and the lepton,
the neutrino momentum and the top-quark mass. Directions of the measured
objects are not fitted. The likelihood is the product of resolution function
densities for every measured quantity and relativistic Breit-Wigner densities
for the W boson and top quark masses.
"""
import dataclasses
from functools import partial
import logging
import typing as ty

import jax
import jax.numpy as jnp
import numpy as np

import topfit
from topfit.exceptions import KinematicsError
from topfit.flavor import FlavorReweighting
from topfit.kinematics import (
    MeasuredObject, PhysicsConstants, invariant_mass, log_breit_wigner,
    safe_sqrt, with_energy)
from topfit.neutrino import default_neutrino_pz, neutrino_pz_solutions
from topfit.permutations import PermutationFilter
export, __all__ = topfit.exporter()

log = logging.getLogger(__name__)

PARAMETER_NAMES = (
    'energy_bhad', 'energy_blep', 'energy_lq1', 'energy_lq2',
    'energy_lepton', 'nu_px', 'nu_py', 'nu_pz', 'top_mass')
N_PARAMETERS = len(PARAMETER_NAMES)

JET_ROLES = ('bhad', 'blep', 'lq1', 'lq2')

COMPONENT_NAMES = (
    'tf_bhad', 'tf_blep', 'tf_lq1', 'tf_lq2', 'tf_lepton',
    'tf_met_x', 'tf_met_y',
    'bw_whad', 'bw_wlep', 'bw_thad', 'bw_tlep')

# Log density substituted for terms whose model does not apply
INVALID_LOG_DENSITY = -1e10

# Smallest lepton energy (GeV) allowed in the fit
MIN_LEPTON_ENERGY = 1e-3

__all__ += ['PARAMETER_NAMES', 'N_PARAMETERS', 'JET_ROLES', 'COMPONENT_NAMES',
            'INVALID_LOG_DENSITY', 'MIN_LEPTON_ENERGY']


@export
class Event(ty.NamedTuple):
    """Measured objects assigned to the roles of one permutation,
    and the missing transverse energy of the event.
    """
    bhad: MeasuredObject
    blep: MeasuredObject
    lq1: MeasuredObject
    lq2: MeasuredObject
    lepton: MeasuredObject
    met_x: float
    met_y: float
    sumet: float


@export
class ParameterBounds(ty.NamedTuple):
    name: str
    lower: float
    upper: float
    step: float


@export
class ReconstructedKinematics(ty.NamedTuple):
    """Fitted (E, px, py, pz) four-momenta and resonance candidate masses"""
    bhad: ty.Any
    blep: ty.Any
    lq1: ty.Any
    lq2: ty.Any
    lepton: ty.Any
    neutrino: ty.Any
    whad_m: ty.Any
    wlep_m: ty.Any
    thad_m: ty.Any
    tlep_m: ty.Any


class RoleResolutions(ty.NamedTuple):
    bhad: ty.Any
    blep: ty.Any
    lq1: ty.Any
    lq2: ty.Any
    lepton: ty.Any
    met: ty.Any


@export
@dataclasses.dataclass(frozen=True, kw_only=True)
class LikelihoodConfig:
    """Options of TopLeptonJetsLikelihood

    Arguments:
        lepton_kind: 'electron' or 'muon'. Electrons are compared in energy,
            muons in transverse momentum.
        top_mass_fixed: fix the top mass parameter to constants.mass_top,
            and drop the top-quark Breit-Wigner terms.
        bounds_from_resolution: derive energy and neutrino bounds from the
            resolution widths, rather than from energy_window and the
            neutrino_range settings.
        use_jet_mass: use the measured jet masses as rest masses, instead of
            the b-quark mass for b jets and zero for light jets.
        energy_window: energy bounds are E * (1 -/+ energy_window) unless
            bounds_from_resolution is set.
        n_sigmas_jet, n_sigmas_lepton, n_sigmas_met: half-width of the
            bounds in resolution widths, if bounds_from_resolution is set.
        neutrino_range_min, neutrino_range_scale: the neutrino px and py
            bounds are the measured missing energy components plus or minus
            max(neutrino_range_min, neutrino_range_scale * MET).
        neutrino_pz_limit: the neutrino pz bounds are plus or minus
            max(neutrino_pz_limit, neutrino_range_scale * MET).
        top_mass_range: bounds of the top mass parameter, unless fixed.
        constants: pole masses and widths.
    """
    lepton_kind: str = 'electron'
    top_mass_fixed: bool = False
    bounds_from_resolution: bool = False
    use_jet_mass: bool = False

    energy_window: float = 0.5
    n_sigmas_jet: float = 10.
    n_sigmas_lepton: float = 10.
    n_sigmas_met: float = 10.
    neutrino_range_min: float = 100.
    neutrino_range_scale: float = 2.
    neutrino_pz_limit: float = 1000.
    top_mass_range: tuple = (100., 1000.)

    constants: PhysicsConstants = PhysicsConstants()

    def __post_init__(self):
        if self.lepton_kind not in ('electron', 'muon'):
            raise ValueError(
                f"lepton_kind must be 'electron' or 'muon', "
                f"not {self.lepton_kind!r}")
        if not 0 < self.energy_window < 1:
            raise ValueError(
                f"energy_window must be between 0 and 1, "
                f"not {self.energy_window}")

    @property
    def muon(self):
        return self.lepton_kind == 'muon'


def _reconstruct(parameters, event, masses):
    """Return (ReconstructedKinematics, (5,) array of validity flags for
    the jet and lepton energies)
    """
    p4s, valid = dict(), []
    for i, role in enumerate(JET_ROLES):
        p4s[role], ok = with_energy(getattr(event, role), parameters[i], masses[i])
        valid.append(ok)
    # Leptons and neutrinos are massless
    p4s['lepton'], ok = with_energy(event.lepton, parameters[4], 0.)
    valid.append(ok & (parameters[4] > 0))
    nu_p = parameters[5:8]
    p4s['neutrino'] = jnp.concatenate([
        safe_sqrt(jnp.sum(nu_p**2))[None], nu_p])

    whad = p4s['lq1'] + p4s['lq2']
    wlep = p4s['lepton'] + p4s['neutrino']
    kinematics = ReconstructedKinematics(
        **p4s,
        whad_m=invariant_mass(whad),
        wlep_m=invariant_mass(wlep),
        thad_m=invariant_mass(whad + p4s['bhad']),
        tlep_m=invariant_mass(wlep + p4s['blep']))
    return kinematics, jnp.stack(valid)


_reconstruct_jit = jax.jit(_reconstruct)


@partial(jax.jit, static_argnames=('muon', 'top_mass_fixed'))
def _log_likelihood_terms(
        parameters, event, masses, resolutions, constants,
        muon, top_mass_fixed):
    """Return (n_components,) array of log likelihood terms,
    in the order of COMPONENT_NAMES.
    """
    kin, valid = _reconstruct(parameters, event, masses)

    def transfer(resolution, fit, measured, ok=True, **kwargs):
        log_p, applies = resolution.log_density(fit, measured, **kwargs)
        return jnp.where(applies & ok, log_p, INVALID_LOG_DENSITY)

    terms = [
        transfer(getattr(resolutions, role), parameters[i],
                 getattr(event, role).e, valid[i])
        for i, role in enumerate(JET_ROLES)]

    lepton = event.lepton
    if muon:
        terms.append(transfer(
            resolutions.lepton, parameters[4] * lepton.sintheta, lepton.pt,
            valid[4]))
    else:
        terms.append(transfer(
            resolutions.lepton, parameters[4], lepton.e, valid[4]))

    terms += [
        transfer(resolutions.met, parameters[5], event.met_x, sumet=event.sumet),
        transfer(resolutions.met, parameters[6], event.met_y, sumet=event.sumet),
        log_breit_wigner(kin.whad_m, constants.mass_w, constants.gamma_w),
        log_breit_wigner(kin.wlep_m, constants.mass_w, constants.gamma_w)]

    if top_mass_fixed:
        terms += [jnp.zeros(()), jnp.zeros(())]
    else:
        terms += [
            log_breit_wigner(kin.thad_m, parameters[8], constants.gamma_top),
            log_breit_wigner(kin.tlep_m, parameters[8], constants.gamma_top)]
    return jnp.stack(terms)


@partial(jax.jit, static_argnames=('muon', 'top_mass_fixed'))
def _grad_log_likelihood(
        parameters, event, masses, resolutions, constants,
        muon, top_mass_fixed):
    def total(p):
        return jnp.sum(_log_likelihood_terms(
            p, event, masses, resolutions, constants,
            muon=muon, top_mass_fixed=top_mass_fixed))
    return jax.grad(total)(parameters)


@export
class TopLeptonJetsLikelihood:
    """Likelihood of one jet-to-parton assignment of a lepton+jets event,
    as a function of the parameter vector (see PARAMETER_NAMES).

    Usage: construct once per sampling chain, then for every permutation
    call set_event, and pass log_likelihood, define_parameters and
    initial_parameters to the sampler.

    Arguments:
        registry: ResolutionRegistry with resolution functions for
            'b_jet', 'light_jet', 'met' and the configured lepton kind.
        config: LikelihoodConfig
        flavor: optional FlavorReweighting, used by log_event_probability.
            If it distinguishes up- from down-type jets, the light quark
            permutations are no longer equivalent.

    Instances are not thread-safe; the registry can be shared.
    """

    def __init__(self, registry, config=None, flavor=None):
        self.registry = registry
        self.config = LikelihoodConfig() if config is None else config
        self.flavor = FlavorReweighting() if flavor is None else flavor
        if self.flavor.distinguishes_light_quarks:
            self.permutation_filter = PermutationFilter(swap=None)
        else:
            self.permutation_filter = PermutationFilter(
                swap=(JET_ROLES.index('lq1'), JET_ROLES.index('lq2')))
        self.event = None
        self.resolutions = None
        self.masses = None

    def set_event(self, event):
        """Set the measured objects of the permutation to evaluate,
        and select their resolution functions.
        """
        c = self.config
        resolution_for = self.registry.resolution_for
        self.resolutions = RoleResolutions(
            bhad=resolution_for('b_jet', event.bhad.region),
            blep=resolution_for('b_jet', event.blep.region),
            lq1=resolution_for('light_jet', event.lq1.region),
            lq2=resolution_for('light_jet', event.lq2.region),
            lepton=resolution_for(c.lepton_kind, event.lepton.region),
            met=resolution_for('met'))
        self.masses = np.array([
            self._rest_mass(event.bhad, c.constants.mass_bottom),
            self._rest_mass(event.blep, c.constants.mass_bottom),
            self._rest_mass(event.lq1, 0.),
            self._rest_mass(event.lq2, 0.)])
        self.event = event
        log.debug(f"Event set, jet rest masses {self.masses}")

    def _rest_mass(self, obj, default):
        if self.config.use_jet_mass:
            return max(0., float(obj.m))
        return default

    def _require_event(self):
        if self.event is None:
            raise RuntimeError("No event set, call set_event first")

    def _check_parameters(self, parameters):
        self._require_event()
        parameters = np.asarray(parameters, dtype=float)
        if parameters.shape != (N_PARAMETERS,):
            raise ValueError(
                f"Expected {N_PARAMETERS} parameters {PARAMETER_NAMES}, "
                f"got array of shape {parameters.shape}")
        return parameters

    def _args(self, parameters):
        return (
            self._check_parameters(parameters),
            self.event,
            self.masses,
            self.resolutions,
            self.config.constants)

    def _kwargs(self):
        return dict(
            muon=self.config.muon,
            top_mass_fixed=self.config.top_mass_fixed)

    # Parameters

    def define_parameters(self):
        """Return tuple of ParameterBounds, one per parameter"""
        self._require_event()
        c = self.config
        event = self.event
        res = self.resolutions

        bounds = []
        for i, role in enumerate(JET_ROLES):
            energy = float(getattr(event, role).e)
            bounds.append(self._energy_bounds(
                energy,
                rest_mass=self.masses[i],
                sigma=lambda: float(getattr(res, role).width(energy)),
                n_sigmas=c.n_sigmas_jet))

        lepton = event.lepton
        energy = float(lepton.e)
        if c.muon:
            # Muon resolution is in pt, convert to energy
            sigma = lambda: float(
                res.lepton.width(lepton.pt) / lepton.sintheta)
        else:
            sigma = lambda: float(res.lepton.width(energy))
        bounds.append(self._energy_bounds(
            energy,
            rest_mass=MIN_LEPTON_ENERGY,
            sigma=sigma,
            n_sigmas=c.n_sigmas_lepton))

        met = float(np.hypot(event.met_x, event.met_y))
        if c.bounds_from_resolution:
            half_range = c.n_sigmas_met * float(
                res.met.width(event.sumet, sumet=event.sumet))
        else:
            half_range = max(c.neutrino_range_min, c.neutrino_range_scale * met)
        bounds += [
            (event.met_x - half_range, event.met_x + half_range),
            (event.met_y - half_range, event.met_y + half_range)]
        pz_limit = max(c.neutrino_pz_limit, c.neutrino_range_scale * met)
        bounds.append((-pz_limit, pz_limit))

        if c.top_mass_fixed:
            bounds.append((c.constants.mass_top, c.constants.mass_top))
        else:
            bounds.append(tuple(c.top_mass_range))

        return tuple(
            ParameterBounds(
                name=name,
                lower=float(lower),
                upper=float(upper),
                step=float(upper - lower) / 20)
            for name, (lower, upper) in zip(PARAMETER_NAMES, bounds))

    def _energy_bounds(self, energy, rest_mass, sigma, n_sigmas):
        """Return (lower, upper) bounds for an energy parameter.
        sigma is a function returning the resolution at the measured energy.
        """
        if self.config.bounds_from_resolution:
            half_range = n_sigmas * sigma()
            lower, upper = energy - half_range, energy + half_range
        else:
            w = self.config.energy_window
            lower, upper = energy * (1 - w), energy * (1 + w)
        lower = max(lower, rest_mass)
        return lower, max(upper, lower)

    def initial_parameters(self, solve_neutrino_pz=True):
        """Return (N_PARAMETERS,) array of starting values for the fit.

        Energies and the neutrino transverse momentum are taken from the
        measurement. The neutrino pz is the W-mass constrained solution with
        the smallest magnitude, or zero if there is no real solution
        (or if solve_neutrino_pz is False). Values are clipped to the bounds.
        """
        self._require_event()
        c = self.config
        event = self.event
        values = np.zeros(N_PARAMETERS)
        for i, role in enumerate(JET_ROLES):
            values[i] = getattr(event, role).e
        values[4] = event.lepton.e
        values[5] = event.met_x
        values[6] = event.met_y
        if solve_neutrino_pz:
            solutions = neutrino_pz_solutions(
                event.lepton, event.met_x, event.met_y, c.constants.mass_w)
            if not solutions:
                log.debug("No real neutrino pz solution, starting at pz = 0")
            values[7] = default_neutrino_pz(solutions)
        if c.top_mass_fixed:
            values[8] = c.constants.mass_top
        else:
            values[8] = invariant_mass(
                event.bhad.p4 + event.lq1.p4 + event.lq2.p4)

        bounds = self.define_parameters()
        return np.clip(
            values,
            [b.lower for b in bounds],
            [b.upper for b in bounds])

    # Evaluation

    def reconstruct(self, parameters):
        """Return ReconstructedKinematics for parameters.

        Raises KinematicsError if an energy is below the object's rest mass.
        """
        parameters, event, masses, _, _ = self._args(parameters)
        kinematics, valid = _reconstruct_jit(parameters, event, masses)
        valid = np.asarray(valid)
        if not np.all(valid):
            bad = [name for name, ok in zip(PARAMETER_NAMES, valid) if not ok]
            raise KinematicsError(
                f"Parameters {bad} are below the rest mass of their object")
        return ReconstructedKinematics(*[np.asarray(x) for x in kinematics])

    def log_likelihood_terms(self, parameters):
        """Return (n_components,) array of log likelihood terms,
        in the order of COMPONENT_NAMES.
        """
        return _log_likelihood_terms(*self._args(parameters), **self._kwargs())

    def log_likelihood(self, parameters):
        """Return log likelihood of parameters"""
        return float(jnp.sum(self.log_likelihood_terms(parameters)))

    def log_likelihood_components(self, parameters):
        """Return dict mapping COMPONENT_NAMES to their log likelihood terms.
        The terms sum to log_likelihood(parameters).
        """
        terms = np.asarray(self.log_likelihood_terms(parameters))
        return {name: float(x) for name, x in zip(COMPONENT_NAMES, terms)}

    def grad_log_likelihood(self, parameters):
        """Return gradient of the log likelihood with respect to parameters"""
        return np.asarray(
            _grad_log_likelihood(*self._args(parameters), **self._kwargs()))

    def log_event_probability(self, parameters, jets=None):
        """Return log likelihood plus the flavour reweighting term.

        Arguments:
            parameters: parameter vector, usually the best fit.
            jets: (pt, tag_weight) of the jets assigned to hadronic b,
                leptonic b, light quark 1 and light quark 2. Required if
                flavour reweighting is enabled.
        """
        result = self.log_likelihood(parameters)
        if self.flavor.method == 'none':
            return result
        if jets is None:
            raise ValueError(
                f"Flavour reweighting {self.flavor.method!r} needs "
                "the pt and tag weight of the jets")
        return result + self.flavor.log_weight(jets)

    # Permutations

    def remove_invariant_permutations(self, permutation_index, n_permutations):
        """Return index of the permutation with the same likelihood as
        permutation_index, or None if there is none.
        """
        return self.permutation_filter.partner_of(
            permutation_index, n_permutations)

    def unique_permutations(self, n_permutations, progress=False):
        """Return list of permutation indices, with the higher index of
        each pair of equivalent permutations removed.
        """
        return list(self.permutation_filter.unique(
            n_permutations, progress=progress))
