import logging

import jax
import numpy as np
import pytest
from scipy import integrate, stats

import topfit
from topfit import MeasuredObject


def make_registry():
    jets = ((1.7, 3.2, 4.9),
            [topfit.GaussianResolution((0.05, 1., 3. + i)) for i in range(3)])
    leptons = ((0.5, 1.5, 2.5),
               [topfit.GaussianResolution((0.01, 0., 1.)) for _ in range(3)])
    met = ((np.inf,), [topfit.MissingETResolution((5., 10., 0.01, 500.))])
    return topfit.ResolutionRegistry(
        dict(light_jet=jets, b_jet=jets, electron=leptons, muon=leptons,
             met=met),
        name='test')


def jet(pt, eta, phi, mass=0.):
    p = pt * np.cosh(eta)
    return MeasuredObject.from_pt_eta_phi_e(
        pt, eta, phi, e=np.sqrt(p**2 + mass**2))


def make_event(lq1_region=None):
    lq1 = jet(60., 0.3, 0.2)
    if lq1_region is not None:
        lq1 = lq1._replace(region=lq1_region)
    met_pt, met_phi = 45., -0.3
    return topfit.Event(
        bhad=jet(70., 0.8, -2.0, mass=4.7),
        blep=jet(80., -1.0, 1.0, mass=4.7),
        lq1=lq1,
        lq2=jet(40., -0.5, 2.5),
        lepton=jet(50., 0.1, -1.0),
        met_x=met_pt * np.cos(met_phi),
        met_y=met_pt * np.sin(met_phi),
        sumet=400.)


def make_likelihood(**config):
    lh = topfit.TopLeptonJetsLikelihood(
        make_registry(), topfit.LikelihoodConfig(**config))
    lh.set_event(make_event())
    return lh


def test_initial_parameters_finite():
    lh = make_likelihood(top_mass_fixed=True)
    params = lh.initial_parameters()
    assert params.shape == (topfit.N_PARAMETERS,)
    ll = lh.log_likelihood(params)
    assert np.isfinite(ll)
    assert ll > topfit.INVALID_LOG_DENSITY / 2


def test_components_sum():
    for top_mass_fixed in (True, False):
        lh = make_likelihood(top_mass_fixed=top_mass_fixed)
        params = lh.initial_parameters()
        for shift in (np.zeros(9), np.linspace(-3, 3, 9)):
            p = params + shift
            components = lh.log_likelihood_components(p)
            assert tuple(components.keys()) == topfit.COMPONENT_NAMES
            np.testing.assert_allclose(
                sum(components.values()), lh.log_likelihood(p), rtol=1e-5)

        components = lh.log_likelihood_components(params)
        if top_mass_fixed:
            assert components['bw_thad'] == components['bw_tlep'] == 0
        else:
            assert components['bw_thad'] != 0
            assert components['bw_tlep'] != 0


def test_transfer_function_terms():
    lh = make_likelihood()
    event = lh.event
    params = lh.initial_parameters()
    params[2] += 3
    components = lh.log_likelihood_components(params)

    res = lh.resolutions.lq1
    fit_e = params[2]
    sigma = np.sqrt(0.05**2 * fit_e**2 + fit_e + 3.**2)
    np.testing.assert_allclose(res.width(fit_e), sigma, rtol=1e-6)
    np.testing.assert_allclose(
        components['tf_lq1'],
        stats.norm.logpdf(event.lq1.e, loc=fit_e, scale=sigma),
        rtol=1e-5)

    np.testing.assert_allclose(
        components['tf_met_x'],
        stats.norm.logpdf(
            event.met_x, loc=params[5],
            scale=5 + 10 / (1 + np.exp(-0.01 * (400 - 500)))),
        rtol=1e-5)


def test_breit_wigner_normalized():
    m = np.linspace(0, 2000, 400_001)
    for pole, width in ((80.4, 2.1), (172.5, 1.33)):
        density = np.exp(np.asarray(topfit.log_breit_wigner(m, pole, width)))
        np.testing.assert_allclose(
            integrate.trapezoid(density, m), 1, rtol=1e-2)
        assert m[np.argmax(density)] == pytest.approx(pole, abs=0.01)


def test_top_width():
    np.testing.assert_allclose(topfit.top_width(172.5, 80.4), 1.33, atol=0.01)
    assert topfit.PhysicsConstants().gamma_top == topfit.top_width(172.5, 80.4)


def test_define_parameters():
    lh = make_likelihood(top_mass_fixed=True)
    event = lh.event
    bounds = lh.define_parameters()
    assert tuple(b.name for b in bounds) == topfit.PARAMETER_NAMES
    for b in bounds:
        assert b.lower <= b.upper
        assert b.step >= 0

    for i, role in enumerate(topfit.JET_ROLES):
        e = getattr(event, role).e
        assert bounds[i].lower == pytest.approx(max(0.5 * e, lh.masses[i]))
        assert bounds[i].upper == pytest.approx(1.5 * e)
    assert bounds[0].lower >= 4.7

    met = np.hypot(event.met_x, event.met_y)
    assert bounds[5].lower == pytest.approx(event.met_x - 100.)
    assert bounds[6].upper == pytest.approx(event.met_y + 100.)
    assert bounds[7].upper == pytest.approx(max(1000., 2 * met))

    top = bounds[8]
    mass_top = topfit.PhysicsConstants().mass_top
    assert top.lower == top.upper == mass_top
    assert top.step == 0

    floating = make_likelihood().define_parameters()[8]
    assert (floating.lower, floating.upper) == (100., 1000.)


def test_bounds_from_resolution():
    lh = make_likelihood(bounds_from_resolution=True)
    event = lh.event
    bounds = lh.define_parameters()

    e = event.lq2.e
    sigma = float(lh.resolutions.lq2.width(e))
    assert bounds[3].lower == pytest.approx(max(0, e - 10 * sigma), rel=1e-5)
    assert bounds[3].upper == pytest.approx(e + 10 * sigma, rel=1e-5)

    # MET width is 10 at sumet = 500, a bit less at 400
    met_sigma = float(lh.resolutions.met.width(0., sumet=400.))
    assert bounds[5].upper - bounds[5].lower == pytest.approx(
        20 * met_sigma, rel=1e-5)


def test_initial_parameters():
    lh = make_likelihood()
    event = lh.event
    params = lh.initial_parameters()
    np.testing.assert_allclose(
        params[:5],
        [event.bhad.e, event.blep.e, event.lq1.e, event.lq2.e, event.lepton.e])
    np.testing.assert_allclose(params[5:7], [event.met_x, event.met_y])

    solutions = topfit.neutrino_pz_solutions(
        event.lepton, event.met_x, event.met_y, 80.4)
    np.testing.assert_allclose(params[7], topfit.default_neutrino_pz(solutions))

    thad = topfit.invariant_mass(event.bhad.p4 + event.lq1.p4 + event.lq2.p4)
    np.testing.assert_allclose(params[8], thad, rtol=1e-5)

    assert lh.initial_parameters(solve_neutrino_pz=False)[7] == 0

    bounds = lh.define_parameters()
    for x, b in zip(params, bounds):
        assert b.lower <= x <= b.upper


def test_reconstruct():
    lh = make_likelihood()
    event = lh.event
    params = lh.initial_parameters()
    kin = lh.reconstruct(params)

    # At the measured energies, the measured four-momenta come back
    np.testing.assert_allclose(kin.lq1, event.lq1.p4, rtol=1e-5)
    np.testing.assert_allclose(kin.bhad, event.bhad.p4, rtol=1e-5)
    np.testing.assert_allclose(
        kin.neutrino[0], np.linalg.norm(params[5:8]), rtol=1e-5)
    np.testing.assert_allclose(
        kin.whad_m, topfit.invariant_mass(event.lq1.p4 + event.lq2.p4),
        rtol=1e-4)

    # Rescaling the energy keeps the direction and the rest mass
    params[0] *= 1.2
    kin = lh.reconstruct(params)
    np.testing.assert_allclose(topfit.invariant_mass(kin.bhad), 4.7, rtol=1e-2)
    np.testing.assert_allclose(
        np.arctan2(kin.bhad[2], kin.bhad[1]), event.bhad.phi, rtol=1e-5)

    params[0] = 3.
    with pytest.raises(topfit.KinematicsError):
        lh.reconstruct(params)


def test_invalid_terms():
    lh = make_likelihood()
    params = lh.initial_parameters()

    # b-jet energy below the b-quark mass
    params[0] = 3.
    components = lh.log_likelihood_components(params)
    assert components['tf_bhad'] == topfit.INVALID_LOG_DENSITY
    assert components['tf_blep'] != topfit.INVALID_LOG_DENSITY
    assert np.isfinite(lh.log_likelihood(params))

    params = lh.initial_parameters()
    params[4] = -10.
    assert (lh.log_likelihood_components(params)['tf_lepton']
            == topfit.INVALID_LOG_DENSITY)

    # A resolution function that does not apply
    jets = ((5.,), [topfit.GaussianResolution((0, 0, 0))])
    registry = make_registry()
    broken = topfit.ResolutionRegistry(
        dict(light_jet=jets,
             b_jet=(registry.boundaries('b_jet'), registry.functions('b_jet')),
             electron=(registry.boundaries('electron'),
                       registry.functions('electron')),
             met=(registry.boundaries('met'), registry.functions('met'))))
    lh = topfit.TopLeptonJetsLikelihood(broken)
    lh.set_event(make_event())
    components = lh.log_likelihood_components(lh.initial_parameters())
    assert components['tf_lq1'] == topfit.INVALID_LOG_DENSITY
    assert components['tf_lq2'] == topfit.INVALID_LOG_DENSITY


def test_contract_violations():
    lh = topfit.TopLeptonJetsLikelihood(make_registry())
    with pytest.raises(RuntimeError):
        lh.log_likelihood(np.ones(9))
    with pytest.raises(RuntimeError):
        lh.define_parameters()

    lh.set_event(make_event())
    params = lh.initial_parameters()
    with pytest.raises(ValueError):
        lh.log_likelihood(params[:8])
    with pytest.raises(ValueError):
        lh.log_likelihood(np.concatenate([params, [1.]]))

    with pytest.raises(ValueError):
        topfit.LikelihoodConfig(lepton_kind='tau')
    with pytest.raises(ValueError):
        topfit.LikelihoodConfig(energy_window=1.5)


def test_muons():
    lh = make_likelihood(lepton_kind='muon', bounds_from_resolution=True)
    event = lh.event
    params = lh.initial_parameters()
    assert np.isfinite(lh.log_likelihood(params))

    # Muons are compared in transverse momentum
    params[4] *= 1.1
    pt_fit = params[4] * float(event.lepton.sintheta)
    sigma = float(lh.resolutions.lepton.width(pt_fit))
    np.testing.assert_allclose(
        lh.log_likelihood_components(params)['tf_lepton'],
        stats.norm.logpdf(float(event.lepton.pt), loc=pt_fit, scale=sigma),
        rtol=1e-5)


def test_region_out_of_range(caplog):
    lh = topfit.TopLeptonJetsLikelihood(make_registry())
    with caplog.at_level(logging.WARNING, logger='topfit.detectors'):
        lh.set_event(make_event(lq1_region=5.5))
    assert 'outermost bin' in caplog.text
    assert lh.resolutions.lq1 is lh.registry.functions('light_jet')[-1]
    assert np.isfinite(lh.log_likelihood(lh.initial_parameters()))


def test_use_jet_mass():
    lh = make_likelihood(use_jet_mass=True)
    np.testing.assert_allclose(lh.masses[:2], 4.7, rtol=1e-3)
    np.testing.assert_allclose(lh.masses[2:], 0, atol=0.1)


def test_gradient():
    lh = make_likelihood(top_mass_fixed=True)
    params = lh.initial_parameters()
    grad = lh.grad_log_likelihood(params)
    assert grad.shape == (9,)
    assert np.all(np.isfinite(grad))

    # Only the transfer function depends on the hadronic b energy
    params[0] += 10
    assert lh.grad_log_likelihood(params)[0] < 0
    params[0] -= 20
    assert lh.grad_log_likelihood(params)[0] > 0

    # Light jet at zero energy, inside the bounds from the resolution
    params = lh.initial_parameters()
    params[2] = 0.
    assert np.all(np.isfinite(lh.grad_log_likelihood(params)))

    # Hadronic b below its rest mass still enters the top Breit-Wigner
    lh = make_likelihood()
    params = lh.initial_parameters()
    params[0] = 3.
    assert lh.log_likelihood(params) < topfit.INVALID_LOG_DENSITY / 2
    assert np.all(np.isfinite(lh.grad_log_likelihood(params)))

    # Neutrino at rest
    params = lh.initial_parameters()
    params[5:8] = 0.
    assert np.all(np.isfinite(lh.grad_log_likelihood(params)))


def test_safe_sqrt():
    x = np.array([-1., 0., 4.])
    np.testing.assert_array_equal(topfit.safe_sqrt(x), [0., 0., 2.])
    grad = jax.vmap(jax.grad(topfit.safe_sqrt))(x)
    np.testing.assert_array_equal(grad, [0., 0., 0.25])


def test_permutations():
    lh = make_likelihood()
    assert lh.remove_invariant_permutations(0, 24) == 1
    assert lh.remove_invariant_permutations(1, 24) == 0
    assert len(lh.unique_permutations(120)) == 60


def test_new_event():
    lh = make_likelihood()
    ll_1 = lh.log_likelihood(lh.initial_parameters())

    event = make_event()
    swapped = event._replace(lq1=event.lq2, lq2=event.lq1)
    lh.set_event(swapped)
    # Light quarks share the resolution function here, so the
    # swapped assignment gives the same likelihood
    np.testing.assert_allclose(
        lh.log_likelihood(lh.initial_parameters()), ll_1, rtol=1e-5)
