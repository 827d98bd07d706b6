"""
Tests for penalized GP smooth fitting with REML and GCV.
"""

import numpy as np
import pytest
from scipy import stats

from kernels.covariance_families import Matern, SquaredExponential
from models.errors import DegenerateWeightError, FitConvergenceError
from models.gp_smooth import GPSmoothSpec
from models.penalized_spline import PenalizedSplineFitter, fit, predict, simulate


X_NEW = np.linspace(0, 500, 100)


@pytest.fixture
def model(sinusoid_observations):
    spec = GPSmoothSpec(Matern(1.5), 50.0, k=20)
    return PenalizedSplineFitter(criterion='REML').fit(sinusoid_observations, spec)


def test_fit_attributes(model, sinusoid_observations):
    assert model.criterion == 'REML'
    assert np.isfinite(model.criterion_score)
    assert model.smoothing_parameter > 0
    assert model.scale > 0
    assert 2.0 - 1e-8 <= model.edf <= model.basis.n_coef + 1e-8
    assert model.family == 'matern1.5'
    assert model.range_ == 50.0
    assert model.fitted_values.shape == (len(sinusoid_observations),)
    assert np.allclose(model.residuals, sinusoid_observations.y - model.fitted_values)


def test_fit_recovers_sinusoid(model, sinusoid_dataset):
    mean, _ = model.predict(sinusoid_dataset['x'])
    rmse = np.sqrt(np.mean((mean - sinusoid_dataset['truth']) ** 2))
    assert rmse < sinusoid_dataset['noise_level']


def test_fit_is_deterministic(sinusoid_observations):
    spec = GPSmoothSpec(Matern(1.5), 50.0, k=20)
    first = fit(sinusoid_observations, spec)
    second = fit(sinusoid_observations, spec)

    assert first.criterion_score == second.criterion_score
    assert np.array_equal(first.coefficients, second.coefficients)


def test_predict_standard_errors(model):
    mean, se = predict(model, X_NEW)
    assert mean.shape == se.shape == X_NEW.shape
    assert np.all(se >= 0)
    assert np.all(np.isfinite(mean))


def test_simulate_shape_and_seed(model):
    draws = simulate(model, 5, X_NEW, random_state=3)
    assert draws.shape == (5, len(X_NEW))
    assert np.array_equal(draws, model.simulate(5, X_NEW, random_state=3))
    assert not np.array_equal(draws, model.simulate(5, X_NEW, random_state=4))


def test_simulate_rejects_zero_draws(model):
    with pytest.raises(ValueError):
        model.simulate(0, X_NEW)


def test_simulated_mean_tracks_fit(model):
    draws = model.simulate(4000, X_NEW, random_state=0)
    mean, se = model.predict(X_NEW)
    assert np.all(np.abs(draws.mean(axis=0) - mean) < 5 * se / np.sqrt(4000) + 1e-10)


def test_confidence_interval(model):
    ci = model.confidence_interval(X_NEW, level=0.95)
    crit = stats.norm.ppf(0.975)
    assert np.allclose(ci['upper'] - ci['mean'], crit * ci['se'])
    assert np.all(ci['lower'] <= ci['upper'])


def test_simultaneous_interval_wider_than_pointwise(model):
    pointwise = model.confidence_interval(X_NEW, level=0.95)
    simultaneous = model.simultaneous_interval(X_NEW, level=0.95, n_sim=2000, random_state=1)

    assert simultaneous['critical_value'] > stats.norm.ppf(0.975)
    assert np.all(simultaneous['lower'] <= pointwise['lower'] + 1e-12)
    assert np.all(simultaneous['upper'] >= pointwise['upper'] - 1e-12)


def test_derivatives_follow_sinusoid(model):
    deriv = model.derivatives(X_NEW)
    truth = 2 * np.pi / 100.0 * np.cos(2 * np.pi * X_NEW / 100.0)

    assert deriv['derivative'].shape == X_NEW.shape
    assert np.all(deriv['se'] >= 0)
    assert np.corrcoef(deriv['derivative'], truth)[0, 1] > 0.8


def test_periods_of_change_on_linear_trend(linear_observations):
    model = fit(linear_observations, GPSmoothSpec(Matern(1.5), 100.0, k=15))
    periods = model.periods_of_change(np.linspace(0, 500, 200))

    assert len(periods) >= 1
    assert all(p['direction'] == 'increasing' for p in periods)
    assert all(p['start'] <= p['end'] for p in periods)


def test_gcv_criterion(sinusoid_observations):
    spec = GPSmoothSpec(SquaredExponential(), 60.0, k=20)
    model = PenalizedSplineFitter(criterion='gcv').fit(sinusoid_observations, spec)

    assert model.criterion == 'GCV'
    assert np.isfinite(model.criterion_score)
    assert model.criterion_score > 0


def test_criterion_override(sinusoid_observations):
    spec = GPSmoothSpec(Matern(1.5), 50.0, k=15)
    model = PenalizedSplineFitter(criterion='REML').fit(sinusoid_observations, spec, criterion='GCV')
    assert model.criterion == 'GCV'


def test_unknown_criterion():
    with pytest.raises(ValueError):
        PenalizedSplineFitter(criterion='AIC')


@pytest.mark.parametrize("bad", [0.0, -1.0, np.nan])
def test_degenerate_weights(sinusoid_observations, bad):
    weights = np.ones(len(sinusoid_observations))
    weights[7] = bad
    spec = GPSmoothSpec(Matern(1.5), 50.0, k=15)

    with pytest.raises(DegenerateWeightError):
        PenalizedSplineFitter().fit(sinusoid_observations, spec, weights=weights)


def test_weights_change_the_fit(sinusoid_observations):
    spec = GPSmoothSpec(Matern(1.5), 50.0, k=15)
    weights = np.linspace(0.2, 2.0, len(sinusoid_observations))

    unweighted = PenalizedSplineFitter().fit(sinusoid_observations, spec)
    weighted = PenalizedSplineFitter().fit(sinusoid_observations, spec, weights=weights)

    assert not np.allclose(unweighted.coefficients, weighted.coefficients)


def test_time_limit_raises_convergence_error(sinusoid_observations):
    spec = GPSmoothSpec(Matern(1.5), 50.0, k=15)

    with pytest.raises(FitConvergenceError) as info:
        PenalizedSplineFitter(time_limit=0.0).fit(sinusoid_observations, spec)

    assert info.value.family == 'matern1.5'
    assert info.value.range_ == 50.0


def test_summary_keys(model):
    summary = model.summary()
    for key in ('family', 'range', 'criterion', 'criterion_score', 'edf', 'scale', 'n_obs'):
        assert key in summary


def test_reml_prefers_a_plausible_basis(model, sinusoid_observations):
    # A very long squared exponential range cannot follow a 100-year cycle
    poor = fit(sinusoid_observations, GPSmoothSpec(SquaredExponential(), 5000.0, k=20))
    assert model.criterion_score < poor.criterion_score
