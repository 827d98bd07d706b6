import numpy as np
import pytest
import matplotlib
matplotlib.use('Agg')

from synthetic_data import generate_noisy_sinusoid, SyntheticPaleoSeries
from utils.data_loader import ObservationSet


@pytest.fixture
def sinusoid_dataset():
    return generate_noisy_sinusoid(n_points=50, period=100.0, noise_level=0.3, random_seed=42)


@pytest.fixture
def sinusoid_observations(sinusoid_dataset):
    return SyntheticPaleoSeries.to_observations(sinusoid_dataset)


@pytest.fixture
def linear_observations():
    rng = np.random.default_rng(1)
    x = np.linspace(0, 500, 60)
    y = 0.01 * x + rng.normal(0, 0.05, len(x))
    return ObservationSet(x, y, covariate_name='Year', response_name='value')
