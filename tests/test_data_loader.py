"""
Tests for loading observations and exporting fitted trends.
"""

import numpy as np
import pandas as pd
import pytest

from models.errors import DegenerateWeightError
from utils.data_loader import (
    ObservationSet, weights_from_spans, load_observations, load_dataset, export_results
)


@pytest.fixture
def record():
    return pd.DataFrame({
        'Year': [1950.0, 1900.0, 1850.0, 1800.0, 1750.0],
        'UK37': [0.41, 0.45, 0.39, 0.36, 0.40],
        'YearYoung': [1955.0, 1910.0, 1855.0, 1810.0, 1760.0],
        'YearOld': [1945.0, 1890.0, 1845.0, 1790.0, 1740.0],
        'w': [1.0, 2.0, 1.0, 0.5, 1.5],
    })


def test_observation_set_is_sorted_and_read_only():
    obs = ObservationSet([3.0, 1.0, 2.0], [30.0, 10.0, 20.0], weights=[3.0, 1.0, 2.0])

    assert np.array_equal(obs.x, [1.0, 2.0, 3.0])
    assert np.array_equal(obs.y, [10.0, 20.0, 30.0])
    assert np.array_equal(obs.weights, [1.0, 2.0, 3.0])
    assert len(obs) == 3
    with pytest.raises(ValueError):
        obs.x[0] = 5.0


def test_observation_set_default_weights():
    obs = ObservationSet(np.arange(5.0), np.arange(5.0))
    assert np.all(obs.weights == 1.0)


@pytest.mark.parametrize("bad", [0.0, -2.0, np.nan, np.inf])
def test_observation_set_rejects_bad_weights(bad):
    with pytest.raises(DegenerateWeightError):
        ObservationSet(np.arange(4.0), np.arange(4.0), weights=[1.0, bad, 1.0, 1.0])


def test_observation_set_rejects_bad_input():
    with pytest.raises(ValueError):
        ObservationSet([1.0, 2.0], [1.0, 2.0])
    with pytest.raises(ValueError):
        ObservationSet([1.0, 2.0, 3.0], [1.0, 2.0])
    with pytest.raises(ValueError):
        ObservationSet([1.0, np.nan, 3.0], [1.0, 2.0, 3.0])


def test_weights_from_spans():
    weights = weights_from_spans([0.0, 10.0, 20.0], [10.0, 30.0, 50.0])
    assert np.isclose(weights.mean(), 1.0)
    assert np.allclose(weights, np.array([10.0, 20.0, 30.0]) / 20.0)


def test_weights_from_zero_spans():
    with pytest.raises(DegenerateWeightError):
        weights_from_spans([5.0, 6.0], [5.0, 6.0])


def test_load_csv_with_spans(tmp_path, record):
    path = tmp_path / 'braya.csv'
    record.to_csv(path, index=False)

    obs = load_observations(str(path), 'Year', 'UK37', span_columns=('YearYoung', 'YearOld'))

    assert len(obs) == 5
    assert obs.covariate_name == 'Year'
    assert obs.response_name == 'UK37'
    assert np.all(np.diff(obs.x) > 0)
    assert np.isclose(obs.weights.mean(), 1.0)
    # The 1900 sample spans 20 years, twice the others
    assert obs.weights[obs.x == 1900.0][0] > obs.weights[obs.x == 1950.0][0]


def test_load_weight_column(tmp_path, record):
    path = tmp_path / 'record.csv'
    record.to_csv(path, index=False)

    obs = load_observations(str(path), 'Year', 'UK37', weight_column='w')
    assert np.array_equal(obs.weights, record.sort_values('Year')['w'].values)


def test_load_weight_and_spans_conflict(tmp_path, record):
    path = tmp_path / 'record.csv'
    record.to_csv(path, index=False)

    with pytest.raises(ValueError):
        load_observations(str(path), 'Year', 'UK37', weight_column='w', span_columns=('YearYoung', 'YearOld'))


def test_load_text_and_pickle(tmp_path, record):
    txt = tmp_path / 'record.txt'
    record.to_csv(txt, sep=' ', index=False)
    pkl = tmp_path / 'record.pkl'
    record.to_pickle(pkl)

    from_txt = load_observations(str(txt), 'Year', 'UK37')
    from_pkl = load_observations(str(pkl), 'Year', 'UK37')

    assert np.allclose(from_txt.y, from_pkl.y)


def test_missing_values_dropped_with_warning(tmp_path, record):
    record.loc[2, 'UK37'] = np.nan
    path = tmp_path / 'record.csv'
    record.to_csv(path, index=False)

    with pytest.warns(UserWarning, match='Dropped 1 row'):
        obs = load_observations(str(path), 'Year', 'UK37')

    assert len(obs) == 4
    assert 1850.0 not in obs.x


def test_missing_column(tmp_path, record):
    path = tmp_path / 'record.csv'
    record.to_csv(path, index=False)

    with pytest.raises(ValueError, match='Columns not found'):
        load_observations(str(path), 'Age', 'UK37')


def test_unsupported_format(tmp_path):
    path = tmp_path / 'record.xlsx'
    path.write_text('')

    with pytest.raises(ValueError, match='Unsupported'):
        load_observations(str(path), 'Year', 'UK37')


def test_load_named_dataset(tmp_path):
    path = tmp_path / 'small-water.csv'
    pd.DataFrame({'Year': [2000.0, 1990.0, 1980.0, 1970.0], 'd15N': [1.0, 1.5, 2.0, 1.8]}).to_csv(path, index=False)

    obs = load_dataset('small_water', str(path))
    assert obs.response_name == 'd15N'
    assert len(obs) == 4

    with pytest.raises(ValueError):
        load_dataset('lake_nowhere', str(path))


def test_export_results(tmp_path):
    x = np.linspace(0, 10, 5)
    trends = {
        'matern1.5': {'x': x, 'mean': x * 2, 'se': np.ones(5)},
        'squared_exponential': {'x': x, 'mean': x * 3, 'se': np.ones(5)},
    }
    path = tmp_path / 'trends.csv'
    export_results(trends, str(path), covariate_name='Year')

    frame = pd.read_csv(path)
    assert list(frame.columns) == ['Year', 'family', 'mean', 'se']
    assert len(frame) == 10
    assert set(frame['family']) == set(trends)


def test_export_nothing(tmp_path):
    with pytest.raises(ValueError):
        export_results({}, str(tmp_path / 'empty.csv'))
