"""
Tests for the covariance families used by GP smooths.
"""

import numpy as np
import pytest

from kernels.covariance_families import (
    Matern, SquaredExponential, family_from_name, resolve_families, validate_range
)


X = np.linspace(0, 100, 11)


def test_unit_variance_on_diagonal():
    for family in (Matern(0.5), Matern(1.5), Matern(2.5), SquaredExponential()):
        covar = family.covariance(X, X, 25.0)
        assert covar.shape == (11, 11)
        assert np.allclose(np.diag(covar), 1.0)
        assert np.allclose(covar, covar.T)


def test_matern15_closed_form():
    d = np.abs(X[:, None] - X[None, :])
    rho = 30.0
    expected = (1 + np.sqrt(3) * d / rho) * np.exp(-np.sqrt(3) * d / rho)

    assert np.allclose(Matern(1.5).covariance(X, X, rho), expected, atol=1e-8)


def test_exponential_closed_form():
    d = np.abs(X[:, None] - X[None, :])
    expected = np.exp(-d / 20.0)

    assert np.allclose(Matern(0.5).covariance(X, X, 20.0), expected, atol=1e-8)


def test_squared_exponential_closed_form():
    d = np.abs(X[:, None] - X[None, :])
    rho = 40.0
    expected = np.exp(-d ** 2 / (2 * rho ** 2))

    assert np.allclose(SquaredExponential().covariance(X, X, rho), expected, atol=1e-8)


def test_cross_covariance_shape():
    covar = Matern(1.5).covariance(X, X[:4], 10.0)
    assert covar.shape == (11, 4)


def test_correlation_grows_with_range():
    family = Matern(1.5)
    short = family.covariance(X, X, 5.0)[0, 1]
    long = family.covariance(X, X, 500.0)[0, 1]
    assert long > short


def test_family_names_and_equality():
    assert Matern(1.5).name == 'matern1.5'
    assert Matern(2.5).name == 'matern2.5'
    assert SquaredExponential().name == 'squared_exponential'
    assert Matern(1.5) == Matern(1.5)
    assert Matern(1.5) != Matern(2.5)
    assert len({Matern(1.5), Matern(1.5), SquaredExponential()}) == 2


def test_unsupported_matern_order():
    with pytest.raises(ValueError):
        Matern(1.0)


@pytest.mark.parametrize("name, expected", [
    ('matern1.5', Matern(1.5)),
    ('Matern52', Matern(2.5)),
    ('exponential', Matern(0.5)),
    ('squared-exponential', SquaredExponential()),
    ('RBF', SquaredExponential()),
])
def test_family_from_name(name, expected):
    assert family_from_name(name) == expected


def test_family_from_unknown_name():
    with pytest.raises(ValueError):
        family_from_name('spherical')


@pytest.mark.parametrize("bad", [0, -1.0, np.nan, np.inf, 'abc', None])
def test_validate_range_rejects(bad):
    with pytest.raises(ValueError):
        validate_range(bad)


def test_validate_range_accepts():
    assert validate_range(np.float32(12.5)) == 12.5


def test_resolve_families_list_keeps_order():
    families = resolve_families(['squared_exponential', Matern(1.5)])
    assert list(families) == ['squared_exponential', 'matern1.5']


def test_resolve_families_dict():
    families = resolve_families({'smooth': SquaredExponential(), 'rough': 'matern0.5'})
    assert list(families) == ['smooth', 'rough']
    assert families['rough'] == Matern(0.5)


def test_resolve_families_rejects_duplicates_and_empty():
    with pytest.raises(ValueError):
        resolve_families(['matern1.5', 'matern32'])
    with pytest.raises(ValueError):
        resolve_families([])
