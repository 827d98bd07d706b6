"""
Covariance Families for GP Smooths

- covariance_families.py: Matérn and squared-exponential families evaluated
  with GPyTorch kernels
"""

from .covariance_families import (
    CovarianceFamily,
    Matern,
    SquaredExponential,
    family_from_name,
    resolve_families
)

__all__ = [
    'CovarianceFamily',
    'Matern',
    'SquaredExponential',
    'family_from_name',
    'resolve_families'
]
