"""
Covariance Families for Gaussian Process Smooths

This module defines the stationary covariance families used to build low-rank
Gaussian process (kriging) smooths of palaeo time series. Each family is a small
descriptor holding its fixed structural parameters (e.g. the Matérn smoothness
order); the single free hyperparameter, the range (effective correlation
length), is supplied when the covariance matrix is evaluated so that one family
object can be reused across a whole profiling grid.

Covariance matrices are evaluated with GPyTorch kernels in double precision.
The range plays the role of the kernel lengthscale, expressed in covariate units
(e.g. years).
"""

import numpy as np
import torch
from gpytorch.kernels import Kernel, MaternKernel, RBFKernel
from typing import Dict, List, Union


SUPPORTED_MATERN_ORDERS = (0.5, 1.5, 2.5)


def _as_column_tensor(x: np.ndarray) -> torch.Tensor:
    """Convert a 1-D covariate array to an (n, 1) float64 tensor."""
    return torch.as_tensor(np.asarray(x, dtype=np.float64).reshape(-1, 1), dtype=torch.float64)


def validate_range(range_: float) -> float:
    """
    Check that a range value is a positive, finite number.

    Args:
        range_: Candidate range (correlation length)

    Returns:
        The range as a Python float
    """
    try:
        value = float(range_)
    except (TypeError, ValueError):
        raise ValueError(f"Range must be a number, got {range_!r}")

    if not np.isfinite(value) or value <= 0:
        raise ValueError(f"Range must be positive and finite, got {value}")

    return value


class CovarianceFamily:
    """
    Base class for covariance family descriptors.

    Subclasses provide `_make_kernel`, returning an un-parameterised GPyTorch
    kernel; the base class fixes its lengthscale to the requested range and
    evaluates it.
    """

    name = 'base'

    def _make_kernel(self) -> Kernel:
        raise NotImplementedError

    def kernel(self, range_: float) -> Kernel:
        """
        Build a GPyTorch kernel with its lengthscale fixed at `range_`.

        Args:
            range_: Correlation length in covariate units

        Returns:
            A double precision GPyTorch kernel in evaluation mode
        """
        range_ = validate_range(range_)

        kernel = self._make_kernel().double()
        kernel.lengthscale = torch.tensor(range_, dtype=torch.float64)
        kernel.raw_lengthscale.requires_grad_(False)
        kernel.eval()

        return kernel

    def covariance(self, x1: np.ndarray, x2: np.ndarray, range_: float) -> np.ndarray:
        """
        Evaluate the covariance matrix between two sets of covariate values.

        Args:
            x1: First set of covariate values, shape (n,)
            x2: Second set of covariate values, shape (m,)
            range_: Correlation length in covariate units

        Returns:
            Covariance matrix of shape (n, m)
        """
        kernel = self.kernel(range_)

        with torch.no_grad():
            covar = kernel(_as_column_tensor(x1), _as_column_tensor(x2)).to_dense()

        return covar.cpu().numpy()

    def __eq__(self, other):
        return isinstance(other, CovarianceFamily) and self.name == other.name

    def __hash__(self):
        return hash(self.name)

    def __repr__(self):
        return f"{type(self).__name__}()"


class Matern(CovarianceFamily):
    """
    Matérn covariance family with a fixed smoothness order.

    k(d) for nu = 1.5 is (1 + sqrt(3) d / rho) exp(-sqrt(3) d / rho), with
    rho the range; nu = 0.5 is the exponential covariance.
    """

    def __init__(self, nu: float = 1.5):
        """
        Args:
            nu: Smoothness order, one of 0.5, 1.5 or 2.5
        """
        nu = float(nu)
        if nu not in SUPPORTED_MATERN_ORDERS:
            raise ValueError(
                f"Unsupported Matérn order {nu}. Expected one of {SUPPORTED_MATERN_ORDERS}"
            )
        self.nu = nu

    @property
    def name(self) -> str:
        return f"matern{self.nu:g}"

    def _make_kernel(self) -> Kernel:
        return MaternKernel(nu=self.nu)

    def __repr__(self):
        return f"Matern(nu={self.nu:g})"


class SquaredExponential(CovarianceFamily):
    """
    Squared-exponential (Gaussian / RBF) covariance, exp(-d^2 / (2 rho^2)).
    """

    name = 'squared_exponential'

    def _make_kernel(self) -> Kernel:
        return RBFKernel()

    def __repr__(self):
        return "SquaredExponential()"


# Accepted spellings for command line and configuration files
_FAMILY_ALIASES = {
    'matern': lambda: Matern(1.5),
    'matern12': lambda: Matern(0.5),
    'matern0.5': lambda: Matern(0.5),
    'exponential': lambda: Matern(0.5),
    'matern32': lambda: Matern(1.5),
    'matern1.5': lambda: Matern(1.5),
    'matern52': lambda: Matern(2.5),
    'matern2.5': lambda: Matern(2.5),
    'squared_exponential': SquaredExponential,
    'squaredexponential': SquaredExponential,
    'se': SquaredExponential,
    'rbf': SquaredExponential,
    'gaussian': SquaredExponential,
}


def family_from_name(name: str) -> CovarianceFamily:
    """
    Create a covariance family from its name.

    Args:
        name: Family name such as 'matern1.5', 'matern52' or 'squared_exponential'

    Returns:
        CovarianceFamily instance
    """
    key = str(name).strip().lower().replace('-', '_').replace(' ', '_')
    if key not in _FAMILY_ALIASES:
        raise ValueError(
            f"Unknown covariance family: {name}. Expected one of: {sorted(_FAMILY_ALIASES)}"
        )
    return _FAMILY_ALIASES[key]()


def resolve_families(
    families: Union[Dict[str, CovarianceFamily], List[Union[str, CovarianceFamily]]]
) -> Dict[str, CovarianceFamily]:
    """
    Normalise a collection of families into an ordered name -> family mapping.

    Args:
        families: Mapping of names to families, or a list of families / names

    Returns:
        Ordered dictionary of families keyed by name
    """
    if isinstance(families, dict):
        resolved = {}
        for key, family in families.items():
            resolved[str(key)] = family if isinstance(family, CovarianceFamily) else family_from_name(family)
    else:
        resolved = {}
        for family in families:
            if not isinstance(family, CovarianceFamily):
                family = family_from_name(family)
            if family.name in resolved:
                raise ValueError(f"Duplicate covariance family: {family.name}")
            resolved[family.name] = family

    if len(resolved) == 0:
        raise ValueError("At least one covariance family is required")

    return resolved
