"""
Low-Rank Gaussian Process Smooth Basis

Builds the design matrix and penalty of a Gaussian process (kriging) smooth of
a single covariate, following the low-rank construction of Kammann & Wand
(2003): the covariance matrix among the knots is eigen-decomposed, the leading
components are kept and the covariance between data and knots is projected
onto them. A linear trend is included as an unpenalized null space.

The GP coefficients are rescaled by the inverse square root of their
eigenvalues so the penalty on them is the identity matrix.
"""

import numpy as np

from kernels.covariance_families import CovarianceFamily, validate_range
from models.errors import FitConvergenceError


# Columns of the unpenalized null space: intercept and linear trend
N_NULL_SPACE = 2


class GPSmoothSpec:
    """
    Specification of a GP smooth: covariance family, range and basis size.

    A spec is cheap to create and holds no data; `construct` evaluates it
    against a set of covariate values.
    """

    def __init__(
        self,
        family: CovarianceFamily,
        range_: float,
        k: int = 30,
        max_knots: int = 2000,
        eigen_tol: float = 1e-10
    ):
        """
        Args:
            family: Covariance family of the smooth
            range_: Correlation length in covariate units
            k: Basis dimension, including the two null space columns
            max_knots: Maximum number of knots (unique covariate values are
                sub-sampled evenly above this)
            eigen_tol: Relative eigenvalue tolerance below which covariance
                components are dropped
        """
        if int(k) < N_NULL_SPACE + 1:
            raise ValueError(f"Basis dimension k must be at least {N_NULL_SPACE + 1}, got {k}")

        self.family = family
        self.range_ = validate_range(range_)
        self.k = int(k)
        self.max_knots = int(max_knots)
        self.eigen_tol = eigen_tol

    def construct(self, x: np.ndarray) -> 'GPSmoothBasis':
        """Build the basis for the covariate values `x`."""
        return GPSmoothBasis(self, x)

    def __repr__(self):
        return f"GPSmoothSpec(family={self.family!r}, range_={self.range_:g}, k={self.k})"


def select_knots(x: np.ndarray, max_knots: int) -> np.ndarray:
    """
    Choose knots as the unique covariate values, evenly thinned to `max_knots`.

    Args:
        x: Covariate values
        max_knots: Maximum number of knots

    Returns:
        Sorted knot locations
    """
    unique_x = np.unique(x)
    if len(unique_x) <= max_knots:
        return unique_x

    idx = np.round(np.linspace(0, len(unique_x) - 1, max_knots)).astype(int)
    return unique_x[np.unique(idx)]


class GPSmoothBasis:
    """
    A GP smooth evaluated at a set of training covariate values.

    Attributes:
        design: Model matrix at the training covariate values, shape (n, p)
        penalty: Penalty matrix, shape (p, p)
        n_null: Dimension of the unpenalized null space
        rank: Rank of the penalty (number of retained GP components)
    """

    def __init__(self, spec: GPSmoothSpec, x: np.ndarray):
        x = np.asarray(x, dtype=np.float64).ravel()

        self.spec = spec
        self.family = spec.family
        self.range_ = spec.range_
        self.knots = select_knots(x, spec.max_knots)

        self.x_center = float(np.mean(x))
        x_scale = float(np.std(x))
        self.x_scale = x_scale if x_scale > 0 else 1.0

        knot_covar = self.family.covariance(self.knots, self.knots, self.range_)
        if not np.all(np.isfinite(knot_covar)):
            raise FitConvergenceError(
                f"Non-finite knot covariance for {self.family.name} at range {self.range_:g}",
                family=self.family.name, range_=self.range_
            )

        eigvals, eigvecs = np.linalg.eigh(knot_covar)
        order = np.argsort(eigvals)[::-1]
        eigvals = eigvals[order]
        eigvecs = eigvecs[:, order]

        n_gp = min(spec.k - N_NULL_SPACE, len(self.knots))
        if eigvals[0] <= 0:
            n_keep = 0
        else:
            n_keep = int(np.sum(eigvals[:n_gp] > spec.eigen_tol * eigvals[0]))

        if n_keep == 0:
            raise FitConvergenceError(
                f"Knot covariance is numerically rank zero for {self.family.name} "
                f"at range {self.range_:g}",
                family=self.family.name, range_=self.range_
            )

        self.eigenvalues = eigvals[:n_keep]
        self.projection = eigvecs[:, :n_keep] / np.sqrt(self.eigenvalues)

        self.n_null = N_NULL_SPACE
        self.rank = n_keep
        self.design = self.predict_matrix(x)

        n_coef = self.n_null + self.rank
        self.penalty = np.zeros((n_coef, n_coef))
        self.penalty[self.n_null:, self.n_null:] = np.eye(self.rank)

    @property
    def n_coef(self) -> int:
        return self.n_null + self.rank

    def predict_matrix(self, x: np.ndarray) -> np.ndarray:
        """
        Evaluate the basis functions at new covariate values.

        Args:
            x: Covariate values, shape (m,)

        Returns:
            Matrix of shape (m, p) whose rows map coefficients to f(x)
        """
        x = np.asarray(x, dtype=np.float64).ravel()

        null_space = np.column_stack([
            np.ones_like(x),
            (x - self.x_center) / self.x_scale
        ])
        cross_covar = self.family.covariance(x, self.knots, self.range_)

        return np.hstack([null_space, cross_covar @ self.projection])

    def __repr__(self):
        return (f"GPSmoothBasis(family={self.family!r}, range_={self.range_:g}, "
                f"n_knots={len(self.knots)}, rank={self.rank})")
