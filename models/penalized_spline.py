"""
Penalized Regression Spline Fitting with REML / GCV Smoothness Selection

This module fits a single penalized smooth of one covariate,

    y_i ~ N(f(x_i), phi / w_i),    f = X beta,

by penalized weighted least squares with penalty lambda * beta' S beta, where
the design X and penalty S come from a GP smooth basis. The smoothing
parameter lambda is chosen by minimising either

- REML: the negative restricted log-likelihood with the scale phi profiled out,
  0.5 * [(n - Mp)(log(2 pi phi) + 1) + log|X'WX + lambda S|
         - r log(lambda) - log|S|+ - sum(log w)]
- GCV:  n * RSS_w / (n - edf)^2

Both scores are "lower is better". REML scores include every term that depends
on the basis, so scores of fits with different ranges are comparable.

The fitted model provides predictions with standard errors, posterior
simulation of the smooth, pointwise and simultaneous intervals and first
derivatives.
"""

import time
import numpy as np
from scipy import linalg, optimize, stats
from typing import Dict, List, Tuple, Optional, Any

from models.errors import DegenerateWeightError, FitConvergenceError
from models.gp_smooth import GPSmoothSpec, GPSmoothBasis


CRITERIA = ('REML', 'GCV')


def _check_criterion(criterion: str) -> str:
    criterion = str(criterion).upper()
    if criterion not in CRITERIA:
        raise ValueError(f"Unknown criterion: {criterion}. Expected one of: {CRITERIA}")
    return criterion


class _PenalizedSystem:
    """
    Weighted cross-products of one basis and one data set.

    The penalty is rescaled to the magnitude of X'WX so that the log smoothing
    parameter search bounds are meaningful for any basis.
    """

    def __init__(self, basis: GPSmoothBasis, y: np.ndarray, weights: np.ndarray):
        sqrt_w = np.sqrt(weights)

        self.n = len(y)
        self.n_null = basis.n_null
        self.rank = basis.rank

        self.Xw = basis.design * sqrt_w[:, None]
        self.yw = y * sqrt_w
        self.XtWX = self.Xw.T @ self.Xw
        self.XtWy = self.Xw.T @ self.yw
        self.log_w_sum = float(np.sum(np.log(weights)))

        self.penalty_scale = np.linalg.norm(self.XtWX, 'fro') / np.linalg.norm(basis.penalty, 'fro')
        self.S = basis.penalty * self.penalty_scale

        s_eigvals = np.linalg.eigvalsh(self.S)
        self.log_det_S = float(np.sum(np.log(s_eigvals[s_eigvals > 1e-12 * s_eigvals.max()])))

    def solve(self, log_lambda: float) -> Dict[str, Any]:
        """
        Solve the penalized least squares problem at one smoothing parameter.

        Raises numpy.linalg.LinAlgError if X'WX + lambda S is not positive definite.
        """
        lam = np.exp(log_lambda)
        A = self.XtWX + lam * self.S

        factor = linalg.cho_factor(A, lower=True)
        beta = linalg.cho_solve(factor, self.XtWy)

        resid = self.yw - self.Xw @ beta
        rss = float(resid @ resid)
        penalty = float(beta @ self.S @ beta)
        log_det_A = 2.0 * float(np.sum(np.log(np.diag(factor[0]))))
        edf_per_coef = np.diag(linalg.cho_solve(factor, self.XtWX))

        return {
            'lambda': lam,
            'log_lambda': log_lambda,
            'factor': factor,
            'beta': beta,
            'rss': rss,
            'penalty': penalty,
            'log_det_A': log_det_A,
            'edf_per_coef': edf_per_coef,
            'edf': float(np.sum(edf_per_coef)),
        }

    def reml_score(self, solution: Dict[str, Any]) -> Tuple[float, float]:
        """Return (score, scale) of the REML criterion for a solution."""
        dof = self.n - self.n_null
        scale = (solution['rss'] + solution['lambda'] * solution['penalty']) / dof
        if not scale > 0:
            return np.inf, scale

        score = 0.5 * (
            dof * (np.log(2.0 * np.pi * scale) + 1.0)
            + solution['log_det_A']
            - self.rank * solution['log_lambda']
            - self.log_det_S
            - self.log_w_sum
        )
        return float(score), scale

    def gcv_score(self, solution: Dict[str, Any]) -> Tuple[float, float]:
        """Return (score, scale) of the GCV criterion for a solution."""
        resid_dof = self.n - solution['edf']
        if resid_dof <= 0:
            return np.inf, np.nan

        score = self.n * solution['rss'] / resid_dof ** 2
        scale = solution['rss'] / resid_dof
        return float(score), scale


class FittedModel:
    """
    A fitted penalized GP smooth.

    Attributes:
        basis: The GPSmoothBasis the model was fitted with
        family: Name of the covariance family
        range_: Range (correlation length) of the smooth
        coefficients: Estimated coefficient vector
        smoothing_parameter: Selected lambda (for the unscaled penalty)
        scale: Estimated scale parameter phi
        edf: Effective degrees of freedom of the fit
        edf_per_coef: Effective degrees of freedom of each coefficient
        covariance: Bayesian posterior covariance of the coefficients (Vp)
        criterion: 'REML' or 'GCV'
        criterion_score: Value of the criterion at the optimum (lower is better)
        n_evaluations: Number of criterion evaluations used by the optimiser
    """

    def __init__(
        self,
        basis: GPSmoothBasis,
        coefficients: np.ndarray,
        smoothing_parameter: float,
        scale: float,
        edf_per_coef: np.ndarray,
        covariance: np.ndarray,
        criterion: str,
        criterion_score: float,
        n_evaluations: int,
        observations
    ):
        self.basis = basis
        self.family = basis.family.name
        self.range_ = basis.range_
        self.coefficients = coefficients
        self.smoothing_parameter = smoothing_parameter
        self.scale = scale
        self.edf_per_coef = edf_per_coef
        self.edf = float(np.sum(edf_per_coef))
        self.covariance = covariance
        self.criterion = criterion
        self.criterion_score = criterion_score
        self.n_evaluations = n_evaluations
        self.observations = observations

    @property
    def fitted_values(self) -> np.ndarray:
        return self.basis.design @ self.coefficients

    @property
    def residuals(self) -> np.ndarray:
        return np.asarray(self.observations.y) - self.fitted_values

    def predict(self, x: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Predict the smooth at new covariate values.

        Args:
            x: Covariate values at which to predict

        Returns:
            mean, standard error
        """
        Xp = self.basis.predict_matrix(x)
        mean = Xp @ self.coefficients
        se = np.sqrt(np.maximum(np.sum((Xp @ self.covariance) * Xp, axis=1), 0.0))
        return mean, se

    def _coefficient_draws(self, n_draws: int, random_state: Optional[int]) -> np.ndarray:
        rng = np.random.default_rng(random_state)
        return rng.multivariate_normal(self.coefficients, self.covariance, size=n_draws, method='eigh')

    def simulate(self, n_draws: int, x: np.ndarray, random_state: Optional[int] = None) -> np.ndarray:
        """
        Draw realisations of the smooth from its posterior distribution.

        Coefficients are drawn from N(beta_hat, Vp), so the draws account for
        uncertainty in the coefficients, including the unpenalized trend.

        Args:
            n_draws: Number of draws
            x: Covariate values at which to evaluate each draw
            random_state: Seed for reproducible draws

        Returns:
            Array of shape (n_draws, len(x))
        """
        if int(n_draws) < 1:
            raise ValueError(f"n_draws must be positive, got {n_draws}")

        Xp = self.basis.predict_matrix(x)
        betas = self._coefficient_draws(int(n_draws), random_state)
        return betas @ Xp.T

    def confidence_interval(self, x: np.ndarray, level: float = 0.95) -> Dict[str, np.ndarray]:
        """
        Pointwise (across-the-function) confidence interval.

        Args:
            x: Covariate values
            level: Coverage probability

        Returns:
            Dictionary with 'mean', 'se', 'lower' and 'upper'
        """
        mean, se = self.predict(x)
        crit = stats.norm.ppf(0.5 + level / 2.0)
        return {'mean': mean, 'se': se, 'lower': mean - crit * se, 'upper': mean + crit * se}

    def simultaneous_interval(
        self,
        x: np.ndarray,
        level: float = 0.95,
        n_sim: int = 10000,
        random_state: Optional[int] = None
    ) -> Dict[str, np.ndarray]:
        """
        Simultaneous confidence interval for the whole function.

        The critical value is the `level` quantile of the maximum absolute
        standardized deviation of simulated smooths from the fitted one.

        Args:
            x: Covariate values
            level: Simultaneous coverage probability
            n_sim: Number of simulations used to find the critical value
            random_state: Seed for the simulations

        Returns:
            Dictionary with 'mean', 'se', 'lower', 'upper' and 'critical_value'
        """
        Xp = self.basis.predict_matrix(x)
        mean, se = self.predict(x)

        rng = np.random.default_rng(random_state)
        deviations = rng.multivariate_normal(
            np.zeros_like(self.coefficients), self.covariance, size=int(n_sim), method='eigh'
        ) @ Xp.T

        safe_se = np.where(se > 0, se, np.inf)
        max_dev = np.max(np.abs(deviations / safe_se), axis=1)
        crit = float(np.quantile(max_dev, level))

        return {
            'mean': mean,
            'se': se,
            'lower': mean - crit * se,
            'upper': mean + crit * se,
            'critical_value': crit
        }

    def derivatives(self, x: np.ndarray, eps: Optional[float] = None, level: float = 0.95) -> Dict[str, np.ndarray]:
        """
        First derivative of the smooth by central finite differences.

        Args:
            x: Covariate values
            eps: Finite difference step (default: 1e-5 of the covariate span)
            level: Coverage of the pointwise interval on the derivative

        Returns:
            Dictionary with 'derivative', 'se', 'lower' and 'upper'
        """
        x = np.asarray(x, dtype=np.float64).ravel()

        if eps is None:
            span = np.ptp(self.observations.x)
            eps = 1e-5 * (span if span > 0 else 1.0)

        Xd = (self.basis.predict_matrix(x + eps / 2.0) - self.basis.predict_matrix(x - eps / 2.0)) / eps

        deriv = Xd @ self.coefficients
        se = np.sqrt(np.maximum(np.sum((Xd @ self.covariance) * Xd, axis=1), 0.0))
        crit = stats.norm.ppf(0.5 + level / 2.0)

        return {'derivative': deriv, 'se': se, 'lower': deriv - crit * se, 'upper': deriv + crit * se}

    def periods_of_change(self, x: np.ndarray, level: float = 0.95, eps: Optional[float] = None) -> List[Dict]:
        """
        Find covariate spans where the trend is significantly changing.

        A span is significant where the interval on the first derivative
        excludes zero.

        Args:
            x: Sorted covariate values to scan
            level: Coverage of the derivative interval
            eps: Finite difference step

        Returns:
            List of dictionaries with 'start', 'end' and 'direction'
            ('increasing' or 'decreasing')
        """
        x = np.asarray(x, dtype=np.float64).ravel()
        deriv = self.derivatives(x, eps=eps, level=level)

        sign = np.zeros(len(x), dtype=int)
        sign[deriv['lower'] > 0] = 1
        sign[deriv['upper'] < 0] = -1

        periods = []
        start = None
        for i in range(len(x)):
            if sign[i] != 0 and (start is None or sign[i] != sign[start]):
                if start is not None:
                    periods.append(self._period(x, start, i - 1, sign[start]))
                start = i
            elif sign[i] == 0 and start is not None:
                periods.append(self._period(x, start, i - 1, sign[start]))
                start = None

        if start is not None:
            periods.append(self._period(x, start, len(x) - 1, sign[start]))

        return periods

    @staticmethod
    def _period(x: np.ndarray, start: int, end: int, direction: int) -> Dict:
        return {
            'start': float(x[start]),
            'end': float(x[end]),
            'direction': 'increasing' if direction > 0 else 'decreasing'
        }

    def summary(self) -> Dict[str, Any]:
        """
        Summary of the fit.

        Returns:
            Dictionary of model parameters and fit statistics
        """
        return {
            'family': self.family,
            'range': self.range_,
            'k': self.basis.spec.k,
            'rank': self.basis.rank,
            'criterion': self.criterion,
            'criterion_score': self.criterion_score,
            'smoothing_parameter': self.smoothing_parameter,
            'scale': self.scale,
            'edf': self.edf,
            'n_obs': len(self.observations),
            'n_evaluations': self.n_evaluations,
        }

    def __repr__(self):
        return (f"FittedModel(family='{self.family}', range_={self.range_:g}, "
                f"{self.criterion}={self.criterion_score:.4f}, edf={self.edf:.2f})")


class PenalizedSplineFitter:
    """
    Fits GP smooths with automatic smoothness selection.

    The smoothing parameter is searched on a coarse grid of log(lambda) values
    followed by bounded Brent refinement around the best grid value, so fits
    are deterministic.
    """

    # Scores returned by this fitter are minimised
    higher_is_better = False

    def __init__(
        self,
        criterion: str = 'REML',
        max_iter: int = 200,
        time_limit: Optional[float] = None,
        log_lambda_bounds: Tuple[float, float] = (-12.0, 12.0),
        n_coarse: int = 25,
        xatol: float = 1e-5
    ):
        """
        Args:
            criterion: Smoothness selection criterion, 'REML' or 'GCV'
            max_iter: Maximum number of refinement iterations
            time_limit: Optional wall-clock limit in seconds for one fit
            log_lambda_bounds: Search interval for log(lambda) relative to the
                rescaled penalty
            n_coarse: Number of coarse grid points in the log(lambda) search
            xatol: Absolute tolerance of the refinement on log(lambda)
        """
        self.criterion = _check_criterion(criterion)
        self.max_iter = int(max_iter)
        self.time_limit = time_limit
        self.log_lambda_bounds = (float(log_lambda_bounds[0]), float(log_lambda_bounds[1]))
        self.n_coarse = max(int(n_coarse), 1)
        self.xatol = xatol

        if self.log_lambda_bounds[0] >= self.log_lambda_bounds[1]:
            raise ValueError(f"Invalid log_lambda_bounds: {log_lambda_bounds}")

    def fit(
        self,
        observations,
        spec: GPSmoothSpec,
        criterion: Optional[str] = None,
        weights: Optional[np.ndarray] = None
    ) -> FittedModel:
        """
        Fit the smooth described by `spec` to the observations.

        Args:
            observations: ObservationSet (anything with x, y and weights arrays)
            spec: GP smooth specification (family, range, basis size)
            criterion: Override of the fitter's smoothness selection criterion
            weights: Override of the observation weights

        Returns:
            FittedModel

        Raises:
            FitConvergenceError: if the basis is degenerate, the search does not
                converge or the criterion is not finite
        """
        criterion = self.criterion if criterion is None else _check_criterion(criterion)
        start_time = time.perf_counter()

        y = np.asarray(observations.y, dtype=np.float64)
        if weights is None:
            weights = observations.weights
        weights = np.asarray(weights, dtype=np.float64)
        if len(weights) != len(y) or np.any(~np.isfinite(weights) | (weights <= 0)):
            raise DegenerateWeightError("Weights must be finite, strictly positive and one per observation")

        basis = spec.construct(observations.x)
        if len(y) <= basis.n_null:
            raise FitConvergenceError(
                f"Need more than {basis.n_null} observations to fit a smooth",
                family=basis.family.name, range_=basis.range_
            )

        system = _PenalizedSystem(basis, y, weights)
        score_fn = system.reml_score if criterion == 'REML' else system.gcv_score
        n_evaluations = [0]

        def objective(log_lambda):
            if self.time_limit is not None and time.perf_counter() - start_time > self.time_limit:
                raise FitConvergenceError(
                    f"Fit exceeded time limit of {self.time_limit} s",
                    family=basis.family.name, range_=basis.range_
                )
            n_evaluations[0] += 1
            try:
                score, _ = score_fn(system.solve(log_lambda))
            except (np.linalg.LinAlgError, ValueError):
                return np.inf
            return score if np.isfinite(score) else np.inf

        best_log_lambda = self._search(objective, basis)

        try:
            solution = system.solve(best_log_lambda)
        except (np.linalg.LinAlgError, ValueError) as e:
            raise FitConvergenceError(
                f"Penalized system is singular: {e}", family=basis.family.name, range_=basis.range_
            )

        score, scale = score_fn(solution)
        if not np.isfinite(score) or not np.isfinite(scale):
            raise FitConvergenceError(
                f"Non-finite {criterion} score for {basis.family.name} at range {basis.range_:g}",
                family=basis.family.name, range_=basis.range_
            )

        A_inv = linalg.cho_solve(solution['factor'], np.eye(basis.n_coef))
        covariance = scale * A_inv
        covariance = 0.5 * (covariance + covariance.T)

        return FittedModel(
            basis=basis,
            coefficients=solution['beta'],
            smoothing_parameter=solution['lambda'] * system.penalty_scale,
            scale=scale,
            edf_per_coef=solution['edf_per_coef'],
            covariance=covariance,
            criterion=criterion,
            criterion_score=score,
            n_evaluations=n_evaluations[0],
            observations=observations
        )

    def _search(self, objective, basis: GPSmoothBasis) -> float:
        """Coarse grid over log(lambda) followed by bounded refinement."""
        lower, upper = self.log_lambda_bounds
        grid = np.linspace(lower, upper, self.n_coarse) if self.n_coarse > 1 else np.array([0.5 * (lower + upper)])
        scores = np.array([objective(v) for v in grid])

        if not np.any(np.isfinite(scores)):
            raise FitConvergenceError(
                f"No finite criterion value for {basis.family.name} at range {basis.range_:g}",
                family=basis.family.name, range_=basis.range_
            )

        i = int(np.argmin(scores))
        if len(grid) == 1:
            return float(grid[0])

        bracket = (grid[max(i - 1, 0)], grid[min(i + 1, len(grid) - 1)])
        result = optimize.minimize_scalar(
            objective,
            bounds=bracket,
            method='bounded',
            options={'maxiter': self.max_iter, 'xatol': self.xatol}
        )

        if not result.success:
            raise FitConvergenceError(
                f"Smoothing parameter search did not converge in {self.max_iter} iterations "
                f"for {basis.family.name} at range {basis.range_:g}",
                family=basis.family.name, range_=basis.range_
            )

        return float(result.x) if result.fun <= scores[i] else float(grid[i])


def fit(observations, spec: GPSmoothSpec, criterion: str = 'REML', **fitter_kwargs) -> FittedModel:
    """Fit one GP smooth with a default-configured fitter."""
    return PenalizedSplineFitter(criterion=criterion, **fitter_kwargs).fit(observations, spec)


def predict(model: FittedModel, x: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Mean and standard error of a fitted smooth at `x`."""
    return model.predict(x)


def simulate(model: FittedModel, n_draws: int, x: np.ndarray, random_state: Optional[int] = None) -> np.ndarray:
    """Posterior draws of a fitted smooth at `x`, shape (n_draws, len(x))."""
    return model.simulate(n_draws, x, random_state=random_state)
