"""
Profile Likelihood Search over the Range of GP Smooths

The range (correlation length) of a Gaussian process smooth is fixed while the
penalized fit selects the smoothing parameter, so it is chosen by profiling:
every candidate range of a grid is fitted for every covariance family, the
smoothness selection score is recorded, and the range with the lowest score is
taken for each family.

The search runs in two phases. The scan phase records scores only, in a
pre-sized table with one write-once cell per (range, family); fitted models are
discarded as soon as their score is read. The refit phase fits the winning
range of each family once more and keeps only those models.

A failed fit at one grid point is recorded as +inf and the scan continues. A
family whose every grid point failed has no best range; asking for it raises
AllCandidatesFailedError while the other families are unaffected.
"""

import warnings
import numpy as np
import pandas as pd
from joblib import Parallel, delayed, effective_n_jobs
from tqdm.auto import tqdm
from typing import Callable, Dict, List, Tuple, Optional, Union, Any

from kernels.covariance_families import CovarianceFamily, resolve_families, validate_range
from models.errors import AllCandidatesFailedError, FitConvergenceError, FitFailureWarning
from models.gp_smooth import GPSmoothSpec
from models.penalized_spline import PenalizedSplineFitter, FittedModel


TIE_BREAK_POLICIES = ('first', 'last')


def make_range_grid(lower: float, upper: float, n: int) -> np.ndarray:
    """
    Evenly spaced candidate ranges on the closed interval [lower, upper].

    Args:
        lower: Smallest candidate range
        upper: Largest candidate range
        n: Number of candidates

    Returns:
        Read-only array of candidate ranges
    """
    if int(n) < 1:
        raise ValueError(f"Grid must have at least one candidate, got n={n}")
    lower = validate_range(lower)
    upper = validate_range(upper)
    if upper < lower:
        raise ValueError(f"Upper range {upper} is smaller than lower range {lower}")
    if int(n) > 1 and upper == lower:
        raise ValueError("A grid of more than one candidate needs upper > lower")

    grid = np.linspace(lower, upper, int(n)) if int(n) > 1 else np.array([lower])
    grid.setflags(write=False)
    return grid


def validate_range_grid(grid) -> np.ndarray:
    """
    Check a candidate grid: non-empty, positive, finite and strictly increasing.

    Args:
        grid: Sequence of candidate ranges

    Returns:
        Read-only float array copy of the grid
    """
    grid = np.array(grid, dtype=np.float64).ravel()

    if len(grid) == 0:
        raise ValueError("Range grid is empty")
    if not np.all(np.isfinite(grid)) or np.any(grid <= 0):
        raise ValueError("Range grid values must be positive and finite")
    if np.any(np.diff(grid) <= 0):
        raise ValueError("Range grid must be strictly increasing")

    grid.setflags(write=False)
    return grid


class ScoreTable:
    """
    Smoothness selection scores keyed by (family, range).

    The table is pre-sized to len(grid) x len(families). Every cell starts
    unfilled (NaN) and can be written once; failed fits hold +inf.
    """

    def __init__(self, grid, families: List[str]):
        self.grid = validate_range_grid(grid)
        self.families = tuple(families)

        if len(self.families) == 0:
            raise ValueError("Score table needs at least one family")
        if len(set(self.families)) != len(self.families):
            raise ValueError(f"Duplicate family names: {self.families}")

        self._column = {name: j for j, name in enumerate(self.families)}
        self._scores = np.full((len(self.grid), len(self.families)), np.nan)
        self._failed = np.zeros((len(self.grid), len(self.families)), dtype=bool)

    def __len__(self):
        return int(np.sum(~np.isnan(self._scores)))

    @property
    def shape(self) -> Tuple[int, int]:
        return self._scores.shape

    def _col(self, family: str) -> int:
        if family not in self._column:
            raise KeyError(f"Unknown family: {family}. Expected one of: {list(self.families)}")
        return self._column[family]

    def set(self, family: str, row: int, score: float):
        """
        Write the score of one cell. Non-finite scores are stored as +inf.
        """
        col = self._col(family)
        if not np.isnan(self._scores[row, col]):
            raise RuntimeError(f"Score for family '{family}' at range {self.grid[row]:g} is already recorded")

        score = float(score)
        if not np.isfinite(score):
            self._scores[row, col] = np.inf
            self._failed[row, col] = True
        else:
            self._scores[row, col] = score

    def record_failure(self, family: str, row: int):
        """Record a failed fit as an infinite score."""
        self.set(family, row, np.inf)

    def scores(self, family: str) -> np.ndarray:
        """Scores of one family in grid order."""
        return self._scores[:, self._col(family)].copy()

    def failed(self, family: str) -> np.ndarray:
        """Boolean mask of failed grid points for one family."""
        return self._failed[:, self._col(family)].copy()

    def row_complete(self, row: int) -> bool:
        return bool(np.all(~np.isnan(self._scores[row])))

    @property
    def is_complete(self) -> bool:
        return bool(np.all(~np.isnan(self._scores)))

    def best_index(self, family: str, tie_break: str = 'first', tie_tol: float = 0.0) -> int:
        """
        Grid index of the lowest score for a family.

        Args:
            family: Family name
            tie_break: 'first' picks the smallest tied range, 'last' the largest
            tie_tol: Scores within this distance of the minimum count as tied

        Returns:
            Index into the grid

        Raises:
            AllCandidatesFailedError: if every grid point failed
        """
        if tie_break not in TIE_BREAK_POLICIES:
            raise ValueError(f"Unknown tie_break policy: {tie_break}. Expected one of: {TIE_BREAK_POLICIES}")

        scores = self.scores(family)
        if np.any(np.isnan(scores)):
            raise RuntimeError(f"Score table is incomplete for family '{family}'")

        if not np.any(np.isfinite(scores)):
            raise AllCandidatesFailedError(family, len(scores))

        best = np.min(scores)
        tied = np.flatnonzero(scores <= best + tie_tol)

        return int(tied[0] if tie_break == 'first' else tied[-1])

    def best_range(self, family: str, tie_break: str = 'first', tie_tol: float = 0.0) -> float:
        """Range with the lowest score for a family (always a grid value)."""
        return float(self.grid[self.best_index(family, tie_break=tie_break, tie_tol=tie_tol)])

    def truncate(self, n_rows: int) -> 'ScoreTable':
        """Return a table with only the first `n_rows` grid rows."""
        if not 1 <= n_rows <= len(self.grid):
            raise ValueError(f"Cannot truncate a {len(self.grid)}-row table to {n_rows} rows")

        table = ScoreTable(self.grid[:n_rows], list(self.families))
        table._scores = self._scores[:n_rows].copy()
        table._failed = self._failed[:n_rows].copy()
        return table

    def to_frame(self) -> pd.DataFrame:
        """
        Tidy DataFrame of the table with columns range, family, score and failed.
        """
        records = []
        for j, family in enumerate(self.families):
            for i, range_ in enumerate(self.grid):
                records.append({
                    'range': range_,
                    'family': family,
                    'score': self._scores[i, j],
                    'failed': bool(self._failed[i, j])
                })
        return pd.DataFrame(records)

    def __repr__(self):
        return f"ScoreTable(n_ranges={len(self.grid)}, families={list(self.families)}, filled={len(self)})"


class PatienceStop:
    """
    Early stopping rule: stop once no family has improved its best score for
    `patience` consecutive grid rows.
    """

    def __init__(self, patience: int):
        if int(patience) < 1:
            raise ValueError(f"Patience must be at least 1, got {patience}")
        self.patience = int(patience)

    def __call__(self, table: ScoreTable, row: int) -> bool:
        last_improvement = 0
        for family in table.families:
            scores = table.scores(family)[:row + 1]
            if np.any(np.isfinite(scores)):
                last_improvement = max(last_improvement, int(np.argmin(scores)))
            else:
                # A family with no successful fit yet keeps the scan going
                last_improvement = row
        return row - last_improvement >= self.patience


class ProfileResult:
    """
    Outcome of a profiling run.

    Attributes:
        score_table: Scores for every scanned (family, range)
        best_ranges: Selected range of each family with a successful fit
        models: Refit model at the selected range of each such family
        failures: AllCandidatesFailedError of each family without any fit
        stopped_early: Whether the scan was cut short by the stopping rule
    """

    def __init__(
        self,
        score_table: ScoreTable,
        best_ranges: Dict[str, float],
        models: Dict[str, FittedModel],
        failures: Dict[str, AllCandidatesFailedError],
        stopped_early: bool = False
    ):
        self.score_table = score_table
        self.best_ranges = best_ranges
        self.models = models
        self.failures = failures
        self.stopped_early = stopped_early

    @property
    def families(self) -> Tuple[str, ...]:
        return self.score_table.families

    def best_range(self, family: str) -> float:
        """Selected range of a family; raises the family's failure if it has one."""
        if family in self.failures:
            raise self.failures[family]
        return self.best_ranges[family]

    def model(self, family: str) -> FittedModel:
        """Refit model of a family; raises the family's failure if it has one."""
        if family in self.failures:
            raise self.failures[family]
        return self.models[family]

    def summary(self) -> pd.DataFrame:
        """One row per family with its selected range and refit statistics."""
        rows = []
        for family in self.families:
            if family in self.failures:
                rows.append({'family': family, 'best_range': np.nan, 'failed': True})
            else:
                row = {'family': family, 'best_range': self.best_ranges[family], 'failed': False}
                row.update({k: v for k, v in self.models[family].summary().items() if k not in ('family', 'range')})
                rows.append(row)
        return pd.DataFrame(rows)

    def __repr__(self):
        return f"ProfileResult(best_ranges={self.best_ranges}, failures={list(self.failures)})"


class RangeProfiler:
    """
    Profiles the range of GP smooths for a set of covariance families.

    Example:
        profiler = RangeProfiler(['matern1.5', 'squared_exponential'], k=30)
        result = profiler.profile(observations, make_range_grid(10, 500, 50))
        result.best_range('matern1.5')
    """

    def __init__(
        self,
        families: Union[Dict[str, CovarianceFamily], List[Union[str, CovarianceFamily]]],
        k: int = 30,
        criterion: str = 'REML',
        fitter: Optional[Any] = None,
        n_jobs: int = 1,
        tie_break: str = 'first',
        tie_tol: float = 0.0,
        stop_criterion: Optional[Callable[[ScoreTable, int], bool]] = None,
        spec_kwargs: Optional[Dict] = None,
        verbose: bool = False,
        progress_bar: bool = False
    ):
        """
        Args:
            families: Covariance families, as a name -> family mapping or a list
                of families / family names
            k: Basis dimension of every smooth
            criterion: Smoothness selection criterion passed to the fitter
            fitter: Object with a `fit(observations, spec, criterion=...)` method
                returning a model with `criterion_score`; defaults to a
                PenalizedSplineFitter. If it has `higher_is_better = True` its
                scores are negated before comparison.
            n_jobs: Number of parallel workers (threads) for the scan
            tie_break: 'first' (smallest range) or 'last' among tied scores
            tie_tol: Scores within this of the minimum count as tied
            stop_criterion: Optional callable (table, row) -> bool consulted after
                every completed grid row
            spec_kwargs: Extra arguments for GPSmoothSpec (max_knots, eigen_tol)
            verbose: Whether to print progress messages
            progress_bar: Whether to show a progress bar over the grid
        """
        if tie_break not in TIE_BREAK_POLICIES:
            raise ValueError(f"Unknown tie_break policy: {tie_break}. Expected one of: {TIE_BREAK_POLICIES}")

        self.families = resolve_families(families)
        self.k = int(k)
        self.criterion = criterion
        self.fitter = fitter if fitter is not None else PenalizedSplineFitter(criterion=criterion)
        self.n_jobs = n_jobs
        self.tie_break = tie_break
        self.tie_tol = float(tie_tol)
        self.stop_criterion = stop_criterion
        self.spec_kwargs = spec_kwargs or {}
        self.verbose = verbose
        self.progress_bar = progress_bar

    def _spec(self, family_name: str, range_: float) -> GPSmoothSpec:
        return GPSmoothSpec(self.families[family_name], range_, k=self.k, **self.spec_kwargs)

    def _fit(self, observations, family_name: str, range_: float):
        return self.fitter.fit(observations, self._spec(family_name, range_), criterion=self.criterion)

    def _score_cell(self, observations, family_name: str, range_: float) -> Tuple[float, Optional[str]]:
        """
        Fit one (family, range) cell and return (score, failure message).

        The fitted model is dropped here; only its score leaves this method.
        """
        try:
            fitted = self._fit(observations, family_name, range_)
        except FitConvergenceError as e:
            return np.inf, str(e)

        score = float(fitted.criterion_score)
        if getattr(self.fitter, 'higher_is_better', False):
            score = -score

        if not np.isfinite(score):
            return np.inf, f"Non-finite score for {family_name} at range {range_:g}"

        return score, None

    def _block_size(self) -> int:
        if self.n_jobs == 1:
            return 1
        return max(1, effective_n_jobs(self.n_jobs) // len(self.families))

    def scan(self, observations, grid) -> Tuple[ScoreTable, bool]:
        """
        Scan phase: fill the score table over the grid.

        Rows are processed in ascending range order, in blocks when running in
        parallel. The stopping rule is only consulted on completed rows, so a
        stopped scan still covers a rectangle of the table.

        Args:
            observations: ObservationSet shared read-only by all fits
            grid: Increasing sequence of candidate ranges

        Returns:
            (score table, whether the scan stopped early)
        """
        table = ScoreTable(grid, list(self.families))
        grid = table.grid
        n_rows = len(grid)
        names = list(self.families)

        if self.verbose:
            print(f"Profiling {n_rows} candidate ranges x {len(names)} families "
                  f"({self.criterion}, k={self.k})...")

        pbar = tqdm(total=n_rows, desc="Range profile") if self.progress_bar else None

        block = self._block_size()
        stopped_at = None

        for start in range(0, n_rows, block):
            rows = range(start, min(start + block, n_rows))
            cells = [(row, name) for row in rows for name in names]

            if self.n_jobs == 1:
                results = [self._score_cell(observations, name, grid[row]) for row, name in cells]
            else:
                results = Parallel(n_jobs=self.n_jobs, prefer='threads')(
                    delayed(self._score_cell)(observations, name, grid[row]) for row, name in cells
                )

            for (row, name), (score, message) in zip(cells, results):
                if message is not None:
                    warnings.warn(
                        f"Fit failed for {name} at range {grid[row]:g}: {message}",
                        FitFailureWarning
                    )
                    table.record_failure(name, row)
                else:
                    table.set(name, row, score)

            for row in rows:
                if pbar is not None:
                    pbar.update(1)
                if self.stop_criterion is not None and self.stop_criterion(table, row):
                    stopped_at = row
                    break

            if stopped_at is not None:
                break

        if pbar is not None:
            pbar.close()

        if stopped_at is not None and stopped_at < n_rows - 1:
            if self.verbose:
                print(f"Stopping early after range {grid[stopped_at]:g} ({stopped_at + 1}/{n_rows} rows)")
            return table.truncate(stopped_at + 1), True

        return table, False

    def select(self, table: ScoreTable) -> Tuple[Dict[str, float], Dict[str, AllCandidatesFailedError]]:
        """
        Pick the best range of every family.

        Returns:
            (best range per family, failure per family without any fit)
        """
        best_ranges = {}
        failures = {}

        for name in table.families:
            try:
                best_ranges[name] = table.best_range(name, tie_break=self.tie_break, tie_tol=self.tie_tol)
            except AllCandidatesFailedError as e:
                warnings.warn(str(e), FitFailureWarning)
                failures[name] = e

        return best_ranges, failures

    def refit(self, observations, best_ranges: Dict[str, float]) -> Dict[str, FittedModel]:
        """
        Refit phase: fit each family once at its selected range.

        Returns:
            Fitted model per family
        """
        models = {}
        for name, range_ in best_ranges.items():
            models[name] = self._fit(observations, name, range_)
            if self.verbose:
                print(f"  {name}: best range {range_:g}, "
                      f"{self.criterion} = {models[name].criterion_score:.4f}")
        return models

    def profile(self, observations, grid) -> ProfileResult:
        """
        Run the scan, selection and refit phases.

        Args:
            observations: ObservationSet
            grid: Increasing sequence of candidate ranges

        Returns:
            ProfileResult
        """
        table, stopped_early = self.scan(observations, grid)
        best_ranges, failures = self.select(table)
        models = self.refit(observations, best_ranges)

        return ProfileResult(table, best_ranges, models, failures, stopped_early=stopped_early)


def profile_ranges(observations, grid, families, **profiler_kwargs) -> ProfileResult:
    """Profile the range of GP smooths with a one-off RangeProfiler."""
    return RangeProfiler(families, **profiler_kwargs).profile(observations, grid)
