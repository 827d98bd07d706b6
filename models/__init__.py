"""
Penalized GP Smooth Models for Palaeo Time Series

This package provides the pieces of a range-profiled GP smooth analysis:
- gp_smooth.py: Low-rank Gaussian process smooth basis
- penalized_spline.py: Penalized fitting with REML / GCV smoothness selection
- range_profiler.py: Profile search over the range of the GP covariance
- errors.py: Exceptions and warnings
"""

from .errors import (
    FitConvergenceError,
    DegenerateWeightError,
    AllCandidatesFailedError,
    FitFailureWarning
)
from .gp_smooth import GPSmoothSpec, GPSmoothBasis
from .penalized_spline import PenalizedSplineFitter, FittedModel, fit, predict, simulate
from .range_profiler import (
    RangeProfiler,
    ScoreTable,
    ProfileResult,
    PatienceStop,
    make_range_grid,
    profile_ranges
)

__all__ = [
    'FitConvergenceError',
    'DegenerateWeightError',
    'AllCandidatesFailedError',
    'FitFailureWarning',
    'GPSmoothSpec',
    'GPSmoothBasis',
    'PenalizedSplineFitter',
    'FittedModel',
    'fit',
    'predict',
    'simulate',
    'RangeProfiler',
    'ScoreTable',
    'ProfileResult',
    'PatienceStop',
    'make_range_grid',
    'profile_ranges'
]
