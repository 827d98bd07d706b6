"""
Exceptions and warnings raised while fitting and profiling GP smooths.
"""


class FitConvergenceError(RuntimeError):
    """The penalized fit did not reach a stable solution for one (family, range)."""

    def __init__(self, message: str, family: str = None, range_: float = None):
        super().__init__(message)
        self.family = family
        self.range_ = range_


class DegenerateWeightError(ValueError):
    """An observation weight is zero, negative or not finite."""


class AllCandidatesFailedError(RuntimeError):
    """Every candidate range of a covariance family failed to fit."""

    def __init__(self, family: str, n_candidates: int):
        super().__init__(
            f"All {n_candidates} candidate ranges failed to fit for family '{family}'"
        )
        self.family = family
        self.n_candidates = n_candidates


class FitFailureWarning(UserWarning):
    """A single grid point failed and was recorded with an infinite score."""
