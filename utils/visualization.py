"""
Plotting Functions for Range Profiles and Fitted GP Smooths

Each function draws one figure, optionally saves it, and returns it.
"""

import numpy as np
import matplotlib.pyplot as plt
from typing import Dict, List, Optional

from models.range_profiler import ProfileResult


FAMILY_COLORS = ['tab:blue', 'tab:orange', 'tab:green', 'tab:red', 'tab:purple']


def _save(fig, figure_path: Optional[str]):
    if figure_path:
        fig.savefig(figure_path, dpi=300, bbox_inches='tight')


def plot_profile(result: ProfileResult, figure_path: Optional[str] = None, figsize=(10, 5)):
    """
    Plot the criterion score against the candidate range for every family.

    Failed grid points are left as gaps so the curves stay aligned with the grid.

    Args:
        result: Outcome of a profiling run
        figure_path: Path to save the figure
        figsize: Figure size

    Returns:
        matplotlib figure
    """
    table = result.score_table
    fig, ax = plt.subplots(figsize=figsize)

    for i, family in enumerate(table.families):
        color = FAMILY_COLORS[i % len(FAMILY_COLORS)]
        scores = table.scores(family)
        scores[~np.isfinite(scores)] = np.nan

        ax.plot(table.grid, scores, '-o', color=color, markersize=3, label=family)

        if family in result.best_ranges:
            best = result.best_ranges[family]
            ax.axvline(best, color=color, linestyle='--', alpha=0.7)
            ax.text(best, ax.get_ylim()[1], f' {best:.1f}', color=color, rotation=90, va='top', ha='right')

    criterion = next(iter(result.models.values())).criterion if result.models else 'score'
    ax.set_xlabel('Range (effective correlation length)')
    ax.set_ylabel(f'{criterion} score (lower is better)')
    ax.set_title('Profile of the smoothness selection criterion')
    ax.grid(True, alpha=0.3)
    ax.legend(loc='best')

    plt.tight_layout()
    _save(fig, figure_path)

    return fig


def plot_fitted_trends(
    result: ProfileResult,
    observations,
    x_new: np.ndarray,
    intervals: Optional[Dict[str, Dict[str, np.ndarray]]] = None,
    truth: Optional[np.ndarray] = None,
    figure_path: Optional[str] = None,
    figsize=(12, 6)
):
    """
    Plot the data with the refit trend of each family and its intervals.

    Args:
        result: Outcome of a profiling run
        observations: ObservationSet the models were fitted to
        x_new: Covariate values of the prediction grid
        intervals: Optional mapping family -> simultaneous interval dictionary
            (with 'lower' and 'upper'); pointwise intervals are always drawn
        truth: Optional true trend at x_new (synthetic data)
        figure_path: Path to save the figure
        figsize: Figure size

    Returns:
        matplotlib figure
    """
    fig, ax = plt.subplots(figsize=figsize)

    ax.scatter(observations.x, observations.y, s=15 + 15 * observations.weights,
               color='0.4', alpha=0.7, label='Observations')

    if truth is not None:
        ax.plot(x_new, truth, 'k--', linewidth=1.5, label='True trend')

    for i, (family, model) in enumerate(result.models.items()):
        color = FAMILY_COLORS[i % len(FAMILY_COLORS)]
        pointwise = model.confidence_interval(x_new)

        ax.plot(x_new, pointwise['mean'], '-', color=color, linewidth=2,
                label=f'{family} (range {model.range_:.1f})')
        ax.fill_between(x_new, pointwise['lower'], pointwise['upper'], color=color, alpha=0.25)

        if intervals is not None and family in intervals:
            ax.plot(x_new, intervals[family]['lower'], ':', color=color, linewidth=1)
            ax.plot(x_new, intervals[family]['upper'], ':', color=color, linewidth=1)

    ax.set_xlabel(observations.covariate_name)
    ax.set_ylabel(observations.response_name)
    ax.set_title('Fitted GP smooths at the selected ranges')
    ax.grid(True, alpha=0.3)
    ax.legend(loc='best')

    plt.tight_layout()
    _save(fig, figure_path)

    return fig


def plot_posterior_draws(
    model,
    observations,
    x_new: np.ndarray,
    n_draws: int = 20,
    random_state: Optional[int] = None,
    figure_path: Optional[str] = None,
    figsize=(12, 6)
):
    """
    Plot posterior draws of a fitted smooth over the data.

    Args:
        model: FittedModel
        observations: ObservationSet the model was fitted to
        x_new: Covariate values of the prediction grid
        n_draws: Number of posterior draws
        random_state: Seed for the draws
        figure_path: Path to save the figure
        figsize: Figure size

    Returns:
        matplotlib figure
    """
    draws = model.simulate(n_draws, x_new, random_state=random_state)
    mean, _ = model.predict(x_new)

    fig, ax = plt.subplots(figsize=figsize)

    ax.scatter(observations.x, observations.y, s=15, color='0.4', alpha=0.7, label='Observations')
    for draw in draws:
        ax.plot(x_new, draw, '-', color='tab:blue', alpha=0.2, linewidth=1)
    ax.plot(x_new, mean, 'k-', linewidth=2, label='Fitted trend')

    ax.set_xlabel(observations.covariate_name)
    ax.set_ylabel(observations.response_name)
    ax.set_title(f'{n_draws} posterior draws: {model.family}, range {model.range_:.1f}')
    ax.grid(True, alpha=0.3)
    ax.legend(loc='best')

    plt.tight_layout()
    _save(fig, figure_path)

    return fig


def plot_derivatives(
    model,
    x_new: np.ndarray,
    level: float = 0.95,
    periods: Optional[List[Dict]] = None,
    covariate_name: str = 'Year',
    figure_path: Optional[str] = None,
    figsize=(12, 4)
):
    """
    Plot the first derivative of a fitted smooth with its interval.

    Args:
        model: FittedModel
        x_new: Covariate values of the prediction grid
        level: Coverage of the derivative interval
        periods: Optional periods of significant change to shade
        covariate_name: x-axis label
        figure_path: Path to save the figure
        figsize: Figure size

    Returns:
        matplotlib figure
    """
    deriv = model.derivatives(x_new, level=level)

    fig, ax = plt.subplots(figsize=figsize)

    ax.plot(x_new, deriv['derivative'], 'k-', linewidth=1.5, label='First derivative')
    ax.fill_between(x_new, deriv['lower'], deriv['upper'], color='0.6', alpha=0.4,
                    label=f'{int(level * 100)}% interval')
    ax.axhline(0, color='r', linestyle='--', linewidth=1)

    for period in periods or []:
        color = 'tab:red' if period['direction'] == 'increasing' else 'tab:blue'
        ax.axvspan(period['start'], period['end'], color=color, alpha=0.15)

    ax.set_xlabel(covariate_name)
    ax.set_ylabel('Rate of change')
    ax.set_title(f'Derivative of the {model.family} smooth')
    ax.grid(True, alpha=0.3)
    ax.legend(loc='best')

    plt.tight_layout()
    _save(fig, figure_path)

    return fig
