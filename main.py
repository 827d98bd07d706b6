"""
Main script for profiling the range of Gaussian process smooths fitted to
palaeo time series.

This script loads a record (or generates a synthetic one), profiles the REML
(or GCV) score of GP smooths over a grid of candidate ranges for each
covariance family, refits the best range of every family and saves the score
table, the fitted trends and figures.
"""

import numpy as np
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import argparse
import json
import os
import sys
import warnings

from kernels.covariance_families import resolve_families
from models.errors import DegenerateWeightError
from models.penalized_spline import PenalizedSplineFitter
from models.range_profiler import RangeProfiler, PatienceStop, make_range_grid
from synthetic_data import SyntheticPaleoSeries, evaluate_reconstruction
from utils.data_loader import load_dataset, load_observations, export_results
from utils.profile_config import load_config, get_dataset_preset
from utils.visualization import plot_profile, plot_fitted_trends, plot_posterior_draws, plot_derivatives


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Profile the range of GP smooths fitted to palaeo time series."
    )

    # Data options
    parser.add_argument(
        "--data_type", type=str, default="synthetic",
        choices=["synthetic", "small_water", "braya_so", "file"],
        help="Record to analyse"
    )
    parser.add_argument(
        "--data_file", type=str, default=None,
        help="Path to the data file (required for 'file', optional for named records)"
    )
    parser.add_argument("--covariate", type=str, default="Year", help="Covariate column for 'file' data")
    parser.add_argument("--response", type=str, default=None, help="Response column for 'file' data")
    parser.add_argument("--weight_column", type=str, default=None, help="Weight column for 'file' data")

    # Profiling options (unset values fall back to the config file, then the defaults)
    parser.add_argument("--config", type=str, default=None, help="JSON file with configuration overrides")
    parser.add_argument("--families", type=str, nargs="+", default=None,
                        help="Covariance families, e.g. matern1.5 squared_exponential")
    parser.add_argument("--range_min", type=float, default=None, help="Smallest candidate range")
    parser.add_argument("--range_max", type=float, default=None, help="Largest candidate range")
    parser.add_argument("--n_ranges", type=int, default=None, help="Number of candidate ranges")
    parser.add_argument("--k", type=int, default=None, help="Basis dimension of the GP smooth")
    parser.add_argument("--criterion", type=str, default=None, choices=["REML", "GCV"],
                        help="Smoothness selection criterion")
    parser.add_argument("--n_jobs", type=int, default=None, help="Parallel workers for the grid sweep")
    parser.add_argument("--tie_break", type=str, default=None, choices=["first", "last"],
                        help="Which of several tied ranges to select")
    parser.add_argument("--patience", type=int, default=None,
                        help="Stop the sweep after this many rows without improvement")

    parser.add_argument("--random_state", type=int, default=42, help="Random seed for reproducibility")
    parser.add_argument("--output_dir", type=str, default="data/results/range_profile",
                        help="Directory to save results")
    parser.add_argument("--quiet", action="store_true", help="Suppress progress output")

    return parser.parse_args(argv)


def load_observations_for(args):
    """Load or generate the observations selected on the command line."""
    generator = None
    dataset = None

    if args.data_type == "synthetic":
        generator = SyntheticPaleoSeries(0.0, 500.0, noise_level=0.3, random_seed=args.random_state)
        generator.set_sinusoid(period=100.0, amplitude=1.0)
        dataset = generator.generate_dataset(n_points=50)
        observations = generator.to_observations(dataset)
    elif args.data_type == "file":
        if args.data_file is None or args.response is None:
            raise ValueError("--data_file and --response are required for --data_type file")
        observations = load_observations(
            args.data_file, args.covariate, args.response,
            weight_column=args.weight_column, verbose=not args.quiet
        )
    else:
        observations = load_dataset(args.data_type, args.data_file, verbose=not args.quiet)

    return observations, generator, dataset


def main(argv=None):
    """Main entry point for running a profile."""
    args = parse_args(argv)
    verbose = not args.quiet

    overrides = {
        'families': args.families,
        'range_min': args.range_min,
        'range_max': args.range_max,
        'n_ranges': args.n_ranges,
        'k': args.k,
        'criterion': args.criterion,
        'n_jobs': args.n_jobs,
        'tie_break': args.tie_break,
        'patience': args.patience,
    }
    if args.data_type in ("small_water", "braya_so"):
        preset = get_dataset_preset(args.data_type)
        if args.range_min is None:
            overrides['range_min'] = preset['range_min']
        if args.range_max is None:
            overrides['range_max'] = preset['range_max']

    try:
        config = load_config(args.config, overrides)
        observations, generator, dataset = load_observations_for(args)
        grid = make_range_grid(config['range_min'], config['range_max'], config['n_ranges'])
        families = resolve_families(config['families'])
    except (ValueError, OSError) as e:
        # DegenerateWeightError is a ValueError
        kind = "Invalid weights" if isinstance(e, DegenerateWeightError) else "Error"
        print(f"{kind}: {e}")
        return 1

    os.makedirs(args.output_dir, exist_ok=True)

    if verbose:
        print(f"Loaded {len(observations)} observations of {observations.response_name}")

    truth = None
    if dataset is not None:
        truth = (dataset['x'], dataset['truth'])
        fig = generator.plot_dataset(dataset)
        fig.savefig(os.path.join(args.output_dir, "synthetic_data.png"), dpi=300, bbox_inches='tight')
        plt.close(fig)

    fitter = PenalizedSplineFitter(
        criterion=config['criterion'],
        max_iter=config['max_iter'],
        time_limit=config['time_limit']
    )
    profiler = RangeProfiler(
        families,
        k=config['k'],
        criterion=config['criterion'],
        fitter=fitter,
        n_jobs=config['n_jobs'],
        tie_break=config['tie_break'],
        tie_tol=config['tie_tol'],
        stop_criterion=PatienceStop(config['patience']) if config['patience'] else None,
        verbose=verbose,
        progress_bar=verbose
    )

    with warnings.catch_warnings():
        warnings.simplefilter("always")
        result = profiler.profile(observations, grid)

    result.score_table.to_frame().to_csv(os.path.join(args.output_dir, "profile_scores.csv"), index=False)

    summary = result.summary()
    summary.to_csv(os.path.join(args.output_dir, "best_ranges.csv"), index=False)
    with open(os.path.join(args.output_dir, "best_ranges.json"), "w") as f:
        json.dump({
            'best_ranges': {k: float(v) for k, v in result.best_ranges.items()},
            'failed_families': list(result.failures),
            'stopped_early': result.stopped_early,
            'config': config
        }, f, indent=2)

    if verbose:
        print("Selected ranges:")
        print(summary.to_string(index=False))

    if len(result.models) == 0:
        print("No family produced a successful fit.")
        return 2

    # Prediction grid over the observed covariate range
    x_new = np.linspace(observations.x.min(), observations.x.max(), config['n_predict'])

    trends = {}
    intervals = {}
    for family, model in result.models.items():
        pointwise = model.confidence_interval(x_new, level=config['level'])
        simultaneous = model.simultaneous_interval(
            x_new, level=config['level'], n_sim=config['n_sim'], random_state=args.random_state
        )
        deriv = model.derivatives(x_new, level=config['level'])
        periods = model.periods_of_change(x_new, level=config['level'])

        intervals[family] = simultaneous
        trends[family] = {
            'x': x_new,
            'mean': pointwise['mean'],
            'se': pointwise['se'],
            'lower': pointwise['lower'],
            'upper': pointwise['upper'],
            'simultaneous_lower': simultaneous['lower'],
            'simultaneous_upper': simultaneous['upper'],
            'derivative': deriv['derivative'],
            'changing': (deriv['lower'] > 0) | (deriv['upper'] < 0)
        }

        if verbose and periods:
            print(f"Periods of significant change ({family}):")
            for period in periods:
                print(f"  {period['start']:.1f} - {period['end']:.1f}: {period['direction']}")

        fig = plot_posterior_draws(
            model, observations, x_new, n_draws=config['n_draws'], random_state=args.random_state,
            figure_path=os.path.join(args.output_dir, f"posterior_draws_{family}.png")
        )
        plt.close(fig)

        fig = plot_derivatives(
            model, x_new, level=config['level'], periods=periods,
            covariate_name=observations.covariate_name,
            figure_path=os.path.join(args.output_dir, f"derivatives_{family}.png")
        )
        plt.close(fig)

    export_results(trends, os.path.join(args.output_dir, "fitted_trends.csv"),
                   covariate_name=observations.covariate_name)

    fig = plot_profile(result, figure_path=os.path.join(args.output_dir, "range_profile.png"))
    plt.close(fig)

    true_trend = None
    if truth is not None:
        true_trend = np.interp(x_new, truth[0], truth[1])
        metrics = {family: evaluate_reconstruction(model, x_new, true_trend)
                   for family, model in result.models.items()}
        with open(os.path.join(args.output_dir, "metrics.json"), "w") as f:
            json.dump(metrics, f, indent=2)
        if verbose:
            print("Reconstruction metrics against the true trend:")
            for family, values in metrics.items():
                print(f"  {family}: " + ", ".join(f"{k}={v:.4f}" for k, v in values.items()))

    fig = plot_fitted_trends(
        result, observations, x_new, intervals=intervals, truth=true_trend,
        figure_path=os.path.join(args.output_dir, "fitted_trends.png")
    )
    plt.close(fig)

    if verbose:
        print(f"All results saved to {args.output_dir}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
