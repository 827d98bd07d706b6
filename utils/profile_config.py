"""
Configuration Defaults for Range Profiling Runs

This module holds the default settings of a profiling run and the column
layouts of the palaeo datasets analysed with it. Settings can be overridden
from a JSON file and then from the command line.
"""

import json
import copy
from typing import Dict, Optional, Any


# Default settings for a profiling run
DEFAULT_PROFILE_CONFIG = {
    'families': ['matern1.5', 'squared_exponential'],
    'range_min': 10.0,          # Smallest candidate range (covariate units)
    'range_max': 500.0,         # Largest candidate range
    'n_ranges': 50,             # Number of evenly spaced candidates
    'k': 30,                    # Basis dimension of the GP smooth
    'criterion': 'REML',        # Smoothness selection criterion ('REML' or 'GCV')
    'max_iter': 200,            # Optimiser evaluation cap per fit
    'time_limit': None,         # Seconds allowed per fit (None = no limit)
    'n_jobs': 1,                # Parallel workers for the grid sweep
    'tie_break': 'first',       # 'first' (smallest range) or 'last'
    'tie_tol': 0.0,             # Scores within this of the minimum count as tied
    'patience': None,           # Rows without improvement before stopping early
    'n_predict': 500,           # Points in the prediction grid
    'n_draws': 20,              # Posterior draws to plot
    'n_sim': 10000,             # Simulations for simultaneous intervals
    'level': 0.95,              # Interval coverage
}

# Column layouts of the supported palaeo records
DATASET_PRESETS = {
    'small_water': {
        'description': 'Small Water bulk organic matter δ15N',
        'file': 'data/small-water-isotope-data.csv',
        'covariate_column': 'Year',
        'response_column': 'd15N',
        'weight_column': None,
        'span_columns': None,
        'range_min': 10.0,
        'range_max': 200.0,
    },
    'braya_so': {
        'description': "Braya-Sø alkenone U^K'_37",
        'file': 'data/braya-so.csv',
        'covariate_column': 'Year',
        'response_column': 'UK37',
        'weight_column': None,
        # Sample age span: weights are proportional to the years each sample covers
        'span_columns': ('YearYoung', 'YearOld'),
        'range_min': 10.0,
        'range_max': 500.0,
    },
}


def load_config(config_path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None) -> Dict:
    """
    Build a run configuration from the defaults, a JSON file and overrides.

    Args:
        config_path: Optional path to a JSON file with configuration keys
        overrides: Optional dictionary of values taking precedence over both;
            entries that are None are ignored

    Returns:
        Configuration dictionary
    """
    config = copy.deepcopy(DEFAULT_PROFILE_CONFIG)

    if config_path is not None:
        with open(config_path, 'r') as f:
            file_config = json.load(f)

        unknown = set(file_config) - set(DEFAULT_PROFILE_CONFIG)
        if unknown:
            raise ValueError(f"Unknown configuration keys in {config_path}: {sorted(unknown)}")

        config.update(file_config)

    if overrides:
        for key, value in overrides.items():
            if value is not None:
                config[key] = value

    if config['criterion'].upper() not in ('REML', 'GCV'):
        raise ValueError(f"Unknown criterion: {config['criterion']}. Expected 'REML' or 'GCV'")
    config['criterion'] = config['criterion'].upper()

    if config['tie_break'] not in ('first', 'last'):
        raise ValueError(f"Unknown tie_break policy: {config['tie_break']}")

    return config


def get_dataset_preset(name: str) -> Dict:
    """
    Look up the column layout of a named dataset.

    Args:
        name: Dataset name ('small_water' or 'braya_so')

    Returns:
        Copy of the preset dictionary
    """
    if name not in DATASET_PRESETS:
        raise ValueError(f"Unknown dataset: {name}. Expected one of: {list(DATASET_PRESETS.keys())}")
    return copy.deepcopy(DATASET_PRESETS[name])
