"""
Data Loading Utilities for Palaeo Time Series

This module reads palaeo time series from delimited text files or pickled
DataFrames into an ObservationSet (covariate, response, weight), derives
observation weights from the time span each sediment sample covers, and
exports fitted trends back to disk.
"""

import numpy as np
import pandas as pd
import os
import warnings
from typing import Dict, List, Tuple, Optional

from models.errors import DegenerateWeightError
from utils.profile_config import get_dataset_preset


MIN_OBSERVATIONS = 3


class ObservationSet:
    """
    Ordered set of (covariate, response, weight) observations.

    Observations are sorted by covariate value. The arrays are read-only so one
    set can be shared between concurrent fits.
    """

    def __init__(
        self,
        x: np.ndarray,
        y: np.ndarray,
        weights: Optional[np.ndarray] = None,
        covariate_name: str = 'x',
        response_name: str = 'y'
    ):
        """
        Args:
            x: Covariate values (e.g. sample year)
            y: Response values (e.g. proxy measurements)
            weights: Strictly positive observation weights (default: all ones)
            covariate_name: Label of the covariate, used in plots and exports
            response_name: Label of the response
        """
        x = np.asarray(x, dtype=np.float64).ravel()
        y = np.asarray(y, dtype=np.float64).ravel()

        if weights is None:
            weights = np.ones_like(x)
        weights = np.asarray(weights, dtype=np.float64).ravel()

        if not (len(x) == len(y) == len(weights)):
            raise ValueError(
                f"Covariate, response and weights must have equal lengths, "
                f"got {len(x)}, {len(y)} and {len(weights)}"
            )
        if len(x) < MIN_OBSERVATIONS:
            raise ValueError(f"At least {MIN_OBSERVATIONS} observations are required, got {len(x)}")
        if not np.all(np.isfinite(x)) or not np.all(np.isfinite(y)):
            raise ValueError("Covariate and response values must be finite")

        bad = np.flatnonzero(~np.isfinite(weights) | (weights <= 0))
        if len(bad) > 0:
            raise DegenerateWeightError(
                f"{len(bad)} observation(s) have non-positive or non-finite weights "
                f"(first at index {bad[0]}: {weights[bad[0]]})"
            )

        order = np.argsort(x, kind='stable')
        self.x = x[order]
        self.y = y[order]
        self.weights = weights[order]

        for arr in (self.x, self.y, self.weights):
            arr.setflags(write=False)

        self.covariate_name = covariate_name
        self.response_name = response_name

    def __len__(self):
        return len(self.x)

    def to_frame(self) -> pd.DataFrame:
        """Return the observations as a DataFrame."""
        return pd.DataFrame({
            self.covariate_name: self.x,
            self.response_name: self.y,
            'weight': self.weights
        })

    def __repr__(self):
        return (f"ObservationSet(n={len(self)}, covariate='{self.covariate_name}', "
                f"response='{self.response_name}')")


def weights_from_spans(upper: np.ndarray, lower: np.ndarray) -> np.ndarray:
    """
    Weights proportional to the time span covered by each sample.

    Samples that integrate more years are more precise estimates of the mean
    over that interval. Weights are normalised to a mean of 1.

    Args:
        upper: Age (or year) at the top of each sample
        lower: Age (or year) at the bottom of each sample

    Returns:
        Array of weights with mean 1
    """
    span = np.abs(np.asarray(lower, dtype=np.float64) - np.asarray(upper, dtype=np.float64))

    mean_span = np.mean(span)
    if not np.isfinite(mean_span) or mean_span <= 0:
        raise DegenerateWeightError("Sample spans are all zero or not finite")

    return span / mean_span


def _read_table(
    file_path: str,
    delimiter: Optional[str] = None,
    skip_rows: Optional[int] = None,
    na_values: Optional[List[str]] = None
) -> pd.DataFrame:
    """Read a data table, choosing the reader from the file extension."""
    if na_values is None:
        na_values = ['NA', 'NaN', '-999', '-999.9', 'n/a', 'null']

    file_ext = os.path.splitext(file_path)[1].lower()

    if file_ext == '.csv':
        return pd.read_csv(file_path, delimiter=delimiter or ',', skiprows=skip_rows, na_values=na_values)
    elif file_ext in ['.txt', '.dat', '.tsv']:
        sep = delimiter if delimiter is not None else ('\t' if file_ext == '.tsv' else r'\s+')
        return pd.read_csv(file_path, sep=sep, skiprows=skip_rows, na_values=na_values)
    elif file_ext in ['.pkl', '.pickle']:
        df = pd.read_pickle(file_path)
        if not isinstance(df, pd.DataFrame):
            raise ValueError(f"Pickled object in {file_path} is not a DataFrame")
        return df
    else:
        raise ValueError(f"Unsupported file format: {file_ext}")


def load_observations(
    file_path: str,
    covariate_column: str,
    response_column: str,
    weight_column: Optional[str] = None,
    span_columns: Optional[Tuple[str, str]] = None,
    delimiter: Optional[str] = None,
    skip_rows: Optional[int] = None,
    na_values: Optional[List[str]] = None,
    verbose: bool = False
) -> ObservationSet:
    """
    Load a palaeo time series into an ObservationSet.

    Args:
        file_path: Path to a .csv, .txt/.dat/.tsv or pickled DataFrame file
        covariate_column: Column holding the covariate (e.g. 'Year')
        response_column: Column holding the response (e.g. 'd15N')
        weight_column: Optional column of observation weights
        span_columns: Optional (upper, lower) columns of sample ages; weights
            are then derived from the span each sample covers
        delimiter: Field delimiter (default: ',' for CSV, whitespace for text)
        skip_rows: Number of rows to skip at the beginning of the file
        na_values: Strings to interpret as missing
        verbose: Whether to print verbose output

    Returns:
        ObservationSet sorted by covariate
    """
    if weight_column is not None and span_columns is not None:
        raise ValueError("Give either weight_column or span_columns, not both")

    if verbose:
        print(f"Loading data from {file_path}")

    df = _read_table(file_path, delimiter=delimiter, skip_rows=skip_rows, na_values=na_values)

    required = [covariate_column, response_column]
    if weight_column is not None:
        required.append(weight_column)
    if span_columns is not None:
        required.extend(span_columns)

    missing = [col for col in required if col not in df.columns]
    if missing:
        raise ValueError(f"Columns not found in {file_path}: {missing}. Available: {list(df.columns)}")

    df = df[required].apply(pd.to_numeric, errors='coerce')

    valid_mask = df.notna().all(axis=1).values
    n_dropped = int(np.sum(~valid_mask))
    if n_dropped > 0:
        warnings.warn(f"Dropped {n_dropped} row(s) with missing values from {file_path}")
    df = df[valid_mask]

    if weight_column is not None:
        weights = df[weight_column].values
    elif span_columns is not None:
        weights = weights_from_spans(df[span_columns[0]].values, df[span_columns[1]].values)
    else:
        weights = None

    observations = ObservationSet(
        df[covariate_column].values,
        df[response_column].values,
        weights=weights,
        covariate_name=covariate_column,
        response_name=response_column
    )

    if verbose:
        print(f"Loaded {len(observations)} observations of {response_column} against {covariate_column}")

    return observations


def load_dataset(name: str, file_path: Optional[str] = None, verbose: bool = False) -> ObservationSet:
    """
    Load one of the named palaeo records using its column preset.

    Args:
        name: Dataset name ('small_water' or 'braya_so')
        file_path: Path to the data file (default: the preset's path)
        verbose: Whether to print verbose output

    Returns:
        ObservationSet for the record
    """
    preset = get_dataset_preset(name)

    return load_observations(
        file_path or preset['file'],
        covariate_column=preset['covariate_column'],
        response_column=preset['response_column'],
        weight_column=preset['weight_column'],
        span_columns=preset['span_columns'],
        verbose=verbose
    )


def export_results(results: Dict[str, Dict[str, np.ndarray]], file_path: str, covariate_name: str = 'x'):
    """
    Export fitted trends for several families to a tidy CSV file.

    Args:
        results: Mapping of family name to a dictionary with keys 'x', 'mean',
            'se' and optionally 'lower', 'upper', 'simultaneous_lower',
            'simultaneous_upper', 'derivative', 'changing'
        file_path: Path of the CSV file to write
        covariate_name: Name of the covariate column
    """
    frames = []

    for family, trend in results.items():
        data = {covariate_name: trend['x'], 'family': family}
        for key, value in trend.items():
            if key != 'x':
                data[key] = value
        frames.append(pd.DataFrame(data))

    if len(frames) == 0:
        raise ValueError("No fitted trends to export")

    pd.concat(frames, ignore_index=True).to_csv(file_path, index=False)
