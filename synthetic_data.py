import numpy as np
import matplotlib.pyplot as plt
from sklearn.metrics import mean_squared_error, mean_absolute_error, r2_score

from kernels.covariance_families import CovarianceFamily, Matern
from utils.data_loader import ObservationSet, weights_from_spans


class SyntheticPaleoSeries:
    """
    Generate synthetic palaeo time series with a known underlying trend.

    The trend is either a sinusoid of known period or a draw from a Gaussian
    process with a known covariance family and range, observed with Gaussian
    noise at regular or irregular sample times.
    """

    def __init__(self, start_time=0.0, end_time=500.0, noise_level=0.3, random_seed=None):
        """
        Initialize the synthetic data generator.

        Parameters:
        -----------
        start_time : float, default=0.0
            Start of the record (years)
        end_time : float, default=500.0
            End of the record (years)
        noise_level : float, default=0.3
            Standard deviation of Gaussian observation noise
        random_seed : int, optional
            Random seed for reproducibility
        """
        if end_time <= start_time:
            raise ValueError(f"end_time ({end_time}) must be greater than start_time ({start_time})")

        self.start_time = start_time
        self.end_time = end_time
        self.noise_level = noise_level
        self.rng = np.random.default_rng(random_seed)

        # Default trend: five cycles over the record
        self.signal = {'kind': 'sinusoid', 'period': 100.0, 'amplitude': 1.0, 'phase': 0.0, 'intercept': 0.0}

    def set_sinusoid(self, period=None, amplitude=None, phase=None, intercept=None):
        """
        Use a sinusoidal trend.

        Parameters:
        -----------
        period : float, optional
            Period of the sinusoid (years)
        amplitude : float, optional
            Amplitude of the sinusoid
        phase : float, optional
            Phase (radians)
        intercept : float, optional
            Mean level of the trend

        Returns:
        --------
        self : object
            Returns self
        """
        signal = {'kind': 'sinusoid', 'period': 100.0, 'amplitude': 1.0, 'phase': 0.0, 'intercept': 0.0}
        if self.signal['kind'] == 'sinusoid':
            signal.update(self.signal)

        if period is not None:
            if period <= 0:
                raise ValueError(f"Period must be positive, got {period}")
            signal['period'] = period
        if amplitude is not None:
            signal['amplitude'] = amplitude
        if phase is not None:
            signal['phase'] = phase
        if intercept is not None:
            signal['intercept'] = intercept

        self.signal = signal
        return self

    def set_gaussian_process(self, family: CovarianceFamily = None, range_=50.0, amplitude=1.0, intercept=0.0):
        """
        Use a trend drawn from a Gaussian process.

        Parameters:
        -----------
        family : CovarianceFamily, optional
            Covariance family of the process (default: Matérn 1.5)
        range_ : float, default=50.0
            True range (correlation length) of the process
        amplitude : float, default=1.0
            Marginal standard deviation of the process
        intercept : float, default=0.0
            Mean level of the trend

        Returns:
        --------
        self : object
            Returns self
        """
        self.signal = {
            'kind': 'gp',
            'family': family if family is not None else Matern(1.5),
            'range': range_,
            'amplitude': amplitude,
            'intercept': intercept
        }
        return self

    def generate_time_points(self, n_points=50, regular=True, min_spacing=1.0):
        """
        Generate sample times.

        Parameters:
        -----------
        n_points : int, default=50
            Number of samples
        regular : bool, default=True
            Whether to generate regularly spaced samples
        min_spacing : float, default=1.0
            Minimum spacing between samples for irregular sampling

        Returns:
        --------
        time_points : array-like
            Sorted sample times
        """
        if regular:
            return np.linspace(self.start_time, self.end_time, n_points)

        time_range = self.end_time - self.start_time
        max_points = int(time_range / min_spacing)

        if n_points > max_points:
            raise ValueError(f"Too many points ({n_points}) for the given time range and minimum spacing. Maximum allowed: {max_points}")

        time_points = np.sort(self.start_time + time_range * self.rng.random(n_points))

        for i in range(1, len(time_points)):
            if time_points[i] - time_points[i-1] < min_spacing:
                time_points[i] = time_points[i-1] + min_spacing

        # Pull samples pushed past the end of the record back inside it
        time_points[-1] = min(time_points[-1], self.end_time)
        for i in range(len(time_points) - 2, -1, -1):
            if time_points[i+1] - time_points[i] < min_spacing:
                time_points[i] = time_points[i+1] - min_spacing

        return time_points

    def generate_trend(self, time_points):
        """
        Evaluate (or draw) the noise-free trend at the sample times.

        Parameters:
        -----------
        time_points : array-like
            Sample times

        Returns:
        --------
        trend : array-like
            Trend values
        """
        time_points = np.asarray(time_points, dtype=float)
        signal = self.signal

        if signal['kind'] == 'sinusoid':
            return signal['intercept'] + signal['amplitude'] * np.sin(
                2 * np.pi * time_points / signal['period'] + signal['phase']
            )

        covar = signal['family'].covariance(time_points, time_points, signal['range'])
        covar += 1e-8 * np.eye(len(time_points))
        chol = np.linalg.cholesky(covar)

        return signal['intercept'] + signal['amplitude'] * chol @ self.rng.standard_normal(len(time_points))

    def generate_dataset(self, n_points=50, regular=True, min_spacing=1.0, span_range=None):
        """
        Generate a synthetic record with known trend and noisy observations.

        Parameters:
        -----------
        n_points : int, default=50
            Number of samples
        regular : bool, default=True
            Whether samples are regularly spaced
        min_spacing : float, default=1.0
            Minimum spacing for irregular sampling
        span_range : tuple, optional
            (min, max) time span covered by each sample. When given, sample
            spans are drawn uniformly and weights are derived from them

        Returns:
        --------
        dataset : dict
            Dictionary with 'x', 'y', 'truth', 'weights' and a copy of the
            signal settings
        """
        x = self.generate_time_points(n_points, regular, min_spacing)
        truth = self.generate_trend(x)
        y = truth + self.rng.normal(0, self.noise_level, len(x))

        if span_range is not None:
            spans = self.rng.uniform(span_range[0], span_range[1], len(x))
            weights = weights_from_spans(x - spans / 2, x + spans / 2)
        else:
            weights = np.ones_like(x)

        return {
            'x': x,
            'y': y,
            'truth': truth,
            'weights': weights,
            'signal': dict(self.signal),
            'noise_level': self.noise_level
        }

    @staticmethod
    def to_observations(dataset, covariate_name='Year', response_name='value'):
        """
        Convert a generated dataset to an ObservationSet.

        Parameters:
        -----------
        dataset : dict
            Dataset generated by generate_dataset

        Returns:
        --------
        observations : ObservationSet
        """
        return ObservationSet(
            dataset['x'], dataset['y'], weights=dataset['weights'],
            covariate_name=covariate_name, response_name=response_name
        )

    def plot_dataset(self, dataset, figsize=(12, 5)):
        """
        Plot the synthetic record.

        Parameters:
        -----------
        dataset : dict
            Dataset generated by generate_dataset
        figsize : tuple, default=(12, 5)
            Figure size

        Returns:
        --------
        fig : matplotlib.figure.Figure
            Figure object
        """
        fig, ax = plt.subplots(figsize=figsize)

        ax.plot(dataset['x'], dataset['truth'], 'k-', label='True trend')
        ax.plot(dataset['x'], dataset['y'], 'o', color='tab:blue', alpha=0.7, label='Observations')
        ax.set_xlabel('Year')
        ax.set_ylabel('Value')
        ax.set_title('Synthetic Palaeo Record')
        ax.legend()
        ax.grid(True, alpha=0.3)

        plt.tight_layout()

        return fig


def generate_noisy_sinusoid(n_points=50, start_time=0.0, end_time=500.0, period=100.0,
                            amplitude=1.0, noise_level=0.3, random_seed=42):
    """
    Noisy sinusoid observed at regular sample times.

    Returns:
    --------
    dataset : dict
        See SyntheticPaleoSeries.generate_dataset
    """
    generator = SyntheticPaleoSeries(start_time, end_time, noise_level, random_seed)
    generator.set_sinusoid(period=period, amplitude=amplitude)
    return generator.generate_dataset(n_points=n_points)


def evaluate_reconstruction(model, x, truth):
    """
    Compare a fitted trend with the known true trend.

    Parameters:
    -----------
    model : FittedModel
        Fitted smooth
    x : array-like
        Covariate values
    truth : array-like
        True trend at x

    Returns:
    --------
    metrics : dict
        RMSE, MAE and R² of the fitted mean against the truth
    """
    mean, _ = model.predict(x)
    return {
        'rmse': float(np.sqrt(mean_squared_error(truth, mean))),
        'mae': float(mean_absolute_error(truth, mean)),
        'r2': float(r2_score(truth, mean))
    }
