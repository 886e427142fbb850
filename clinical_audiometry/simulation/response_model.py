"""Response models for simulated listeners."""

import numpy as np
from scipy.special import expit, logit

from ..utils.defaults import (
    DEFAULT_GUESS_RATE,
    DEFAULT_LAPSE_RATE,
    DEFAULT_LATENCY_MEDIAN_MS,
    DEFAULT_LATENCY_SIGMA,
    DEFAULT_SLOPE,
)


class HearingResponseModel:
    """Models probability of response to pure tone stimulus."""

    def __init__(self, slope=DEFAULT_SLOPE, guess_rate=DEFAULT_GUESS_RATE,
                 lapse_rate=DEFAULT_LAPSE_RATE, threshold_probability=0.5):
        """Initialize the hearing response model."""
        if not 0 <= threshold_probability <= 1:
            raise ValueError("threshold_probability must be between 0 and 1")
        if slope <= 0:
            raise ValueError("slope must be positive")
        if guess_rate < 0 or lapse_rate < 0 or guess_rate + lapse_rate >= 1:
            raise ValueError("guess_rate and lapse_rate must be non-negative and sum below 1")

        self.slope = slope
        self.guess_rate = guess_rate
        self.lapse_rate = lapse_rate
        self.threshold_probability = threshold_probability

        # Calculate bias from threshold probability
        if threshold_probability == 0:
            self.threshold_bias = float('-inf')
        elif threshold_probability == 1:
            self.threshold_bias = float('inf')
        else:
            self.threshold_bias = logit(threshold_probability) / self.slope

    def get_response_probability(self, stimulus_level, true_threshold):
        """Calculate probability of response for given stimulus level."""
        x = self.slope * (stimulus_level - true_threshold + self.threshold_bias)
        p = expit(x)
        return self.guess_rate + (1 - self.guess_rate - self.lapse_rate) * p

    def sample_response(self, stimulus_level, true_threshold, rng=None):
        """
        Generate binary response based on probability model.

        Args:
            stimulus_level (float): Presented level in dB HL
            true_threshold (float): Listener's threshold in dB HL
            rng (np.random.Generator or int): Generator (or seed) to draw from

        Returns:
            bool: Whether the listener responds
        """
        rng = np.random.default_rng(rng)
        p = self.get_response_probability(stimulus_level, true_threshold)
        return bool(rng.random() < p)


class LatencyModel:
    """Log-normal response latency in milliseconds."""

    def __init__(self, median_ms=DEFAULT_LATENCY_MEDIAN_MS, sigma=DEFAULT_LATENCY_SIGMA,
                 slowdown_per_trial=0.0):
        """
        Args:
            median_ms (float): Median latency of an attentive listener
            sigma (float): Shape of the log-normal; small values give machine-like latencies
            slowdown_per_trial (float): Fractional median increase per response (fatigue)
        """
        if median_ms <= 0:
            raise ValueError("median_ms must be positive")
        if sigma < 0:
            raise ValueError("sigma cannot be negative")
        self.median_ms = median_ms
        self.sigma = sigma
        self.slowdown_per_trial = slowdown_per_trial

    def sample(self, rng=None, n_previous=0):
        """Draw one latency (ms); ``n_previous`` responses so far drive the fatigue drift."""
        rng = np.random.default_rng(rng)
        median = self.median_ms * (1.0 + self.slowdown_per_trial * n_previous)
        return float(rng.lognormal(mean=np.log(median), sigma=self.sigma))
