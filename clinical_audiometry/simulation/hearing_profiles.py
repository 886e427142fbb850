import numpy as np
import pandas as pd
from scipy.stats import truncnorm

from ..session.models import Ear
from ..utils.defaults import AUDIOMETRIC_FREQUENCIES, MAX_TEST_LEVEL, MIN_TEST_LEVEL


def generate_clipped_data(n_points=8000, mu=10, variance=0.05, data_min=0,
                          data_max=20, seed=None):
    """
    Generates data distributed according to a truncated normal distribution,
    then clips the data to a specified range.

    Args:
        n_points (int): Number of data points to generate.
        mu (float): Mean of the truncated normal distribution.
        variance (float): Variance of the truncated normal distribution.
        data_min (float): Minimum value to clip the data to.
        data_max (float): Maximum value to clip the data to.
        seed (int or np.random.Generator): Random seed for reproducibility.

    Returns:
        x_data (np.ndarray): The x data points, linearly spaced.
        data_clipped (np.ndarray): The generated data, clipped to the specified range.
    """
    rng = np.random.default_rng(seed)
    x_data = np.linspace(0, n_points, n_points)
    sigma = np.sqrt(variance)  # Standard deviation (sqrt of variance)

    data = truncnorm.rvs((data_min - mu) / sigma, (data_max - mu) / sigma,
                         loc=mu, scale=sigma, size=x_data.shape, random_state=rng)

    data_clipped = np.clip(data, data_min, data_max)

    return x_data, data_clipped


def generate_hearing_profile(frequencies=AUDIOMETRIC_FREQUENCIES, mu_right=10, mu_left=10,
                             variance_right=25.0, variance_left=25.0, slope_db_per_octave=0.0,
                             data_min=MIN_TEST_LEVEL, data_max=MAX_TEST_LEVEL, seed=None):
    """
    Generates true hearing thresholds for both ears.

    Each ear's thresholds are drawn around its mean from a truncated normal
    distribution; ``slope_db_per_octave`` tilts the profile upwards above
    1 kHz to mimic a sloping high-frequency loss.

    Args:
        frequencies (list): Frequencies (Hz) to generate thresholds for.
        mu_right (float): Mean threshold of the right ear (dB HL).
        mu_left (float): Mean threshold of the left ear (dB HL).
        variance_right (float): Variance of the right-ear thresholds.
        variance_left (float): Variance of the left-ear thresholds.
        slope_db_per_octave (float): Extra loss per octave above 1 kHz.
        data_min (float): Lowest threshold allowed.
        data_max (float): Highest threshold allowed.
        seed (int or np.random.Generator): Random seed for reproducibility.

    Returns:
        dict: {Ear: {frequency: threshold}}
    """
    rng = np.random.default_rng(seed)
    frequencies = [int(f) for f in frequencies]
    octaves = np.maximum(0.0, np.log2(np.asarray(frequencies, dtype=float) / 1000.0))
    tilt = slope_db_per_octave * octaves

    profile = {}
    for ear, mu, variance in ((Ear.RIGHT, mu_right, variance_right),
                              (Ear.LEFT, mu_left, variance_left)):
        _, data = generate_clipped_data(len(frequencies), mu, variance, data_min, data_max, seed=rng)
        thresholds = np.clip(data + tilt, data_min, data_max)
        profile[ear] = {f: round(float(t), 1) for f, t in zip(frequencies, thresholds)}
    return profile


def modulate_severity(profile, gain, ear=None):
    """Shift thresholds by ``gain`` dB, for one ear or both."""
    modulated = {}
    for profile_ear, thresholds in profile.items():
        if ear is None or profile_ear is Ear(ear):
            thresholds = {f: t + gain for f, t in thresholds.items()}
        modulated[profile_ear] = dict(thresholds)
    return modulated


def profile_to_dataframe(profile):
    """
    Converts a hearing profile to a single-row DataFrame.

    Columns follow the "<kHz>kHz <Ear>" naming, e.g. "1.0kHz Right".
    """
    data_dict = {}
    for ear in (Ear.RIGHT, Ear.LEFT):
        for freq, threshold in sorted(profile.get(ear, {}).items()):
            data_dict[f"{freq/1000:.1f}kHz {ear.value.capitalize()}"] = threshold
    return pd.DataFrame(data_dict, index=[0])
