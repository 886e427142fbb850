"""
Simulated patient acting as both the audio device and the response button.
"""
# Standard library imports
from typing import Dict, Optional

# Third-party imports
import numpy as np

# Local imports
from ..session.models import Ear, ResponseEvent
from ..utils.clock import ManualClock
from .response_model import HearingResponseModel, LatencyModel


ANTICIPATORY_LATENCY_RANGE_MS = (40.0, 140.0)


class SimulatedPatient:
    """
    Listener with known true thresholds.

    Responses follow the psychometric function of ``HearingResponseModel``
    around the true threshold plus ``exaggeration_db`` (a feigned loss).
    Responded trials take a log-normal latency; ``anticipatory_rate`` makes a
    fraction of them implausibly fast and ``false_alarm_rate`` is the
    probability of pressing during a silent catch trial.
    """

    def __init__(self, thresholds: Dict, clock=None,
                 response_model: Optional[HearingResponseModel] = None,
                 latency_model: Optional[LatencyModel] = None,
                 exaggeration_db=0.0, anticipatory_rate=0.0, false_alarm_rate=0.0,
                 random_state=None):
        """
        Args:
            thresholds (dict): {ear: {frequency_hz: true threshold dB HL}}
            clock: Clock advanced by the simulated waiting time (ManualClock by default)
            response_model (HearingResponseModel): Psychometric function
            latency_model (LatencyModel): Latency distribution of real responses
            exaggeration_db (float or dict): Feigned loss, optionally per ear
            anticipatory_rate (float): Fraction of responses made before 150 ms
            false_alarm_rate (float): Probability of responding to silence
            random_state (int): Seed for all of the patient's randomness
        """
        self.thresholds = {Ear(ear): {int(f): float(t) for f, t in values.items()}
                           for ear, values in thresholds.items()}
        self.clock = clock or ManualClock()
        self.response_model = response_model or HearingResponseModel()
        self.latency_model = latency_model or LatencyModel()
        self.exaggeration_db = exaggeration_db
        self.anticipatory_rate = anticipatory_rate
        self.false_alarm_rate = false_alarm_rate
        self.rng = np.random.default_rng(random_state)
        self.presentations = 0
        self.responses = 0
        self._pending = None

    def true_threshold(self, ear, frequency_hz):
        """True threshold, interpolated on a log-frequency axis between known points."""
        known = self.thresholds[Ear(ear)]
        if frequency_hz in known:
            return known[frequency_hz]
        frequencies = sorted(known)
        return float(np.interp(np.log2(frequency_hz), np.log2(frequencies),
                               [known[f] for f in frequencies]))

    def effective_threshold(self, ear, frequency_hz):
        exaggeration = self.exaggeration_db
        if isinstance(exaggeration, dict):
            exaggeration = exaggeration.get(Ear(ear), exaggeration.get(Ear(ear).value, 0.0))
        return self.true_threshold(ear, frequency_hz) + exaggeration

    # Audio collaborator
    def present_stimulus(self, ear, frequency_hz, level_db_hl, is_catch):
        self.presentations += 1
        self._pending = (Ear(ear), int(frequency_hz), level_db_hl, bool(is_catch))

    # Response-input collaborator
    def wait_for_response(self, trial, timeout_s):
        """Decide, wait the simulated latency and return the event (None on silence)."""
        if self._pending is None:
            ear, frequency_hz, level, is_catch = (trial.ear, trial.frequency_hz,
                                                  trial.level_db_hl, trial.is_catch_trial)
        else:
            ear, frequency_hz, level, is_catch = self._pending
        self._pending = None

        if is_catch:
            responded = bool(self.rng.random() < self.false_alarm_rate)
        else:
            responded = self.response_model.sample_response(
                level, self.effective_threshold(ear, frequency_hz), rng=self.rng)

        if not responded:
            self.clock.sleep(timeout_s)
            return None

        if self.rng.random() < self.anticipatory_rate:
            latency_ms = float(self.rng.uniform(*ANTICIPATORY_LATENCY_RANGE_MS))
        else:
            latency_ms = self.latency_model.sample(self.rng, n_previous=self.responses)

        if latency_ms / 1000.0 >= timeout_s:
            self.clock.sleep(timeout_s)
            return None

        self.responses += 1
        self.clock.sleep(latency_ms / 1000.0)
        return ResponseEvent(trial_id=trial.id, responded=True, latency_ms=round(latency_ms, 1),
                             observed_at=self.clock.now())
