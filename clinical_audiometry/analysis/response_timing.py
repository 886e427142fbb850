"""
Response latency classification and fatigue tracking.
"""
# Standard library imports
import logging
from dataclasses import dataclass
from typing import List, Optional

# Third-party imports
import numpy as np
from scipy.stats import variation

# Local imports
from ..audit.decision_log import DecisionKind, DecisionSource
from ..session.models import ReliabilityScore, TimingCategory
from ..utils.config import TimingConfig
from ..utils.defaults import (
    CONSISTENT_LATENCY_CV,
    INCONSISTENT_LATENCY_CV,
    MIN_LATENCIES_FOR_DISPERSION,
)

logger = logging.getLogger(__name__)

# Reliability of a single response by latency category
TIMING_RELIABILITY = {
    TimingCategory.OPTIMAL: 1.0,
    TimingCategory.NORMAL: 0.8,
    TimingCategory.SLOW_VALID: 0.6,
    TimingCategory.DELAYED: 0.5,
    TimingCategory.EARLY: 0.4,
    TimingCategory.BEYOND_CEILING: 0.3,
    TimingCategory.ANTICIPATORY: 0.1,
    TimingCategory.NO_RESPONSE: 0.0,
}

VALID_CATEGORIES = frozenset({
    TimingCategory.OPTIMAL,
    TimingCategory.NORMAL,
    TimingCategory.SLOW_VALID,
})


@dataclass(frozen=True)
class TimingClassification:
    latency_ms: Optional[float]
    category: TimingCategory
    reliability: float
    counts_as_response: bool

    @property
    def is_valid(self) -> bool:
        return self.category in VALID_CATEGORIES


def classify_latency(latency_ms, config: Optional[TimingConfig] = None) -> TimingCategory:
    """Map a response latency (ms) to its timing category."""
    c = config or TimingConfig()
    if latency_ms < c.anticipatory_max_ms:
        return TimingCategory.ANTICIPATORY
    if latency_ms > c.response_ceiling_ms:
        return TimingCategory.BEYOND_CEILING
    if latency_ms > c.slow_valid_max_ms:
        return TimingCategory.DELAYED
    if c.optimal_min_ms <= latency_ms <= c.optimal_max_ms:
        return TimingCategory.OPTIMAL
    if c.normal_min_ms <= latency_ms < c.normal_max_ms:
        return TimingCategory.NORMAL
    if c.normal_max_ms <= latency_ms <= c.slow_valid_max_ms:
        return TimingCategory.SLOW_VALID
    return TimingCategory.EARLY


def _consistency_from_cv(cv):
    if cv <= CONSISTENT_LATENCY_CV:
        return 1.0
    if cv >= INCONSISTENT_LATENCY_CV:
        return 0.0
    return 1.0 - (cv - CONSISTENT_LATENCY_CV) / (INCONSISTENT_LATENCY_CV - CONSISTENT_LATENCY_CV)


class ResponseTimingAnalyzer:
    """
    Classifies every response latency and keeps the session's timing profile.

    Valid latencies (optimal, normal, slow-valid) feed the fatigue tracker: the
    moving average of the last ``fatigue_window`` valid latencies is compared
    with the average of the first ``baseline_window`` ones.
    """

    def __init__(self, config: Optional[TimingConfig] = None, decision_log=None):
        self.config = config or TimingConfig()
        self.decision_log = decision_log
        self.classifications: List[TimingClassification] = []
        self.valid_latencies: List[float] = []
        self.response_latencies: List[float] = []
        self._fatigued = False

    def record(self, responded, latency_ms=None, trial_id=None) -> TimingClassification:
        """
        Classify one trial outcome and update the timing profile.

        Args:
            responded (bool): Whether the patient pressed the button
            latency_ms (float): Latency from tone onset, required when responded
            trial_id (int): Trial being classified, for the audit trail

        Returns:
            TimingClassification
        """
        if not responded:
            classification = TimingClassification(None, TimingCategory.NO_RESPONSE, 0.0, False)
            self.classifications.append(classification)
            return classification
        if latency_ms is None:
            raise ValueError("A response must carry its latency")

        latency_ms = float(latency_ms)
        category = classify_latency(latency_ms, self.config)
        counts = not (category is TimingCategory.BEYOND_CEILING
                      and self.config.beyond_ceiling_is_no_response)
        classification = TimingClassification(
            latency_ms, category, TIMING_RELIABILITY[category], counts)
        self.classifications.append(classification)

        if category is not TimingCategory.BEYOND_CEILING:
            self.response_latencies.append(latency_ms)
        if classification.is_valid:
            self.valid_latencies.append(latency_ms)

        if category is TimingCategory.ANTICIPATORY:
            self._log(DecisionKind.ANTICIPATORY_RESPONSE, trial_id=trial_id,
                      latency_ms=latency_ms, limit_ms=self.config.anticipatory_max_ms,
                      anticipatory_fraction=self.anticipatory_fraction)
        elif category is TimingCategory.BEYOND_CEILING:
            self._log(DecisionKind.BEYOND_CEILING_RESPONSE, trial_id=trial_id,
                      latency_ms=latency_ms, ceiling_ms=self.config.response_ceiling_ms,
                      counted_as_response=counts)

        self._update_fatigue(trial_id)
        return classification

    @property
    def responses_analyzed(self) -> int:
        return sum(1 for c in self.classifications
                   if c.category not in (TimingCategory.NO_RESPONSE, TimingCategory.BEYOND_CEILING))

    @property
    def anticipatory_count(self) -> int:
        return sum(1 for c in self.classifications if c.category is TimingCategory.ANTICIPATORY)

    @property
    def anticipatory_fraction(self) -> float:
        analyzed = self.responses_analyzed
        return self.anticipatory_count / analyzed if analyzed else 0.0

    @property
    def baseline_average(self) -> Optional[float]:
        if len(self.valid_latencies) < self.config.baseline_window:
            return None
        return float(np.mean(self.valid_latencies[:self.config.baseline_window]))

    @property
    def moving_average(self) -> Optional[float]:
        if not self.valid_latencies:
            return None
        return float(np.mean(self.valid_latencies[-self.config.fatigue_window:]))

    @property
    def fatigue_trend_magnitude(self) -> float:
        """Relative slowing of the moving average over the baseline (0 when none)."""
        baseline = self.baseline_average
        # Baseline and recent window must not be the same responses
        if baseline is None or len(self.valid_latencies) <= self.config.baseline_window:
            return 0.0
        return max(0.0, self.moving_average / baseline - 1.0)

    @property
    def is_fatigued(self) -> bool:
        return self.fatigue_trend_magnitude > self.config.fatigue_slowdown_fraction

    def latency_cv(self) -> Optional[float]:
        """Coefficient of variation of all timed responses."""
        if len(self.response_latencies) < MIN_LATENCIES_FOR_DISPERSION:
            return None
        return float(variation(self.response_latencies))

    def reliability_score(self) -> ReliabilityScore:
        if len(self.valid_latencies) >= MIN_LATENCIES_FOR_DISPERSION:
            consistency = _consistency_from_cv(float(variation(self.valid_latencies)))
        else:
            consistency = 1.0
        return ReliabilityScore(
            valid_latency_consistency=round(consistency, 4),
            anticipatory_fraction=round(self.anticipatory_fraction, 4),
            fatigue_trend_magnitude=round(self.fatigue_trend_magnitude, 4),
            fatigued=self.is_fatigued,
            latency_cv=None if self.latency_cv() is None else round(self.latency_cv(), 4),
            responses_analyzed=self.responses_analyzed,
        )

    def _update_fatigue(self, trial_id):
        fatigued = self.is_fatigued
        if fatigued and not self._fatigued:
            logger.info("Fatigue detected: moving average %.0f ms vs baseline %.0f ms",
                        self.moving_average, self.baseline_average)
            self._log(DecisionKind.FATIGUE_DETECTED, trial_id=trial_id,
                      moving_average_ms=round(self.moving_average, 1),
                      baseline_ms=round(self.baseline_average, 1),
                      slowdown=round(self.fatigue_trend_magnitude, 3))
        self._fatigued = fatigued

    def _log(self, kind, **payload):
        if self.decision_log is not None:
            self.decision_log.record(DecisionSource.TIMING, kind, **payload)
