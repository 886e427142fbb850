"""
False-response detection from silent catch trials and repeated stimuli.
"""
# Standard library imports
import logging
from typing import Dict, List, Optional, Tuple

# Local imports
from ..audit.decision_log import DecisionKind, DecisionSource
from ..session.models import CatchTrialSummary, Ear, Trial
from ..utils.config import CatchTrialConfig

logger = logging.getLogger(__name__)


class FalseResponseDetector:
    """
    Tracks catch-trial outcomes for the whole session.

    A response to a catch trial (silence) is a false positive. Genuine
    stimuli repeated at an already-tested level are compared with the earlier
    outcome: a miss where the patient previously responded is counted towards
    the false-negative estimate. Neither measure feeds the adaptive loop.
    """

    def __init__(self, config: Optional[CatchTrialConfig] = None, decision_log=None):
        self.config = config or CatchTrialConfig()
        self.decision_log = decision_log
        self.catch_trials_presented = 0
        self.false_positives = 0
        self.catch_history: List[Tuple[int, bool]] = []
        self._genuine_outcomes: Dict[Tuple[Ear, int, int], bool] = {}
        self.repeated_comparisons = 0
        self.repeated_misses = 0

    def record_catch_outcome(self, trial: Trial, responded, latency_ms=None) -> CatchTrialSummary:
        if not trial.is_catch_trial:
            raise ValueError(f"Trial {trial.id} is not a catch trial")
        self.catch_trials_presented += 1
        self.catch_history.append((trial.id, bool(responded)))
        if responded:
            self.false_positives += 1
            logger.info("False positive on catch trial %d (%d/%d)", trial.id,
                        self.false_positives, self.catch_trials_presented)

        summary = self.summary()
        if self.decision_log is not None:
            self.decision_log.record(
                DecisionSource.CATCH_TRIALS, DecisionKind.CATCH_TRIAL_RESULT,
                trial_id=trial.id, ear=trial.ear.value, frequency_hz=trial.frequency_hz,
                responded=bool(responded), latency_ms=latency_ms,
                false_positives=summary.false_positives,
                catch_trials=summary.catch_trials_presented,
                false_positive_rate=summary.false_positive_rate,
                ceiling=self.config.false_positive_ceiling,
                ceiling_breached=self.ceiling_breached,
            )
        return summary

    def record_genuine(self, ear, frequency_hz, level_db_hl, responded):
        """Compare a scored presentation with any earlier one at the same level."""
        key = (Ear(ear), int(frequency_hz), int(level_db_hl))
        previous = self._genuine_outcomes.get(key)
        if previous is not None:
            self.repeated_comparisons += 1
            if previous and not responded:
                self.repeated_misses += 1
        self._genuine_outcomes[key] = bool(responded) or bool(previous)

    @property
    def false_positive_rate(self) -> float:
        if self.catch_trials_presented == 0:
            return 0.0
        return self.false_positives / self.catch_trials_presented

    @property
    def false_negative_estimate(self) -> float:
        if self.repeated_comparisons == 0:
            return 0.0
        return self.repeated_misses / self.repeated_comparisons

    @property
    def ceiling_breached(self) -> bool:
        return (self.catch_trials_presented >= self.config.min_catch_trials_for_escalation
                and self.false_positive_rate > self.config.false_positive_ceiling)

    def summary(self) -> CatchTrialSummary:
        return CatchTrialSummary(
            catch_trials_presented=self.catch_trials_presented,
            false_positives=self.false_positives,
            false_positive_rate=round(self.false_positive_rate, 4),
            repeated_comparisons=self.repeated_comparisons,
            false_negative_estimate=round(self.false_negative_estimate, 4),
        )
