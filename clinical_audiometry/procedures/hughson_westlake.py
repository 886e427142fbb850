"""
Adaptive threshold seeking for a single (ear, frequency) pair using the
modified Hughson-Westlake procedure.
"""
# Standard library imports
import logging
from typing import Dict, List, Optional

# Third-party imports
import numpy as np

# Local imports
from ..audit.decision_log import DecisionKind, DecisionSource
from ..session.models import (
    Direction,
    Ear,
    FrequencyStatus,
    PerFrequencyState,
    Presentation,
    Stimulus,
    ThresholdRule,
)
from ..utils.config import ProtocolConfig
from ..utils.defaults import CONFIDENCE_WEIGHTS
from ..utils.errors import ProtocolExceeded, ProtocolStateError, SpuriousResponse

logger = logging.getLogger(__name__)

UNDETERMINED_FLAG = "undetermined - follow-up required"


class ProtocolStateMachine:
    """
    Runs SEEKING_FIRST_RESPONSE -> BRACKETING -> THRESHOLD_CONFIRMED | ABANDONED
    for one frequency on one ear.

    Only scored presentations reach this class; catch trials are routed
    elsewhere by the orchestrator and never touch the level, direction or
    reversal count.
    """

    def __init__(self, ear, frequency_hz, config: Optional[ProtocolConfig] = None,
                 decision_log=None, is_retest=False):
        """
        Args:
            ear (Ear or str): Test ear
            frequency_hz (int): Test frequency in Hz
            config (ProtocolConfig): Stepping and stopping parameters
            decision_log (DecisionLog): Audit trail receiving every transition
            is_retest (bool): Whether this pair repeats an earlier measurement
        """
        self.config = config or ProtocolConfig()
        self.decision_log = decision_log
        self.state = PerFrequencyState(
            ear=Ear(ear),
            frequency_hz=int(frequency_hz),
            current_level=self.config.clamp(self.config.start_level),
            is_retest=is_retest,
        )
        self._outstanding = False
        self._ceiling_misses = 0
        self._floor_hits = 0

    @property
    def status(self) -> FrequencyStatus:
        return self.state.status

    @property
    def is_finished(self) -> bool:
        return self.state.status.is_final

    @property
    def has_outstanding(self) -> bool:
        return self._outstanding

    def present_next_stimulus(self) -> Stimulus:
        """Return the next stimulus to request and mark it outstanding."""
        if self.is_finished:
            raise ProtocolStateError(
                f"{self.state.ear.value} {self.state.frequency_hz} Hz is {self.state.status.value}")
        self.state.current_level = self.config.clamp(self.state.current_level)
        self._outstanding = True
        return Stimulus(self.state.ear, self.state.frequency_hz, self.state.current_level)

    def record_response(self, responded, latency_ms=None, validity=1.0, trial_id=None):
        """
        Consume the outcome of the outstanding stimulus.

        Args:
            responded (bool): Whether the patient responded
            latency_ms (float): Response latency, if any
            validity (float): Timing reliability weight (0-1) of this response
            trial_id (int): Orchestrator trial id, kept for auditing

        Returns:
            PerFrequencyState: The updated state

        Raises:
            SpuriousResponse: No stimulus is outstanding
            ProtocolExceeded: The frequency was abandoned by this response
        """
        if not self._outstanding:
            raise SpuriousResponse(trial_id)
        self._outstanding = False

        state = self.state
        level = state.current_level
        responded = bool(responded)
        is_reversal = False

        if state.status is FrequencyStatus.SEEKING_FIRST_RESPONSE:
            if responded:
                is_reversal = True
        else:
            previous = self._outcome_at_previous_level(level)
            is_reversal = previous is not None and previous != responded

        state.trial_history.append(Presentation(
            trial_number=state.trial_count + 1,
            level_db_hl=level,
            responded=responded,
            direction=state.direction,
            is_reversal=is_reversal,
            trial_id=trial_id,
            latency_ms=latency_ms,
            validity=float(validity),
        ))
        if is_reversal:
            state.reversal_count += 1
            state.reversal_levels.append(level)

        self._track_output_limits(level, responded)

        if state.status is FrequencyStatus.SEEKING_FIRST_RESPONSE:
            if responded:
                state.status = FrequencyStatus.BRACKETING
                self._step(level - self.config.step_down, Direction.DESCENDING)
                self._log(DecisionKind.FIRST_RESPONSE, level=level,
                          next_level=state.current_level, reversal=state.reversal_count)
            else:
                self._step(level + self.config.seek_step_up, Direction.ASCENDING)
                self._log(DecisionKind.LEVEL_ADJUSTED, phase='seeking', responded=False,
                          level=level, next_level=state.current_level,
                          step=self.config.seek_step_up, reversal=None, direction_changed=False)
        else:
            old_direction = state.direction
            if responded:
                self._step(level - self.config.step_down, Direction.DESCENDING)
                step = -self.config.step_down
            else:
                self._step(level + self.config.bracket_step_up, Direction.ASCENDING)
                step = self.config.bracket_step_up
            self._log(DecisionKind.LEVEL_ADJUSTED, phase='bracketing', responded=responded,
                      level=level, next_level=state.current_level, step=step,
                      reversal=state.reversal_count if is_reversal else None,
                      direction_changed=old_direction is not state.direction)

        if state.reversal_count >= self.config.reversals_to_confirm:
            self._confirm()
        else:
            self._check_abandonment()
        return state

    def mark_not_tested(self):
        """Close an interrupted pair without a result; its history is kept."""
        self._outstanding = False
        if self.state.status in (FrequencyStatus.THRESHOLD_CONFIRMED, FrequencyStatus.ABANDONED):
            return self.state
        self.state.status = FrequencyStatus.NOT_TESTED
        return self.state

    def _outcome_at_previous_level(self, level):
        """Outcome at the most recent presentation made at a different level."""
        for presentation in reversed(self.state.trial_history):
            if presentation.level_db_hl != level:
                return presentation.responded
        return None

    def _step(self, next_level, direction):
        self.state.current_level = self.config.clamp(next_level)
        self.state.direction = direction

    def _track_output_limits(self, level, responded):
        if level >= self.config.max_level and not responded:
            self._ceiling_misses += 1
        if level <= self.config.min_level and responded:
            self._floor_hits += 1

    def _check_abandonment(self):
        state = self.state
        reason = None
        if self._ceiling_misses >= self.config.output_limit_presentations:
            reason = f"no response at the {self.config.max_level} dB HL output limit"
        elif self._floor_hits >= self.config.output_limit_presentations:
            reason = f"responses persist at the {self.config.min_level} dB HL output floor"
        elif state.trial_count > self.config.max_trials:
            reason = f"trial ceiling of {self.config.max_trials} exceeded"
        if reason is None:
            return

        state.status = FrequencyStatus.ABANDONED
        state.abandon_reason = reason
        state.follow_up_required = True
        logger.warning("%s ear %d Hz abandoned: %s", state.ear.value, state.frequency_hz, reason)
        self._log(DecisionKind.FREQUENCY_ABANDONED, reason=reason,
                  trials=state.trial_count, reversals=state.reversal_count,
                  last_level=state.trial_history[-1].level_db_hl, flag=UNDETERMINED_FLAG)
        raise ProtocolExceeded(state.ear.value, state.frequency_hz, reason, state.trial_count)

    def _confirm(self):
        state = self.state
        threshold, rule_used = self._threshold()
        state.threshold = threshold
        state.confidence = self._confidence()
        state.status = FrequencyStatus.THRESHOLD_CONFIRMED
        logger.debug("%s ear %d Hz confirmed at %d dB HL (confidence %.2f)",
                     state.ear.value, state.frequency_hz, threshold, state.confidence)
        self._log(DecisionKind.THRESHOLD_CONFIRMED, threshold=threshold,
                  confidence=state.confidence, reversals=state.reversal_count,
                  trials=state.trial_count, rule=rule_used.value,
                  reversal_levels=list(state.reversal_levels))

    def _threshold(self):
        """Apply the configured threshold rule; returns (threshold, rule actually used)."""
        history = self.state.trial_history
        rule = self.config.threshold_rule

        if rule is ThresholdRule.LAST_REVERSAL:
            for presentation in reversed(history):
                if presentation.is_reversal and presentation.responded:
                    return presentation.level_db_hl, rule
        elif rule is ThresholdRule.ASCENDING_MAJORITY:
            level = self._ascending_majority_level()
            if level is not None:
                return level, rule

        responded_levels = [p.level_db_hl for p in history if p.responded]
        return min(responded_levels), ThresholdRule.LOWEST_RESPONSE

    def _ascending_majority_level(self):
        responses: Dict[int, int] = {}
        n_tests: Dict[int, int] = {}
        for p in self.state.trial_history:
            if p.direction is not Direction.ASCENDING:
                continue
            n_tests[p.level_db_hl] = n_tests.get(p.level_db_hl, 0) + 1
            responses[p.level_db_hl] = responses.get(p.level_db_hl, 0) + int(p.responded)

        qualifying = [
            level for level, n in n_tests.items()
            if n >= self.config.ascending_min_trials
            and responses[level] / n >= self.config.ascending_response_ratio
        ]
        return min(qualifying) if qualifying else None

    def _confidence(self):
        """
        Confidence (0-1) from reversal efficiency, timing validity of responses
        and the spread of reversal levels.
        """
        state = self.state
        efficiency = min(1.0, state.reversal_count / max(state.trial_count, 1))

        validities: List[float] = [p.validity for p in state.trial_history if p.responded]
        timing = float(np.mean(validities)) if validities else 0.0

        spread_db = float(np.std(state.reversal_levels)) if state.reversal_levels else 0.0
        spread = 1.0 - min(1.0, spread_db / self.config.confidence_spread_tolerance_db)

        confidence = (CONFIDENCE_WEIGHTS['reversal_efficiency'] * efficiency
                      + CONFIDENCE_WEIGHTS['timing_validity'] * timing
                      + CONFIDENCE_WEIGHTS['reversal_spread'] * spread)
        return round(float(np.clip(confidence, 0.0, 1.0)), 3)

    def _log(self, kind, **payload):
        if self.decision_log is None:
            return
        self.decision_log.record(
            DecisionSource.PROTOCOL, kind,
            ear=self.state.ear.value,
            frequency_hz=self.state.frequency_hz,
            is_retest=self.state.is_retest,
            status=self.state.status.value,
            **payload,
        )
