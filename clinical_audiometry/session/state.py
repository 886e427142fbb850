"""
Session aggregate owned by the orchestrator.
"""
# Standard library imports
import copy
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Dict, List, Optional, Tuple

# Third-party imports
import numpy as np
import pandas as pd

# Local imports
from ..audit.decision_log import DecisionLog
from ..audit.explainer import classify_hearing_level
from ..utils.defaults import PTA_FREQUENCIES
from .models import (
    CatchTrialSummary,
    Ear,
    FrequencyStatus,
    PerFrequencyState,
    ReliabilityScore,
    ResponseEvent,
    RiskAssessment,
    SessionStatus,
    Trial,
    TrialOutcome,
)

# Frequency states keyed by (ear, frequency, is_retest)
StateKey = Tuple[Ear, int, bool]

SIGNIFICANT_ASYMMETRY_DB = 15


def _plain(value):
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(_plain(k)): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, (np.integer,)):
        return int(value)
    if isinstance(value, (np.floating,)):
        return float(value)
    return value


@dataclass
class SessionState:
    """
    Everything known about one examination.

    Collaborators only ever receive copies produced by ``snapshot()``.
    """
    session_id: str
    decision_log: DecisionLog
    status: SessionStatus = SessionStatus.IN_PROGRESS
    frequency_states: Dict[StateKey, PerFrequencyState] = field(default_factory=dict)
    interrupted_states: List[PerFrequencyState] = field(default_factory=list)
    trials: List[Trial] = field(default_factory=list)
    responses: List[ResponseEvent] = field(default_factory=list)
    outcomes: List[TrialOutcome] = field(default_factory=list)
    catch_summary: CatchTrialSummary = field(default_factory=CatchTrialSummary)
    reliability: ReliabilityScore = field(default_factory=ReliabilityScore)
    risk_history: List[RiskAssessment] = field(default_factory=list)
    familiarization_acknowledged: Optional[bool] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @staticmethod
    def key_for(state: PerFrequencyState) -> StateKey:
        return (state.ear, state.frequency_hz, state.is_retest)

    def add_frequency_state(self, state: PerFrequencyState) -> None:
        self.frequency_states[self.key_for(state)] = state

    def snapshot(self) -> 'SessionState':
        """Deep, detached copy for presentation and persistence collaborators."""
        return copy.deepcopy(self)

    @property
    def latest_risk(self) -> Optional[RiskAssessment]:
        return self.risk_history[-1] if self.risk_history else None

    def ears_tested(self) -> List[Ear]:
        ears = []
        for state in self.frequency_states.values():
            if state.ear not in ears:
                ears.append(state.ear)
        return ears

    def primary_states(self, ear=None) -> List[PerFrequencyState]:
        return [s for s in self.frequency_states.values()
                if not s.is_retest and (ear is None or s.ear is Ear(ear))]

    def states_with_status(self, status) -> List[PerFrequencyState]:
        return [s for s in self.frequency_states.values() if s.status is FrequencyStatus(status)]

    def thresholds(self, ear) -> Dict[int, Optional[int]]:
        """Primary thresholds for an ear; None where no threshold was confirmed."""
        return {s.frequency_hz: s.threshold if s.is_confirmed else None
                for s in self.primary_states(ear)}

    def pure_tone_average(self, ear, frequencies=PTA_FREQUENCIES) -> Optional[float]:
        thresholds = self.thresholds(ear)
        values = [thresholds[f] for f in frequencies if thresholds.get(f) is not None]
        if not values:
            return None
        return round(float(np.mean(values)), 1)

    def summary(self) -> dict:
        """PTA, loss classification and bilateral asymmetry per ear."""
        summary = {}
        for ear in Ear:
            pta = self.pure_tone_average(ear)
            confidences = [s.confidence for s in self.primary_states(ear) if s.is_confirmed]
            summary[ear.value] = {
                'pta': pta,
                'classification': classify_hearing_level(pta) if pta is not None else None,
                'average_confidence': round(float(np.mean(confidences)), 3) if confidences else None,
                'frequencies_confirmed': len(confidences),
            }
        right, left = summary['right']['pta'], summary['left']['pta']
        if right is not None and left is not None:
            asymmetry = abs(right - left)
            summary['bilateral'] = {
                'asymmetry': asymmetry,
                'asymmetry_significant': asymmetry > SIGNIFICANT_ASYMMETRY_DB,
                'bilateral_pta': round((right + left) / 2, 1),
                'worse_ear': 'left' if left > right else 'right',
            }
        else:
            summary['bilateral'] = None
        return summary

    def thresholds_frame(self) -> pd.DataFrame:
        """Tabular view of every frequency state, in test order."""
        rows = [{
            'ear': s.ear.value,
            'frequency_hz': s.frequency_hz,
            'retest': s.is_retest,
            'status': s.status.value,
            'threshold_db_hl': s.threshold,
            'confidence': s.confidence,
            'reversals': s.reversal_count,
            'trials': s.trial_count,
            'follow_up_required': s.follow_up_required,
        } for s in self.frequency_states.values()]
        columns = ['ear', 'frequency_hz', 'retest', 'status', 'threshold_db_hl', 'confidence',
                   'reversals', 'trials', 'follow_up_required']
        return pd.DataFrame(rows, columns=columns)

    def to_dict(self) -> dict:
        """JSON-serialisable representation handed to persistence."""
        return {
            'session_id': self.session_id,
            'status': self.status.value,
            'started_at': self.started_at,
            'finished_at': self.finished_at,
            'familiarization_acknowledged': self.familiarization_acknowledged,
            'frequency_states': [_plain(asdict(s)) for s in self.frequency_states.values()],
            'interrupted_states': [_plain(asdict(s)) for s in self.interrupted_states],
            'trials': [_plain(asdict(t)) for t in self.trials],
            'responses': [_plain(asdict(r)) for r in self.responses],
            'outcomes': [_plain(asdict(o)) for o in self.outcomes],
            'catch_summary': _plain(asdict(self.catch_summary)),
            'reliability': _plain(asdict(self.reliability)),
            'risk_history': [_plain(asdict(r)) for r in self.risk_history],
            'decision_log': self.decision_log.to_list(),
            'summary': _plain(self.summary()),
        }
