"""
Append-only decision audit trail.

Components record structured decisions; the attached formatter (normally the
ClinicalExplainer) turns each payload into a rationale string. Formatter and
subscriber failures are contained here so they can only degrade the audit
text, never the decisions themselves.
"""
# Standard library imports
import logging
from dataclasses import dataclass, replace
from enum import Enum
from types import MappingProxyType
from typing import Callable, Iterator, List, Mapping, Optional

logger = logging.getLogger(__name__)


class DecisionSource(str, Enum):
    PROTOCOL = 'protocol'
    ORCHESTRATOR = 'orchestrator'
    TIMING = 'timing'
    CATCH_TRIALS = 'catch_trials'
    RISK = 'risk'


class DecisionKind(str, Enum):
    SESSION_STARTED = 'session_started'
    FAMILIARIZATION_RESULT = 'familiarization_result'
    PAIR_STARTED = 'pair_started'
    EAR_SWITCHED = 'ear_switched'
    STIMULUS_PRESENTED = 'stimulus_presented'
    CATCH_TRIAL_INSERTED = 'catch_trial_inserted'
    FIRST_RESPONSE = 'first_response'
    LEVEL_ADJUSTED = 'level_adjusted'
    THRESHOLD_CONFIRMED = 'threshold_confirmed'
    FREQUENCY_ABANDONED = 'frequency_abandoned'
    CATCH_TRIAL_RESULT = 'catch_trial_result'
    RESPONSE_TIMEOUT = 'response_timeout'
    SPURIOUS_RESPONSE = 'spurious_response'
    ANTICIPATORY_RESPONSE = 'anticipatory_response'
    BEYOND_CEILING_RESPONSE = 'beyond_ceiling_response'
    FATIGUE_DETECTED = 'fatigue_detected'
    PLAYBACK_RETRY = 'playback_retry'
    PLAYBACK_FAILED = 'playback_failed'
    RISK_RECOMPUTED = 'risk_recomputed'
    RISK_ESCALATED = 'risk_escalated'
    TRIAL_ABORTED = 'trial_aborted'
    SESSION_ABORTED = 'session_aborted'
    SESSION_RESUMED = 'session_resumed'
    SESSION_COMPLETE = 'session_complete'


@dataclass(frozen=True)
class DecisionLogEntry:
    timestamp: float
    source: DecisionSource
    kind: DecisionKind
    payload: Mapping
    rationale: str = ''

    def to_dict(self) -> dict:
        return {
            'timestamp': self.timestamp,
            'source': self.source.value,
            'kind': self.kind.value,
            'payload': _plain(self.payload),
            'rationale': self.rationale,
        }


def _plain(value):
    """Convert enums, tuples and mappings into JSON-friendly values."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Mapping):
        return {str(_plain(k)): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


class DecisionLog:
    """Ordered stream of DecisionLogEntry records."""

    def __init__(self, clock, formatter: Optional[Callable[[DecisionLogEntry], str]] = None):
        self.clock = clock
        self.formatter = formatter
        self._entries: List[DecisionLogEntry] = []
        self._subscribers: List[Callable[[DecisionLogEntry], None]] = []

    def subscribe(self, callback: Callable[[DecisionLogEntry], None]) -> None:
        self._subscribers.append(callback)

    def record(self, source: DecisionSource, kind: DecisionKind, **payload) -> DecisionLogEntry:
        entry = DecisionLogEntry(
            timestamp=self.clock.now(),
            source=DecisionSource(source),
            kind=DecisionKind(kind),
            payload=MappingProxyType(dict(payload)),
        )
        entry = replace(entry, rationale=self._explain(entry))
        self._entries.append(entry)
        logger.debug("[%s] %s: %s", entry.source.value, entry.kind.value, entry.rationale)

        for callback in self._subscribers:
            try:
                callback(entry)
            except Exception:
                logger.exception("Decision log subscriber failed on %s", entry.kind.value)
        return entry

    def _explain(self, entry: DecisionLogEntry) -> str:
        if self.formatter is None:
            return entry.kind.value
        try:
            return self.formatter(entry)
        except Exception:
            logger.exception("Explainer failed on %s", entry.kind.value)
            return f"{entry.kind.value} (explanation unavailable)"

    def entries(self, kind: Optional[DecisionKind] = None) -> List[DecisionLogEntry]:
        if kind is None:
            return list(self._entries)
        return [e for e in self._entries if e.kind is DecisionKind(kind)]

    def __iter__(self) -> Iterator[DecisionLogEntry]:
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def __deepcopy__(self, memo):
        # Subscribers and formatter are live collaborators, not session data
        clone = DecisionLog(self.clock, formatter=None)
        clone._entries = list(self._entries)
        memo[id(self)] = clone
        return clone

    def to_list(self) -> List[dict]:
        return [e.to_dict() for e in self._entries]
