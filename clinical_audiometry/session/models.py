"""
Records and enumerations shared by the examiner components.
"""
# Standard library imports
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple


class Ear(str, Enum):
    RIGHT = 'right'
    LEFT = 'left'

    @property
    def opposite(self) -> 'Ear':
        return Ear.LEFT if self is Ear.RIGHT else Ear.RIGHT


class Direction(str, Enum):
    ASCENDING = 'ascending'
    DESCENDING = 'descending'


class FrequencyStatus(str, Enum):
    SEEKING_FIRST_RESPONSE = 'SEEKING_FIRST_RESPONSE'
    BRACKETING = 'BRACKETING'
    THRESHOLD_CONFIRMED = 'THRESHOLD_CONFIRMED'
    ABANDONED = 'ABANDONED'
    NOT_TESTED = 'NOT_TESTED'

    @property
    def is_final(self) -> bool:
        return self in (FrequencyStatus.THRESHOLD_CONFIRMED, FrequencyStatus.ABANDONED,
                        FrequencyStatus.NOT_TESTED)


class ThresholdRule(str, Enum):
    """How the threshold is read off a bracketed frequency."""
    LOWEST_RESPONSE = 'lowest_response'
    LAST_REVERSAL = 'last_reversal'
    ASCENDING_MAJORITY = 'ascending_majority'


class TrialKind(str, Enum):
    FAMILIARIZATION = 'familiarization'
    SCORED = 'scored'
    CATCH = 'catch'


class Resolution(str, Enum):
    """How a trial was closed."""
    RESPONSE = 'response'
    NO_RESPONSE = 'no_response'
    TIMEOUT = 'timeout'
    BEYOND_CEILING = 'beyond_ceiling'
    PLAYBACK_FAILURE = 'playback_failure'
    ABORTED = 'aborted'


class TimingCategory(str, Enum):
    ANTICIPATORY = 'anticipatory'
    EARLY = 'early'
    OPTIMAL = 'optimal'
    NORMAL = 'normal'
    SLOW_VALID = 'slow_valid'
    DELAYED = 'delayed'
    BEYOND_CEILING = 'beyond_ceiling'
    NO_RESPONSE = 'no_response'


class SessionStatus(str, Enum):
    IN_PROGRESS = 'IN_PROGRESS'
    COMPLETE = 'COMPLETE'
    INCOMPLETE = 'INCOMPLETE'


class RiskCategory(str, Enum):
    LOW = 'Low'
    MODERATE = 'Moderate'
    HIGH = 'High'
    VERY_HIGH = 'VeryHigh'

    @property
    def rank(self) -> int:
        return list(RiskCategory).index(self)

    def escalate(self, levels: int = 1) -> 'RiskCategory':
        ordered = list(RiskCategory)
        return ordered[min(len(ordered) - 1, self.rank + levels)]


@dataclass(frozen=True)
class Stimulus:
    ear: Ear
    frequency_hz: int
    level_db_hl: int


@dataclass(frozen=True)
class Trial:
    """One presentation issued by the orchestrator. Immutable once created."""
    id: int
    ear: Ear
    frequency_hz: int
    level_db_hl: int
    is_catch_trial: bool
    presented_at: float
    kind: TrialKind = TrialKind.SCORED

    @property
    def is_scored(self) -> bool:
        return self.kind is TrialKind.SCORED


@dataclass(frozen=True)
class ResponseEvent:
    trial_id: int
    responded: bool
    latency_ms: Optional[float]
    observed_at: float


@dataclass(frozen=True)
class TrialOutcome:
    """Resolution of a trial as consumed by the examiner."""
    trial: Trial
    responded: bool
    latency_ms: Optional[float]
    resolution: Resolution
    timing_category: Optional[TimingCategory] = None


@dataclass(frozen=True)
class Presentation:
    """A scored entry in a frequency's trial history."""
    trial_number: int
    level_db_hl: int
    responded: bool
    direction: Direction
    is_reversal: bool
    trial_id: Optional[int] = None
    latency_ms: Optional[float] = None
    validity: float = 1.0


@dataclass
class PerFrequencyState:
    """Adaptive state of one (ear, frequency) pair."""
    ear: Ear
    frequency_hz: int
    current_level: int
    direction: Direction = Direction.ASCENDING
    reversal_count: int = 0
    trial_history: List[Presentation] = field(default_factory=list)
    status: FrequencyStatus = FrequencyStatus.SEEKING_FIRST_RESPONSE
    threshold: Optional[int] = None
    confidence: Optional[float] = None
    reversal_levels: List[int] = field(default_factory=list)
    is_retest: bool = False
    abandon_reason: Optional[str] = None
    follow_up_required: bool = False

    @property
    def key(self) -> Tuple[Ear, int]:
        return (self.ear, self.frequency_hz)

    @property
    def trial_count(self) -> int:
        return len(self.trial_history)

    @property
    def is_confirmed(self) -> bool:
        return self.status is FrequencyStatus.THRESHOLD_CONFIRMED


@dataclass(frozen=True)
class CatchTrialSummary:
    catch_trials_presented: int = 0
    false_positives: int = 0
    false_positive_rate: float = 0.0
    repeated_comparisons: int = 0
    false_negative_estimate: float = 0.0


@dataclass(frozen=True)
class ReliabilityScore:
    valid_latency_consistency: float = 1.0
    anticipatory_fraction: float = 0.0
    fatigue_trend_magnitude: float = 0.0
    fatigued: bool = False
    latency_cv: Optional[float] = None
    responses_analyzed: int = 0


@dataclass(frozen=True)
class RiskFactor:
    name: str
    sub_score: float
    weight: float
    contribution: float
    detail: str = ''


@dataclass(frozen=True)
class RiskAssessment:
    score: float
    category: RiskCategory
    contributing_factors: Tuple[RiskFactor, ...]
    escalations: Tuple[str, ...] = ()
    sequence: int = 0
    trigger: Optional[Tuple[str, int]] = None

    def factor(self, name: str) -> RiskFactor:
        for f in self.contributing_factors:
            if f.name == name:
                return f
        raise KeyError(name)
