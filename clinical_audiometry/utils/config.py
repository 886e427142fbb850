"""
Validated examiner configuration.

Every tunable of the examiner lives in one frozen structure that is checked
once at construction. Invalid values raise ConfigurationError before any
trial is issued.
"""
# Standard library imports
from dataclasses import dataclass, field, fields, asdict
from typing import Dict, Optional, Tuple

# Third-party imports
import yaml

# Local imports
from ..session.models import Ear, ThresholdRule
from .errors import ConfigurationError
from . import defaults


def _require(condition, message):
    if not condition:
        raise ConfigurationError(message)


@dataclass(frozen=True)
class ProtocolConfig:
    """Hughson-Westlake stepping and stopping parameters."""

    start_level: int = defaults.DEFAULT_STARTING_LEVEL
    min_level: int = defaults.MIN_TEST_LEVEL
    max_level: int = defaults.MAX_TEST_LEVEL
    seek_step_up: int = defaults.SEEKING_STEP_UP
    step_down: int = defaults.BRACKETING_STEP_DOWN
    bracket_step_up: int = defaults.BRACKETING_STEP_UP
    reversals_to_confirm: int = defaults.DEFAULT_REVERSALS_TO_CONFIRM
    max_trials: int = defaults.MAX_TRIALS_PER_FREQUENCY
    output_limit_presentations: int = defaults.OUTPUT_LIMIT_PRESENTATIONS
    threshold_rule: ThresholdRule = ThresholdRule.LOWEST_RESPONSE
    ascending_min_trials: int = defaults.ASCENDING_MIN_TRIALS
    ascending_response_ratio: float = defaults.ASCENDING_RESPONSE_RATIO
    confidence_spread_tolerance_db: float = defaults.CONFIDENCE_SPREAD_TOLERANCE_DB

    def __post_init__(self):
        try:
            object.__setattr__(self, 'threshold_rule', ThresholdRule(self.threshold_rule))
        except ValueError:
            raise ConfigurationError(f"Unknown threshold rule: {self.threshold_rule!r}")
        _require(defaults.MIN_TEST_LEVEL <= self.min_level < self.max_level <= defaults.MAX_TEST_LEVEL,
                 f"Level range [{self.min_level}, {self.max_level}] must lie within "
                 f"[{defaults.MIN_TEST_LEVEL}, {defaults.MAX_TEST_LEVEL}] dB HL")
        _require(self.min_level <= self.start_level <= self.max_level,
                 f"start_level {self.start_level} outside [{self.min_level}, {self.max_level}] dB HL")
        for name in ('seek_step_up', 'step_down', 'bracket_step_up'):
            _require(getattr(self, name) > 0, f"{name} must be positive")
        _require(self.reversals_to_confirm >= 1, "reversals_to_confirm must be at least 1")
        _require(self.max_trials >= self.reversals_to_confirm,
                 "max_trials must allow at least reversals_to_confirm trials")
        _require(self.output_limit_presentations >= 1,
                 "output_limit_presentations must be at least 1")
        _require(self.ascending_min_trials >= 1, "ascending_min_trials must be at least 1")
        _require(0 < self.ascending_response_ratio <= 1,
                 "ascending_response_ratio must be in (0, 1]")
        _require(self.confidence_spread_tolerance_db > 0,
                 "confidence_spread_tolerance_db must be positive")

    def clamp(self, level):
        """Keep a level inside the configured output range."""
        return max(self.min_level, min(level, self.max_level))


@dataclass(frozen=True)
class TimingConfig:
    """Latency category boundaries (ms) and fatigue tracking."""

    anticipatory_max_ms: float = defaults.ANTICIPATORY_MAX_MS
    normal_min_ms: float = defaults.NORMAL_MIN_MS
    optimal_min_ms: float = defaults.OPTIMAL_MIN_MS
    optimal_max_ms: float = defaults.OPTIMAL_MAX_MS
    normal_max_ms: float = defaults.NORMAL_MAX_MS
    slow_valid_max_ms: float = defaults.SLOW_VALID_MAX_MS
    response_ceiling_ms: float = defaults.RESPONSE_CEILING_MS
    beyond_ceiling_is_no_response: bool = True
    fatigue_window: int = defaults.FATIGUE_WINDOW
    baseline_window: int = defaults.FATIGUE_BASELINE_WINDOW
    fatigue_slowdown_fraction: float = defaults.FATIGUE_SLOWDOWN_FRACTION

    def __post_init__(self):
        bounds = (self.anticipatory_max_ms, self.normal_min_ms, self.optimal_min_ms,
                  self.optimal_max_ms, self.normal_max_ms, self.slow_valid_max_ms,
                  self.response_ceiling_ms)
        _require(bounds[0] > 0, "anticipatory_max_ms must be positive")
        _require(all(a <= b for a, b in zip(bounds, bounds[1:])),
                 "Timing boundaries must be non-decreasing: anticipatory <= normal_min <= "
                 "optimal_min <= optimal_max <= normal_max <= slow_valid_max <= ceiling")
        _require(self.fatigue_window >= 1, "fatigue_window must be at least 1")
        _require(self.baseline_window >= 1, "baseline_window must be at least 1")
        _require(self.fatigue_slowdown_fraction > 0, "fatigue_slowdown_fraction must be positive")


@dataclass(frozen=True)
class CatchTrialConfig:
    """Catch-trial injection and false-positive ceiling."""

    probability: float = defaults.DEFAULT_CATCH_TRIAL_PROBABILITY
    min_scored_trials_before_catch: int = defaults.MIN_SCORED_TRIALS_BEFORE_CATCH
    false_positive_ceiling: float = defaults.MAX_FALSE_POSITIVE_RATE
    min_catch_trials_for_escalation: int = defaults.MIN_CATCH_TRIALS_FOR_ESCALATION

    def __post_init__(self):
        _require(0 <= self.probability < 1, "Catch-trial probability must be in [0, 1)")
        _require(self.min_scored_trials_before_catch >= 0,
                 "min_scored_trials_before_catch cannot be negative")
        _require(0 <= self.false_positive_ceiling <= 1, "false_positive_ceiling must be in [0, 1]")
        _require(self.min_catch_trials_for_escalation >= 1,
                 "min_catch_trials_for_escalation must be at least 1")


@dataclass(frozen=True)
class RiskConfig:
    """Malingering sub-score weights and detection bands."""

    threshold_consistency_weight: float = defaults.THRESHOLD_CONSISTENCY_WEIGHT
    cross_frequency_weight: float = defaults.CROSS_FREQUENCY_WEIGHT
    bilateral_symmetry_weight: float = defaults.BILATERAL_SYMMETRY_WEIGHT
    timing_anomaly_weight: float = defaults.TIMING_ANOMALY_WEIGHT
    retest_plausibility_band_db: float = defaults.RETEST_PLAUSIBILITY_BAND_DB
    retest_saturation_db: float = defaults.RETEST_SATURATION_DB
    adjacent_jump_db: float = defaults.ADJACENT_JUMP_DB
    inverted_slope_db: float = defaults.INVERTED_SLOPE_DB
    zigzag_db: float = defaults.ZIGZAG_DB
    flat_audiogram_min_frequencies: int = defaults.FLAT_AUDIOGRAM_MIN_FREQUENCIES
    asymmetry_db: float = defaults.ASYMMETRY_DB
    tight_symmetry_db: float = defaults.TIGHT_SYMMETRY_DB
    symmetry_min_pairs: int = defaults.SYMMETRY_MIN_PAIRS
    anticipatory_saturation_fraction: float = defaults.ANTICIPATORY_SATURATION_FRACTION
    uniform_latency_cv: float = defaults.UNIFORM_LATENCY_CV
    uniform_min_responses: int = defaults.UNIFORM_MIN_RESPONSES
    moderate_from: float = defaults.MODERATE_RISK_FROM
    high_from: float = defaults.HIGH_RISK_FROM
    very_high_from: float = defaults.VERY_HIGH_RISK_FROM

    def __post_init__(self):
        for name in ('threshold_consistency_weight', 'cross_frequency_weight',
                     'bilateral_symmetry_weight', 'timing_anomaly_weight'):
            _require(getattr(self, name) >= 0, f"{name} cannot be negative")
        for name in ('retest_saturation_db', 'adjacent_jump_db', 'inverted_slope_db',
                     'zigzag_db', 'asymmetry_db', 'tight_symmetry_db',
                     'anticipatory_saturation_fraction', 'uniform_latency_cv'):
            _require(getattr(self, name) > 0, f"{name} must be positive")
        _require(self.retest_plausibility_band_db >= 0, "retest_plausibility_band_db cannot be negative")
        _require(0 < self.moderate_from < self.high_from < self.very_high_from <= 100,
                 "Risk category bounds must satisfy 0 < moderate < high < very_high <= 100")

    @property
    def weights(self) -> Dict[str, float]:
        return {
            'threshold_consistency': self.threshold_consistency_weight,
            'cross_frequency_plausibility': self.cross_frequency_weight,
            'bilateral_symmetry': self.bilateral_symmetry_weight,
            'timing_anomaly': self.timing_anomaly_weight,
        }


_SECTIONS = {
    'protocol': ProtocolConfig,
    'timing': TimingConfig,
    'catch_trials': CatchTrialConfig,
    'risk': RiskConfig,
}


@dataclass(frozen=True)
class ExaminerConfig:
    """Complete examiner configuration.

    Args:
        ear_order: Ears in test order ('right', 'left').
        frequencies: Frequencies tested on each ear, in order.
        retest_frequencies: Frequencies re-run after each ear for consistency checks.
        familiarization_frequency: Frequency of the non-scored familiarization tone.
        familiarization_level: Level of the familiarization tone (dB HL).
        familiarization_max_attempts: Presentations allowed to obtain an acknowledgment.
        response_wait_s: Window after which a trial resolves as a non-response.
        audio_retry_backoff_s: Pause before retrying a failed playback.
        random_state: Seed for catch-trial injection.
    """

    ear_order: Tuple[Ear, ...] = tuple(Ear(e) for e in defaults.DEFAULT_EAR_ORDER)
    frequencies: Tuple[int, ...] = tuple(defaults.DEFAULT_TEST_FREQUENCIES)
    retest_frequencies: Tuple[int, ...] = defaults.DEFAULT_RETEST_FREQUENCIES
    familiarization_frequency: int = defaults.FAMILIARIZATION_FREQUENCY
    familiarization_level: int = defaults.FAMILIARIZATION_LEVEL
    familiarization_max_attempts: int = defaults.FAMILIARIZATION_MAX_ATTEMPTS
    response_wait_s: float = defaults.RESPONSE_WAIT_S
    audio_retry_backoff_s: float = defaults.AUDIO_RETRY_BACKOFF_S
    random_state: Optional[int] = None
    protocol: ProtocolConfig = field(default_factory=ProtocolConfig)
    timing: TimingConfig = field(default_factory=TimingConfig)
    catch_trials: CatchTrialConfig = field(default_factory=CatchTrialConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)

    def __post_init__(self):
        try:
            ears = tuple(Ear(e) for e in self.ear_order)
        except ValueError as e:
            raise ConfigurationError(f"Invalid ear in ear_order: {e}")
        _require(len(ears) > 0, "ear_order cannot be empty")
        _require(len(set(ears)) == len(ears), "ear_order contains duplicates")
        object.__setattr__(self, 'ear_order', ears)

        frequencies = tuple(int(f) for f in self.frequencies)
        _require(len(frequencies) > 0, "At least one test frequency is required")
        _require(all(f > 0 for f in frequencies), "Frequencies must be positive")
        _require(len(set(frequencies)) == len(frequencies), "Test frequencies contain duplicates")
        object.__setattr__(self, 'frequencies', frequencies)

        retests = tuple(int(f) for f in self.retest_frequencies)
        missing = [f for f in retests if f not in frequencies]
        _require(not missing, f"Retest frequencies not in test sequence: {missing}")
        object.__setattr__(self, 'retest_frequencies', retests)

        for name, section in _SECTIONS.items():
            _require(isinstance(getattr(self, name), section),
                     f"{name} must be a {section.__name__}")
        _require(self.protocol.min_level <= self.familiarization_level <= self.protocol.max_level,
                 f"familiarization_level {self.familiarization_level} outside the output range")
        _require(self.familiarization_frequency > 0, "familiarization_frequency must be positive")
        _require(self.familiarization_max_attempts >= 1,
                 "familiarization_max_attempts must be at least 1")
        _require(self.response_wait_s > 0, "response_wait_s must be positive")
        _require(self.audio_retry_backoff_s >= 0, "audio_retry_backoff_s cannot be negative")

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'ExaminerConfig':
        """Build a configuration from nested plain data (e.g. parsed YAML)."""
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {unknown}")

        for name, section in _SECTIONS.items():
            if name not in data:
                continue
            values = data[name] or {}
            if isinstance(values, section):
                continue
            section_known = {f.name for f in fields(section)}
            section_unknown = sorted(set(values) - section_known)
            if section_unknown:
                raise ConfigurationError(f"Unknown keys in '{name}': {section_unknown}")
            try:
                data[name] = section(**values)
            except TypeError as e:
                raise ConfigurationError(f"Invalid '{name}' section: {e}")
        try:
            return cls(**data)
        except TypeError as e:
            raise ConfigurationError(f"Invalid configuration: {e}")

    def to_dict(self) -> dict:
        data = asdict(self)
        data['ear_order'] = [e.value for e in self.ear_order]
        data['frequencies'] = list(self.frequencies)
        data['retest_frequencies'] = list(self.retest_frequencies)
        data['protocol']['threshold_rule'] = self.protocol.threshold_rule.value
        return data


def load_config(config_path) -> ExaminerConfig:
    """Load configuration from YAML file."""
    with open(config_path, 'r') as f:
        return ExaminerConfig.from_dict(yaml.safe_load(f))
