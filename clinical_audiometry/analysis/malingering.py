"""
Malingering risk scoring.

The assessment is a pure function of the accumulated frequency states, the
catch-trial summary and the reliability score, so any point of a session can
be re-scored from logged data.
"""
# Standard library imports
import logging
from typing import Dict, Iterable, List, Optional, Tuple

# Third-party imports
import numpy as np

# Local imports
from ..audit.decision_log import DecisionKind, DecisionSource
from ..session.models import (
    CatchTrialSummary,
    Ear,
    PerFrequencyState,
    ReliabilityScore,
    RiskAssessment,
    RiskCategory,
    RiskFactor,
)
from ..utils.config import CatchTrialConfig, RiskConfig

logger = logging.getLogger(__name__)

# Type aliases for clarity
ScoreDetail = Tuple[float, str]
Audiogram = Dict[int, int]


def _confirmed_audiograms(states: Iterable[PerFrequencyState]) -> Dict[Ear, Audiogram]:
    """Confirmed primary (non-retest) thresholds per ear."""
    audiograms: Dict[Ear, Audiogram] = {}
    for state in states:
        if state.is_confirmed and not state.is_retest:
            audiograms.setdefault(state.ear, {})[state.frequency_hz] = state.threshold
    return audiograms


def threshold_consistency_score(states, config: RiskConfig) -> ScoreDetail:
    """Largest retest difference beyond the plausibility band, scaled to 0-1."""
    states = list(states)
    primary = {s.key: s for s in states if s.is_confirmed and not s.is_retest}
    worst_diff = 0.0
    worst_key = None
    for retest in states:
        if not (retest.is_retest and retest.is_confirmed and retest.key in primary):
            continue
        diff = abs(retest.threshold - primary[retest.key].threshold)
        if diff > worst_diff:
            worst_diff, worst_key = diff, retest.key

    if worst_key is None:
        return 0.0, 'no retest differences'
    excess = worst_diff - config.retest_plausibility_band_db
    score = float(np.clip(excess / config.retest_saturation_db, 0.0, 1.0))
    return score, f"retest differs by {worst_diff:.0f} dB at {worst_key[0].value} {worst_key[1]} Hz"


def _ear_pattern_score(audiogram: Audiogram, config: RiskConfig) -> ScoreDetail:
    frequencies = sorted(audiogram)
    thresholds = np.array([audiogram[f] for f in frequencies], dtype=float)
    findings: List[ScoreDetail] = []

    if (len(thresholds) >= config.flat_audiogram_min_frequencies
            and np.all(thresholds == thresholds[0])):
        findings.append((0.8, f"flat audiogram at {thresholds[0]:.0f} dB HL"))

    if len(thresholds) >= 2:
        jumps = np.abs(np.diff(thresholds))
        if jumps.max() > config.adjacent_jump_db:
            findings.append((0.6, f"{jumps.max():.0f} dB jump between neighbouring frequencies"))

    low = [audiogram[f] for f in frequencies if f <= 1000]
    high = [audiogram[f] for f in frequencies if f >= 4000]
    if low and high and np.mean(high) < np.mean(low) - config.inverted_slope_db:
        findings.append((0.5, "high frequencies markedly better than low frequencies"))

    if len(thresholds) >= 3:
        steps = np.diff(thresholds)
        zigzags = sum(
            1 for a, b in zip(steps, steps[1:])
            if abs(a) >= config.zigzag_db and abs(b) >= config.zigzag_db and np.sign(a) != np.sign(b)
        )
        if zigzags:
            findings.append((min(1.0, 0.4 * zigzags), f"{zigzags} zig-zag reversal(s) across frequency"))

    if not findings:
        return 0.0, 'plausible audiometric shape'
    return max(findings, key=lambda f: f[0])


def cross_frequency_score(states, config: RiskConfig) -> ScoreDetail:
    """Implausible threshold shapes across frequency, worst ear wins."""
    best: ScoreDetail = (0.0, 'plausible audiometric shape')
    for ear, audiogram in sorted(_confirmed_audiograms(states).items(), key=lambda e: e[0].value):
        score, detail = _ear_pattern_score(audiogram, config)
        if score > best[0]:
            best = (score, f"{ear.value} ear: {detail}")
    return best


def bilateral_symmetry_score(states, config: RiskConfig) -> ScoreDetail:
    """Flags both excessive asymmetry and implausibly tight symmetry."""
    audiograms = _confirmed_audiograms(states)
    right = audiograms.get(Ear.RIGHT, {})
    left = audiograms.get(Ear.LEFT, {})
    shared = sorted(set(right) & set(left))
    if not shared:
        return 0.0, 'no bilateral pairs yet'

    diffs = np.array([abs(right[f] - left[f]) for f in shared], dtype=float)
    if diffs.max() > config.asymmetry_db:
        excess = (diffs.max() - config.asymmetry_db) / config.asymmetry_db
        score = 0.5 + 0.5 * float(np.clip(excess, 0.0, 1.0))
        return score, f"{diffs.max():.0f} dB inter-ear difference"
    if len(shared) >= config.symmetry_min_pairs and np.all(diffs < config.tight_symmetry_db):
        return 0.4, f"all {len(shared)} inter-ear differences below {config.tight_symmetry_db:.0f} dB"
    return 0.0, f"max inter-ear difference {diffs.max():.0f} dB"


def timing_anomaly_score(reliability: ReliabilityScore, config: RiskConfig) -> ScoreDetail:
    """Guessing (anticipatory responses) or machine-like uniform latencies."""
    anticipatory = min(1.0, reliability.anticipatory_fraction / config.anticipatory_saturation_fraction)
    uniform = 0.0
    if (reliability.latency_cv is not None
            and reliability.responses_analyzed >= config.uniform_min_responses
            and reliability.latency_cv < config.uniform_latency_cv):
        uniform = 1.0 - reliability.latency_cv / config.uniform_latency_cv

    if anticipatory == 0.0 and uniform == 0.0:
        return 0.0, 'latencies within expected variability'
    if anticipatory >= uniform:
        return anticipatory, f"{reliability.anticipatory_fraction:.0%} anticipatory responses"
    return uniform, f"latency CV {reliability.latency_cv:.3f} is abnormally uniform"


def category_for_score(score, config: Optional[RiskConfig] = None) -> RiskCategory:
    config = config or RiskConfig()
    if score >= config.very_high_from:
        return RiskCategory.VERY_HIGH
    if score >= config.high_from:
        return RiskCategory.HIGH
    if score >= config.moderate_from:
        return RiskCategory.MODERATE
    return RiskCategory.LOW


def assess_risk(frequency_states: Iterable[PerFrequencyState],
                catch_summary: CatchTrialSummary,
                reliability: ReliabilityScore,
                config: Optional[RiskConfig] = None,
                catch_config: Optional[CatchTrialConfig] = None,
                sequence: int = 0,
                trigger: Optional[Tuple[str, int]] = None) -> RiskAssessment:
    """
    Combine the weighted sub-scores into a RiskAssessment.

    Args:
        frequency_states: All frequency states accumulated so far (retests included)
        catch_summary: Catch-trial outcomes so far
        reliability: Current timing reliability
        config: Weights and detection bands
        catch_config: False-positive ceiling used for escalation
        sequence: Ordinal of this recomputation within the session
        trigger: (ear, frequency) whose completion triggered it

    Returns:
        RiskAssessment with factors ordered by contribution
    """
    config = config or RiskConfig()
    catch_config = catch_config or CatchTrialConfig()
    states = list(frequency_states)

    sub_scores = {
        'threshold_consistency': threshold_consistency_score(states, config),
        'cross_frequency_plausibility': cross_frequency_score(states, config),
        'bilateral_symmetry': bilateral_symmetry_score(states, config),
        'timing_anomaly': timing_anomaly_score(reliability, config),
    }
    weights = config.weights
    factors = [
        RiskFactor(name=name, sub_score=round(score, 4), weight=weights[name],
                   contribution=round(score * weights[name], 3), detail=detail)
        for name, (score, detail) in sub_scores.items()
    ]
    # Stable sort keeps definition order among equal contributions
    factors.sort(key=lambda f: -f.contribution)

    score = float(np.clip(sum(f.contribution for f in factors), 0.0, 100.0))
    category = category_for_score(score, config)

    escalations = []
    breached = (catch_summary.catch_trials_presented >= catch_config.min_catch_trials_for_escalation
                and catch_summary.false_positive_rate > catch_config.false_positive_ceiling)
    if breached:
        escalated = category.escalate()
        escalations.append(
            f"false-positive rate {catch_summary.false_positive_rate:.0%} exceeds "
            f"{catch_config.false_positive_ceiling:.0%}: {category.value} -> {escalated.value}")
        category = escalated

    return RiskAssessment(
        score=round(score, 2),
        category=category,
        contributing_factors=tuple(factors),
        escalations=tuple(escalations),
        sequence=sequence,
        trigger=trigger,
    )


def recommendations(assessment: RiskAssessment) -> List[str]:
    """Clinical follow-up suggestions for a risk assessment."""
    advice = []
    if assessment.category in (RiskCategory.HIGH, RiskCategory.VERY_HIGH):
        advice.append('Consider retesting with a different protocol')
        advice.append('Consider objective testing methods (OAE, ABR)')
    if assessment.category is not RiskCategory.LOW:
        advice.append('Document suspicious response patterns')
    if assessment.escalations:
        advice.append('Re-instruct the patient: respond only when a tone is heard')
    if assessment.category is RiskCategory.VERY_HIGH:
        advice.append('Results may not be reliable - consider referral')
    return advice


class MalingeringRiskEngine:
    """Numbers, logs and keeps the history of risk recomputations."""

    def __init__(self, config: Optional[RiskConfig] = None,
                 catch_config: Optional[CatchTrialConfig] = None, decision_log=None):
        self.config = config or RiskConfig()
        self.catch_config = catch_config or CatchTrialConfig()
        self.decision_log = decision_log
        self.history: List[RiskAssessment] = []

    def recompute(self, frequency_states, catch_summary, reliability, trigger=None) -> RiskAssessment:
        assessment = assess_risk(
            frequency_states, catch_summary, reliability,
            config=self.config, catch_config=self.catch_config,
            sequence=len(self.history) + 1, trigger=trigger,
        )
        self.history.append(assessment)

        if self.decision_log is not None:
            self.decision_log.record(
                DecisionSource.RISK, DecisionKind.RISK_RECOMPUTED,
                sequence=assessment.sequence,
                trigger=list(trigger) if trigger else None,
                score=assessment.score,
                category=assessment.category.value,
                factors=[{'name': f.name, 'sub_score': f.sub_score,
                          'contribution': f.contribution, 'detail': f.detail}
                         for f in assessment.contributing_factors],
            )
            for escalation in assessment.escalations:
                self.decision_log.record(
                    DecisionSource.RISK, DecisionKind.RISK_ESCALATED,
                    sequence=assessment.sequence, reason=escalation,
                    category=assessment.category.value,
                )
        if assessment.escalations:
            logger.warning("Risk escalated to %s: %s", assessment.category.value,
                           '; '.join(assessment.escalations))
        return assessment
