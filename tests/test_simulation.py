import numpy as np
import pytest

from clinical_audiometry.procedures.orchestrator import TestOrchestrator
from clinical_audiometry.session.models import Ear, FrequencyStatus, RiskCategory, SessionStatus
from clinical_audiometry.simulation import (
    HearingResponseModel,
    LatencyModel,
    SimulatedPatient,
    generate_clipped_data,
    generate_hearing_profile,
    replay_session,
)
from clinical_audiometry.simulation.hearing_profiles import modulate_severity, profile_to_dataframe
from clinical_audiometry.utils.clock import ManualClock
from clinical_audiometry.utils.config import ExaminerConfig

FREQUENCIES = [1000, 2000, 4000, 500]


@pytest.fixture
def config():
    return ExaminerConfig.from_dict({
        'frequencies': FREQUENCIES,
        'random_state': 21,
        'catch_trials': {'probability': 0.2},
    })


def _examine(config, profile, seed, **behaviour):
    clock = ManualClock()
    patient = SimulatedPatient(profile, clock=clock, random_state=seed, **behaviour)
    orchestrator = TestOrchestrator(config=config, clock=clock, session_id=f'sim-{seed}')
    return orchestrator.run(patient, patient)


def test_response_probability_is_half_at_threshold() -> None:
    model = HearingResponseModel(guess_rate=0.0, lapse_rate=0.0)

    assert model.get_response_probability(30, 30) == pytest.approx(0.5)
    assert model.get_response_probability(60, 30) > 0.99
    with pytest.raises(ValueError):
        HearingResponseModel(threshold_probability=1.5)


def test_latency_model_median() -> None:
    rng = np.random.default_rng(0)
    model = LatencyModel(median_ms=500.0, sigma=0.2)

    samples = [model.sample(rng) for _ in range(2000)]

    assert np.median(samples) == pytest.approx(500.0, rel=0.05)


def test_generate_clipped_data_respects_bounds() -> None:
    x, data = generate_clipped_data(n_points=500, mu=10, variance=4.0, data_min=5, data_max=15, seed=1)

    assert len(x) == len(data) == 500
    assert data.min() >= 5 and data.max() <= 15


def test_hearing_profile_generation() -> None:
    profile = generate_hearing_profile(FREQUENCIES, mu_right=20, mu_left=40, seed=4)

    assert set(profile) == {Ear.RIGHT, Ear.LEFT}
    assert sorted(profile[Ear.RIGHT]) == sorted(FREQUENCIES)
    assert generate_hearing_profile(FREQUENCIES, seed=4) == generate_hearing_profile(FREQUENCIES, seed=4)
    louder = modulate_severity(profile, 10, ear='left')
    assert louder[Ear.LEFT][1000] == pytest.approx(profile[Ear.LEFT][1000] + 10)
    assert louder[Ear.RIGHT] == profile[Ear.RIGHT]
    frame = profile_to_dataframe(profile)
    assert frame.loc[0, '1.0kHz Right'] == profile[Ear.RIGHT][1000]


def test_genuine_patient_thresholds_track_true_hearing(config) -> None:
    profile = {ear: {f: 25.0 for f in FREQUENCIES} for ear in Ear}

    session = _examine(config, profile, seed=8)

    assert session.status is SessionStatus.COMPLETE
    confirmed = [s for s in session.frequency_states.values() if s.is_confirmed]
    assert len(confirmed) >= len(session.frequency_states) - 1
    errors = [abs(s.threshold - 25.0) for s in confirmed]
    assert np.mean(errors) <= 10.0


def test_same_seed_reproduces_session(config) -> None:
    profile = generate_hearing_profile(FREQUENCIES, mu_right=15, mu_left=30, seed=2)

    first = _examine(config, profile, seed=5)
    second = _examine(config, profile, seed=5)

    assert [(t.ear, t.frequency_hz, t.level_db_hl, t.kind) for t in first.trials] == \
        [(t.ear, t.frequency_hz, t.level_db_hl, t.kind) for t in second.trials]
    assert first.thresholds(Ear.RIGHT) == second.thresholds(Ear.RIGHT)
    assert [r.score for r in first.risk_history] == [r.score for r in second.risk_history]


def test_replay_reproduces_recorded_session(config) -> None:
    profile = generate_hearing_profile(FREQUENCIES, mu_right=20, mu_left=20, seed=9)
    recorded = _examine(config, profile, seed=13, anticipatory_rate=0.2, false_alarm_rate=0.3)

    replayed = replay_session(recorded, config)

    assert replayed.status is SessionStatus.COMPLETE
    assert [(t.id, t.level_db_hl, t.kind) for t in replayed.trials] == \
        [(t.id, t.level_db_hl, t.kind) for t in recorded.trials]
    assert [o.resolution for o in replayed.outcomes] == [o.resolution for o in recorded.outcomes]
    for ear in Ear:
        assert replayed.thresholds(ear) == recorded.thresholds(ear)
    assert [(r.score, r.category) for r in replayed.risk_history] == \
        [(r.score, r.category) for r in recorded.risk_history]


def test_guessing_patient_is_flagged(config) -> None:
    profile = {ear: {f: 20.0 for f in FREQUENCIES} for ear in Ear}

    session = _examine(config, profile, seed=17, exaggeration_db=30.0,
                       anticipatory_rate=0.6, false_alarm_rate=0.5)

    assert session.status is SessionStatus.COMPLETE
    assert session.reliability.anticipatory_fraction > 0.3
    assert session.latest_risk.category.rank >= RiskCategory.HIGH.rank
    assert all(s.status is not FrequencyStatus.NOT_TESTED for s in session.frequency_states.values())


def test_default_sessions_keep_catch_share_in_band() -> None:
    config = ExaminerConfig.from_dict({'random_state': 31})
    trials = []
    for seed in range(4):
        profile = generate_hearing_profile(config.frequencies, mu_right=25, mu_left=35, seed=seed)
        session = _examine(config, profile, seed=seed, false_alarm_rate=0.1)
        trials.extend(session.trials)

    catches = sum(t.is_catch_trial for t in trials)
    assert 0.10 <= catches / len(trials) <= 0.15
