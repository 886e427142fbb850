import pytest

from clinical_audiometry.audit.decision_log import DecisionKind
from clinical_audiometry.procedures.orchestrator import TestOrchestrator
from clinical_audiometry.session.models import (
    Ear,
    FrequencyStatus,
    Resolution,
    ResponseEvent,
    RiskCategory,
    SessionStatus,
    TrialKind,
)
from clinical_audiometry.utils.config import ExaminerConfig
from clinical_audiometry.utils.errors import ProtocolStateError, SessionAborted

from conftest import FakeAudio, ScriptedResponder, hears_at_or_above


class FakePersistence:
    def __init__(self):
        self.saved = []

    def save(self, snapshot):
        self.saved.append(snapshot)


def _run(config, clock, threshold_db=20, audio=None, persistence=None, **responder_kwargs):
    orchestrator = TestOrchestrator(config=config, clock=clock, persistence=persistence,
                                    session_id='test-session')
    responder = ScriptedResponder(clock, hears_at_or_above(threshold_db, **responder_kwargs))
    session = orchestrator.run(audio or FakeAudio(), responder)
    return orchestrator, session


def test_complete_session(small_config, clock) -> None:
    persistence = FakePersistence()

    orchestrator, session = _run(small_config, clock, persistence=persistence)

    assert session.status is SessionStatus.COMPLETE
    assert session.familiarization_acknowledged is True
    keys = list(session.frequency_states)
    assert keys == [
        (Ear.RIGHT, 1000, False), (Ear.RIGHT, 2000, False), (Ear.RIGHT, 1000, True),
        (Ear.LEFT, 1000, False), (Ear.LEFT, 2000, False), (Ear.LEFT, 1000, True),
    ]
    for state in session.frequency_states.values():
        assert state.status is FrequencyStatus.THRESHOLD_CONFIRMED
        assert state.threshold == 20
    assert len(session.trials) == 1 + 6 * 9
    assert len(session.risk_history) == 6
    assert session.latest_risk.category is RiskCategory.LOW
    assert len(persistence.saved) == 1
    assert persistence.saved[0].status is SessionStatus.COMPLETE
    assert orchestrator.issue_trial() is None

    log = session.decision_log
    [switched] = log.entries(DecisionKind.EAR_SWITCHED)
    assert switched.payload['ear'] == 'left'
    [complete] = log.entries(DecisionKind.SESSION_COMPLETE)
    assert complete.rationale.startswith("Audiometric assessment completed: 6 thresholds confirmed")


def test_catch_trials_never_touch_the_protocol(clock) -> None:
    config = ExaminerConfig.from_dict({
        'frequencies': [1000, 2000],
        'retest_frequencies': [],
        'ear_order': ['right'],
        'random_state': 3,
        'catch_trials': {'probability': 0.9},
    })

    _, session = _run(config, clock, respond_to_catch=True)

    trials = session.trials
    catches = [i for i, t in enumerate(trials) if t.is_catch_trial]
    assert catches
    for i in catches:
        previous, following = trials[i - 1], trials[i + 1]
        assert not previous.is_catch_trial and not following.is_catch_trial
        # Level, ear and frequency carry over unchanged to the next scored trial
        assert (following.ear, following.frequency_hz, following.level_db_hl) == \
            (trials[i].ear, trials[i].frequency_hz, trials[i].level_db_hl)

    for state in session.frequency_states.values():
        assert state.threshold == 20
        assert all(p.trial_id not in {trials[i].id for i in catches} for p in state.trial_history)
    assert session.catch_summary.false_positive_rate == 1.0
    assert session.decision_log.entries(DecisionKind.RISK_ESCALATED)
    assert session.latest_risk.category.rank > RiskCategory.LOW.rank


def test_operator_abort_preserves_results(small_config, clock) -> None:
    orchestrator = TestOrchestrator(config=small_config, clock=clock)
    responder = ScriptedResponder(clock, hears_at_or_above(20), abort_after=12)

    session = orchestrator.run(FakeAudio(), responder)

    assert session.status is SessionStatus.INCOMPLETE
    states = session.frequency_states
    assert states[(Ear.RIGHT, 1000, False)].status is FrequencyStatus.THRESHOLD_CONFIRMED
    interrupted = states[(Ear.RIGHT, 2000, False)]
    assert interrupted.status is FrequencyStatus.NOT_TESTED
    assert interrupted.trial_count == 2
    not_tested = session.states_with_status(FrequencyStatus.NOT_TESTED)
    assert len(not_tested) == 5
    assert not session.states_with_status(FrequencyStatus.ABANDONED)

    last = session.outcomes[-1]
    assert last.resolution is Resolution.ABORTED
    assert last.trial.id == 13
    assert all(event.trial_id != 13 for event in session.responses)
    assert session.decision_log.entries(DecisionKind.SESSION_ABORTED)
    with pytest.raises(SessionAborted):
        orchestrator.issue_trial()


def test_resume_requeues_not_tested_pairs(small_config, clock) -> None:
    orchestrator = TestOrchestrator(config=small_config, clock=clock)
    orchestrator.run(FakeAudio(), ScriptedResponder(clock, hears_at_or_above(20), abort_after=12))

    resumed = orchestrator.resume()
    assert resumed.status is SessionStatus.IN_PROGRESS
    assert [s.frequency_hz for s in resumed.interrupted_states] == [2000]

    session = orchestrator.run(FakeAudio(), ScriptedResponder(clock, hears_at_or_above(20)))

    assert session.status is SessionStatus.COMPLETE
    assert len(session.frequency_states) == 6
    assert all(s.is_confirmed for s in session.frequency_states.values())
    [entry] = session.decision_log.entries(DecisionKind.SESSION_RESUMED)
    assert entry.payload['requeued'] == 5


def test_step_api_timeout_and_familiarization_retry(small_config, clock) -> None:
    orchestrator = TestOrchestrator(config=small_config, clock=clock)
    with pytest.raises(ProtocolStateError):
        orchestrator.issue_trial()
    orchestrator.start()

    first = orchestrator.issue_trial()
    assert first.kind is TrialKind.FAMILIARIZATION
    assert first.level_db_hl == 40
    assert orchestrator.issue_trial() is first

    clock.advance(5.0)
    orchestrator.resolve_timeout(first.id)
    second = orchestrator.issue_trial()
    assert second.kind is TrialKind.FAMILIARIZATION
    assert second.level_db_hl == 50

    clock.advance(0.4)
    assert orchestrator.submit_response(ResponseEvent(second.id, True, None, clock.now()))
    scored = orchestrator.issue_trial()
    assert scored.kind is TrialKind.SCORED
    assert (scored.ear, scored.frequency_hz, scored.level_db_hl) == (Ear.RIGHT, 1000, 30)

    snapshot = orchestrator.snapshot()
    assert [o.resolution for o in snapshot.outcomes] == [Resolution.TIMEOUT, Resolution.RESPONSE]
    assert snapshot.outcomes[1].latency_ms == pytest.approx(400.0)
    assert snapshot.familiarization_acknowledged is True
    with pytest.raises(ProtocolStateError):
        orchestrator.start()


def test_spurious_and_late_responses_are_discarded(small_config, clock) -> None:
    orchestrator = TestOrchestrator(config=small_config, clock=clock)
    orchestrator.start()
    trial = orchestrator.issue_trial()

    assert not orchestrator.submit_response(ResponseEvent(trial.id + 7, True, 300.0, clock.now()))
    assert orchestrator.outstanding_trial is trial

    assert orchestrator.submit_response(ResponseEvent(trial.id, True, 450.0, clock.now()))
    assert not orchestrator.submit_response(ResponseEvent(trial.id, True, 900.0, clock.now()))

    snapshot = orchestrator.snapshot()
    assert len(snapshot.outcomes) == 1
    assert len(snapshot.responses) == 1
    assert len(snapshot.decision_log.entries(DecisionKind.SPURIOUS_RESPONSE)) == 2


def test_response_beyond_ceiling_is_scored_as_no_response(small_config, clock) -> None:
    orchestrator = TestOrchestrator(config=small_config, clock=clock)
    orchestrator.start()
    familiarization = orchestrator.issue_trial()
    orchestrator.submit_response(ResponseEvent(familiarization.id, True, 400.0, clock.now()))

    trial = orchestrator.issue_trial()
    orchestrator.submit_response(ResponseEvent(trial.id, True, 3500.0, clock.now()))

    snapshot = orchestrator.snapshot()
    assert snapshot.outcomes[-1].resolution is Resolution.BEYOND_CEILING
    state = snapshot.frequency_states[(Ear.RIGHT, 1000, False)]
    assert state.trial_history[0].responded is False
    assert state.current_level == 40


def test_playback_retried_once_after_backoff(small_config, clock) -> None:
    _, session = _run(small_config, clock, audio=FakeAudio(fail_times=1))

    assert clock.sleeps == [0.25]
    assert len(session.decision_log.entries(DecisionKind.PLAYBACK_RETRY)) == 1
    assert session.status is SessionStatus.COMPLETE
    assert session.outcomes[0].resolution is Resolution.RESPONSE


def test_second_playback_failure_resolves_as_non_response(small_config, clock) -> None:
    _, session = _run(small_config, clock, audio=FakeAudio(fail_times=2))

    assert session.outcomes[0].resolution is Resolution.PLAYBACK_FAILURE
    assert session.decision_log.entries(DecisionKind.PLAYBACK_FAILED)
    # Familiarization moved on to its second attempt, 10 dB louder
    assert session.trials[1].kind is TrialKind.FAMILIARIZATION
    assert session.trials[1].level_db_hl == 50
    assert session.status is SessionStatus.COMPLETE


def test_familiarization_gives_up_after_three_attempts(small_config, clock) -> None:
    _, session = _run(small_config, clock, threshold_db=80)

    familiarization = [t for t in session.trials if t.kind is TrialKind.FAMILIARIZATION]
    assert [t.level_db_hl for t in familiarization] == [40, 50, 60]
    assert session.familiarization_acknowledged is False
    assert session.status is SessionStatus.COMPLETE
    assert all(s.threshold == 80 for s in session.frequency_states.values())


def test_unhearing_ear_is_abandoned_and_session_continues(clock) -> None:
    config = ExaminerConfig.from_dict({
        'frequencies': [1000],
        'retest_frequencies': [],
        'catch_trials': {'probability': 0.0},
    })

    _, session = _run(config, clock, threshold_db=200)

    assert session.status is SessionStatus.COMPLETE
    for state in session.frequency_states.values():
        assert state.status is FrequencyStatus.ABANDONED
        assert state.follow_up_required
    assert all(t.level_db_hl <= 120 for t in session.trials)


def test_abort_and_resume_require_matching_status(small_config, clock) -> None:
    orchestrator, _ = _run(small_config, clock)

    with pytest.raises(ProtocolStateError):
        orchestrator.abort()
    with pytest.raises(ProtocolStateError):
        orchestrator.resume()


def test_same_config_and_responses_replay_identically(clock) -> None:
    config = ExaminerConfig.from_dict({
        'frequencies': [1000, 2000, 4000],
        'random_state': 11,
        'catch_trials': {'probability': 0.3},
    })

    _, first = _run(config, clock)
    _, second = _run(config, clock)

    def sequence(session):
        return [(t.id, t.ear, t.frequency_hz, t.level_db_hl, t.kind) for t in session.trials]

    assert sequence(first) == sequence(second)
    assert [e.kind for e in first.decision_log] == [e.kind for e in second.decision_log]
    assert first.thresholds(Ear.LEFT) == second.thresholds(Ear.LEFT)


@pytest.mark.parametrize("seed", [1, 2, 3])
def test_catch_share_matches_configured_probability(clock, seed) -> None:
    config = ExaminerConfig.from_dict({'random_state': seed})

    _, session = _run(config, clock)

    test_trials = [t for t in session.trials if t.kind is not TrialKind.FAMILIARIZATION]
    catches = [t for t in test_trials if t.is_catch_trial]
    assert 0.10 <= len(catches) / len(test_trials) <= 0.15
    scored_in_pair, pair = 0, None
    for previous, trial in zip([None] + test_trials, test_trials):
        if (trial.ear, trial.frequency_hz) != pair:
            pair, scored_in_pair = (trial.ear, trial.frequency_hz), 0
        if trial.is_catch_trial:
            assert scored_in_pair >= 2
            assert previous is not None and not previous.is_catch_trial
        else:
            scored_in_pair += 1


class StaleEventResponder:
    """Sends an event for some other trial every 3 s and never answers the current one."""

    def __init__(self, clock):
        self.clock = clock
        self.timeouts = []

    def wait_for_response(self, trial, timeout_s):
        self.timeouts.append(timeout_s)
        self.clock.advance(min(3.0, timeout_s))
        return ResponseEvent(trial.id + 100, True, 300.0, self.clock.now())


def test_spurious_events_do_not_extend_the_response_window(clock) -> None:
    config = ExaminerConfig.from_dict({
        'frequencies': [1000],
        'retest_frequencies': [],
        'ear_order': ['right'],
        'catch_trials': {'probability': 0.0},
    })
    orchestrator = TestOrchestrator(config=config, clock=clock)
    responder = StaleEventResponder(clock)

    session = orchestrator.run(FakeAudio(), responder)

    assert responder.timeouts[:4] == pytest.approx([5.0, 2.0, 5.0, 2.0])
    assert len(responder.timeouts) == 2 * len(session.trials)
    assert all(o.resolution is Resolution.TIMEOUT for o in session.outcomes)
    assert len(session.decision_log.entries(DecisionKind.SPURIOUS_RESPONSE)) == len(responder.timeouts)
    assert clock.now() == pytest.approx(5.0 * len(session.trials))
