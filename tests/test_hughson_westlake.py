import numpy as np
import pytest

from clinical_audiometry.audit.decision_log import DecisionKind, DecisionLog
from clinical_audiometry.procedures.hughson_westlake import ProtocolStateMachine
from clinical_audiometry.session.models import Direction, Ear, FrequencyStatus, ThresholdRule
from clinical_audiometry.utils.config import ProtocolConfig
from clinical_audiometry.utils.errors import ProtocolExceeded, ProtocolStateError, SpuriousResponse

from conftest import FakeClock


def _run(machine, responses):
    """Present and answer one stimulus per response; returns the presented levels."""
    levels = []
    for responded in responses:
        levels.append(machine.present_next_stimulus().level_db_hl)
        machine.record_response(responded, latency_ms=500.0 if responded else None)
    return levels


def _listener(machine, threshold_db):
    levels = []
    while not machine.is_finished:
        level = machine.present_next_stimulus().level_db_hl
        levels.append(level)
        machine.record_response(level >= threshold_db, latency_ms=500.0)
    return levels


def test_alternating_responses_from_30_db() -> None:
    machine = ProtocolStateMachine(Ear.RIGHT, 1000)

    levels = _run(machine, [True, False, True, False, True, False])

    # Every trial after the first response changes outcome relative to the
    # previous level, so the sixth trial completes the sixth reversal.
    # See "Alternating-response scenario" in DESIGN.md for why this is 20 dB, not 5.
    assert levels == [30, 20, 25, 15, 20, 10]
    state = machine.state
    assert state.status is FrequencyStatus.THRESHOLD_CONFIRMED
    assert state.reversal_count == 6
    assert state.threshold == 20
    assert state.reversal_levels == [30, 20, 25, 15, 20, 10]
    with pytest.raises(ProtocolStateError):
        machine.present_next_stimulus()


def test_threshold_listener_converges_on_true_threshold() -> None:
    machine = ProtocolStateMachine(Ear.LEFT, 2000)

    levels = _listener(machine, threshold_db=20)

    assert levels == [30, 20, 10, 15, 20, 10, 15, 20, 10]
    assert machine.state.threshold == 20
    assert machine.state.trial_count == 9
    assert 0.0 < machine.state.confidence <= 1.0


def test_seeking_ascends_in_10_db_steps_until_first_response() -> None:
    machine = ProtocolStateMachine(Ear.RIGHT, 4000)

    levels = _run(machine, [False, False, False, True])

    assert levels == [30, 40, 50, 60]
    assert machine.state.status is FrequencyStatus.BRACKETING
    assert machine.state.reversal_count == 1
    assert machine.state.current_level == 50
    assert machine.state.direction is Direction.DESCENDING


def test_bracketing_steps_down_10_and_up_5() -> None:
    rng = np.random.default_rng(3)
    config = ProtocolConfig(reversals_to_confirm=30, max_trials=40)
    machine = ProtocolStateMachine(Ear.RIGHT, 1000, config)
    machine.present_next_stimulus()
    machine.record_response(True, latency_ms=400.0)

    for _ in range(25):
        level = machine.present_next_stimulus().level_db_hl
        # Certain below 20 dB and above 80 dB, so the output limits are never reached
        if level < 20:
            responded = False
        elif level > 80:
            responded = True
        else:
            responded = bool(rng.random() < 0.5)
        machine.record_response(responded, latency_ms=400.0)
        expected = level - 10 if responded else level + 5
        assert machine.state.current_level == config.clamp(expected)


def test_no_response_is_clamped_and_abandoned_at_output_limit() -> None:
    log = DecisionLog(FakeClock())
    machine = ProtocolStateMachine(Ear.RIGHT, 8000, decision_log=log)

    levels = []
    with pytest.raises(ProtocolExceeded) as excinfo:
        while True:
            levels.append(machine.present_next_stimulus().level_db_hl)
            machine.record_response(False)

    assert max(levels) == 120
    assert levels[-2:] == [120, 120]
    assert len(levels) == 11
    assert machine.state.status is FrequencyStatus.ABANDONED
    assert machine.state.follow_up_required
    assert machine.state.threshold is None
    assert excinfo.value.frequency_hz == 8000
    [entry] = log.entries(DecisionKind.FREQUENCY_ABANDONED)
    assert entry.payload["flag"].startswith("undetermined")


def test_responses_at_output_floor_abandon() -> None:
    machine = ProtocolStateMachine(Ear.LEFT, 250)

    with pytest.raises(ProtocolExceeded):
        _run(machine, [True] * 10)

    assert [p.level_db_hl for p in machine.state.trial_history] == [30, 20, 10, 0, -10, -10]
    assert machine.state.status is FrequencyStatus.ABANDONED


def test_trial_ceiling_abandons_frequency() -> None:
    config = ProtocolConfig(reversals_to_confirm=30, max_trials=30)
    machine = ProtocolStateMachine(Ear.RIGHT, 1000, config)

    # A steady listener adds two reversals every three trials, well short of 30
    with pytest.raises(ProtocolExceeded) as excinfo:
        _listener(machine, threshold_db=20)

    assert machine.state.trial_count == 31
    assert machine.state.status is FrequencyStatus.ABANDONED
    assert "trial ceiling of 30 exceeded" in excinfo.value.reason


def test_trial_ceiling_allows_exactly_max_trials() -> None:
    config = ProtocolConfig(reversals_to_confirm=6, max_trials=9)
    machine = ProtocolStateMachine(Ear.LEFT, 2000, config)

    _listener(machine, threshold_db=20)

    assert machine.state.trial_count == 9
    assert machine.state.status is FrequencyStatus.THRESHOLD_CONFIRMED


def test_response_without_outstanding_stimulus_is_spurious() -> None:
    machine = ProtocolStateMachine(Ear.RIGHT, 1000)

    with pytest.raises(SpuriousResponse):
        machine.record_response(True, latency_ms=400.0, trial_id=99)

    machine.present_next_stimulus()
    machine.record_response(True, latency_ms=400.0)
    with pytest.raises(SpuriousResponse):
        machine.record_response(False)
    assert machine.state.trial_count == 1


# Lowest response 10 dB (non-reversal), last responding reversal 15 dB
SPLIT_RULE_RESPONSES = [True, True, True, False, False, False, True, False, False, True, False]


@pytest.mark.parametrize("rule, expected", [
    (ThresholdRule.LOWEST_RESPONSE, 10),
    (ThresholdRule.LAST_REVERSAL, 15),
])
def test_threshold_rules(rule, expected) -> None:
    machine = ProtocolStateMachine(Ear.RIGHT, 1000, ProtocolConfig(threshold_rule=rule))

    levels = _run(machine, SPLIT_RULE_RESPONSES)

    assert levels == [30, 20, 10, 0, 5, 10, 15, 5, 10, 15, 5]
    assert machine.state.is_confirmed
    assert machine.state.threshold == expected


def test_ascending_majority_falls_back_without_enough_ascending_trials() -> None:
    log = DecisionLog(FakeClock())
    config = ProtocolConfig(threshold_rule=ThresholdRule.ASCENDING_MAJORITY)
    machine = ProtocolStateMachine(Ear.RIGHT, 1000, config, decision_log=log)

    _listener(machine, threshold_db=20)

    [entry] = log.entries(DecisionKind.THRESHOLD_CONFIRMED)
    assert entry.payload['rule'] == 'lowest_response'
    assert machine.state.threshold == 20


def test_ascending_majority_uses_ascending_presentations() -> None:
    log = DecisionLog(FakeClock())
    config = ProtocolConfig(threshold_rule=ThresholdRule.ASCENDING_MAJORITY,
                            ascending_min_trials=2)
    machine = ProtocolStateMachine(Ear.RIGHT, 1000, config, decision_log=log)

    _listener(machine, threshold_db=20)

    [entry] = log.entries(DecisionKind.THRESHOLD_CONFIRMED)
    assert entry.payload['rule'] == 'ascending_majority'
    assert machine.state.threshold == 20


def test_level_adjustments_are_logged() -> None:
    log = DecisionLog(FakeClock(), formatter=None)
    machine = ProtocolStateMachine(Ear.RIGHT, 1000, decision_log=log)

    _run(machine, [False, True, True])

    kinds = [e.kind for e in log]
    assert kinds == [DecisionKind.LEVEL_ADJUSTED, DecisionKind.FIRST_RESPONSE,
                     DecisionKind.LEVEL_ADJUSTED]
    first = log.entries(DecisionKind.FIRST_RESPONSE)[0]
    assert first.payload['level'] == 40
    assert first.payload['next_level'] == 30


def test_mark_not_tested_keeps_history() -> None:
    machine = ProtocolStateMachine(Ear.LEFT, 500)
    _run(machine, [False, True])

    machine.mark_not_tested()

    assert machine.state.status is FrequencyStatus.NOT_TESTED
    assert machine.state.trial_count == 2
    assert machine.is_finished
