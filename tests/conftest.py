"""Shared fakes for the examiner tests: a manual clock and scripted collaborators."""
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import pytest

from clinical_audiometry.session.models import ResponseEvent
from clinical_audiometry.utils.config import ExaminerConfig
from clinical_audiometry.utils.errors import CollaboratorFailure, SessionAborted

# Latencies cycled by the scripted listener; varied enough not to look machine-like
LATENCY_CYCLE_MS = (420.0, 510.0, 640.0, 380.0, 700.0)


@dataclass
class FakeClock:
    t: float = 0.0
    sleeps: List[float] = field(default_factory=list)

    def now(self) -> float:
        return self.t

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.t += seconds

    def advance(self, dt: float) -> None:
        self.t += dt


class FakeAudio:
    """Records presentations; the first ``fail_times`` calls raise CollaboratorFailure."""

    def __init__(self, fail_times=0):
        self.fail_times = fail_times
        self.presented = []

    def present_stimulus(self, ear, frequency_hz, level_db_hl, is_catch):
        if self.fail_times > 0:
            self.fail_times -= 1
            raise CollaboratorFailure("audio device unavailable")
        self.presented.append((ear, frequency_hz, level_db_hl, is_catch))


def hears_at_or_above(threshold_db, respond_to_catch=False):
    """Decision function: latency (ms) when the trial is heard, else None."""
    def decide(trial):
        if trial.is_catch_trial:
            heard = respond_to_catch
        else:
            heard = trial.level_db_hl >= threshold_db
        if not heard:
            return None
        return LATENCY_CYCLE_MS[trial.id % len(LATENCY_CYCLE_MS)]
    return decide


class ScriptedResponder:
    """Response input driven by a decision function; can raise SessionAborted after N waits."""

    def __init__(self, clock: FakeClock, decide: Callable, abort_after: Optional[int] = None):
        self.clock = clock
        self.decide = decide
        self.abort_after = abort_after
        self.seen = []

    def wait_for_response(self, trial, timeout_s):
        if self.abort_after is not None and len(self.seen) >= self.abort_after:
            raise SessionAborted("operator pressed stop")
        self.seen.append(trial)
        latency_ms = self.decide(trial)
        if latency_ms is None:
            self.clock.advance(timeout_s)
            return None
        self.clock.advance(latency_ms / 1000.0)
        return ResponseEvent(trial.id, True, latency_ms, self.clock.now())


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def small_config():
    """Two frequencies per ear plus the 1 kHz retest, no catch trials."""
    return ExaminerConfig.from_dict({
        'frequencies': [1000, 2000],
        'retest_frequencies': [1000],
        'random_state': 7,
        'catch_trials': {'probability': 0.0},
    })
