"""
Replay of a recorded session.

Feeding the recorded trial outcomes back into a fresh orchestrator with the
same configuration (and catch-trial seed) reproduces the same trial sequence
and therefore the same thresholds and risk assessments.
"""
# Standard library imports
import logging
from typing import Optional

# Local imports
from ..procedures.orchestrator import TestOrchestrator
from ..session.models import Resolution, ResponseEvent
from ..session.state import SessionState
from ..utils.clock import ManualClock
from ..utils.config import ExaminerConfig
from ..utils.errors import CollaboratorFailure, ProtocolStateError

logger = logging.getLogger(__name__)


class _RecordedPlayback:
    """Audio stand-in that fails where the recording had a playback failure."""

    def __init__(self, error):
        self.error = error

    def present_stimulus(self, ear, frequency_hz, level_db_hl, is_catch):
        if self.error is not None:
            raise CollaboratorFailure(self.error)


def _same_presentation(recorded, issued):
    return (recorded.ear is issued.ear
            and recorded.frequency_hz == issued.frequency_hz
            and recorded.level_db_hl == issued.level_db_hl
            and recorded.kind is issued.kind)


def replay_session(recorded: SessionState, config: Optional[ExaminerConfig] = None,
                   clock=None) -> SessionState:
    """
    Re-run a recorded session from its trial outcomes.

    Args:
        recorded: Snapshot of the session to replay
        config: Configuration the session was recorded with
        clock: Clock for the replay (ManualClock by default)

    Returns:
        SessionState: Snapshot of the replayed session

    Raises:
        ProtocolStateError: The replay issued a trial the recording does not match
    """
    clock = clock or ManualClock()
    outcomes = {o.trial.id: o for o in recorded.outcomes}
    last_trial_id = max(outcomes) if outcomes else 0

    orchestrator = TestOrchestrator(config=config, clock=clock, session_id=recorded.session_id)
    orchestrator.start()

    while True:
        trial = orchestrator.issue_trial()
        if trial is None:
            break
        outcome = outcomes.get(trial.id)
        if outcome is None:
            # Recording ended mid-session (aborted between trials)
            orchestrator.abort()
            break
        if not _same_presentation(outcome.trial, trial):
            raise ProtocolStateError(
                f"Replay diverged at trial {trial.id}: recorded {outcome.trial}, issued {trial}")

        resolution = outcome.resolution
        if resolution is Resolution.ABORTED:
            orchestrator.abort()
            if trial.id >= last_trial_id:
                break
            orchestrator.resume()
        elif resolution is Resolution.PLAYBACK_FAILURE:
            orchestrator.present_trial(_RecordedPlayback('recorded playback failure'), trial)
        elif resolution is Resolution.TIMEOUT:
            orchestrator.resolve_timeout(trial.id)
        else:
            observed_at = clock.now() + (outcome.latency_ms or 0.0) / 1000.0
            orchestrator.submit_response(ResponseEvent(
                trial_id=trial.id,
                responded=outcome.responded,
                latency_ms=outcome.latency_ms,
                observed_at=observed_at,
            ))

    logger.info("Replayed session %s (%d trials)", recorded.session_id, len(outcomes))
    return orchestrator.snapshot()
