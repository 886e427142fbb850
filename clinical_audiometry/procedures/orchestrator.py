"""
Session orchestration: sequencing of ears and frequencies, catch-trial
injection, risk recomputation and the single response suspension point.
"""
# Standard library imports
import logging
import uuid
from typing import List, Optional, Tuple

# Third-party imports
import numpy as np

# Local imports
from ..analysis.catch_trials import FalseResponseDetector
from ..analysis.malingering import MalingeringRiskEngine
from ..analysis.response_timing import ResponseTimingAnalyzer
from ..audit.decision_log import DecisionKind, DecisionLog, DecisionSource
from ..audit.explainer import ClinicalExplainer
from ..session.models import (
    Ear,
    FrequencyStatus,
    PerFrequencyState,
    Resolution,
    ResponseEvent,
    SessionStatus,
    Trial,
    TrialKind,
    TrialOutcome,
)
from ..session.state import SessionState
from ..utils.clock import RealClock
from ..utils.config import ExaminerConfig
from ..utils.defaults import FAMILIARIZATION_STEP_UP
from ..utils.errors import (
    CollaboratorFailure,
    ProtocolExceeded,
    ProtocolStateError,
    SessionAborted,
    SpuriousResponse,
)
from .hughson_westlake import ProtocolStateMachine

logger = logging.getLogger(__name__)

# (ear, frequency, is_retest)
PairKey = Tuple[Ear, int, bool]


class TestOrchestrator:
    """
    Drives a complete examination.

    The step API (``start``, ``issue_trial``, ``submit_response``,
    ``resolve_timeout``, ``abort``, ``resume``) lets an event-driven front end
    own the loop; ``run`` drives it with an audio and a response-input
    collaborator, blocking in ``responder.wait_for_response`` once per trial.

    Collaborators:
        audio.present_stimulus(ear, frequency_hz, level_db_hl, is_catch)
            raises CollaboratorFailure when playback fails.
        responder.wait_for_response(trial, timeout_s) -> ResponseEvent or None
            may raise SessionAborted on operator cancellation.
        persistence.save(session_snapshot) receives the completed session.
    """
    __test__ = False

    def __init__(self, config: Optional[ExaminerConfig] = None, clock=None,
                 persistence=None, explainer=None, session_id: Optional[str] = None):
        self.config = config or ExaminerConfig()
        self.clock = clock or RealClock()
        self.persistence = persistence
        self.explainer = explainer or ClinicalExplainer()
        self.session_id = session_id or uuid.uuid4().hex[:12]
        self.rng = np.random.default_rng(self.config.random_state)

        self.decision_log: Optional[DecisionLog] = None
        self.timing: Optional[ResponseTimingAnalyzer] = None
        self.catch_detector: Optional[FalseResponseDetector] = None
        self.risk_engine: Optional[MalingeringRiskEngine] = None

        self._session: Optional[SessionState] = None
        self._queue: List[PairKey] = []
        self._machine: Optional[ProtocolStateMachine] = None
        self._outstanding: Optional[Trial] = None
        self._next_trial_id = 1
        self._last_issue_was_catch = False
        self._scored_in_pair = 0
        self._test_trials_issued = 0
        self._catch_trials_issued = 0
        self._last_ear: Optional[Ear] = None
        self._familiarization_done = False
        self._familiarization_attempts = 0
        self._familiarization_level = self.config.familiarization_level

    # ------------------------------------------------------------------
    # Operator commands
    # ------------------------------------------------------------------
    def start(self) -> SessionState:
        """Create the session and plan the ear/frequency sequence."""
        if self._session is not None:
            raise ProtocolStateError("Session already started")

        self.decision_log = DecisionLog(self.clock, formatter=self.explainer)
        self.timing = ResponseTimingAnalyzer(self.config.timing, self.decision_log)
        self.catch_detector = FalseResponseDetector(self.config.catch_trials, self.decision_log)
        self.risk_engine = MalingeringRiskEngine(
            self.config.risk, self.config.catch_trials, self.decision_log)
        self._session = SessionState(
            session_id=self.session_id,
            decision_log=self.decision_log,
            started_at=self.clock.now(),
        )
        self._queue = self._plan()

        self._log(DecisionKind.SESSION_STARTED,
                  session_id=self.session_id,
                  ears=[e.value for e in self.config.ear_order],
                  n_frequencies=len(self.config.frequencies),
                  catch_probability=self.config.catch_trials.probability)
        logger.info("Session %s started (%d pairs planned)", self.session_id, len(self._queue))
        return self.snapshot()

    def abort(self) -> SessionState:
        """Stop issuing trials; keep finished pairs, mark the rest NOT_TESTED."""
        session = self._require_session()
        if session.status is not SessionStatus.IN_PROGRESS:
            raise ProtocolStateError(f"Cannot abort a session that is {session.status.value}")

        if self._outstanding is not None:
            trial = self._outstanding
            self._outstanding = None
            session.outcomes.append(TrialOutcome(trial, False, None, Resolution.ABORTED))
            self._log(DecisionKind.TRIAL_ABORTED, trial_id=trial.id)

        if self._machine is not None and not self._machine.is_finished:
            self._machine.mark_not_tested()
        self._machine = None

        for ear, frequency, is_retest in self._queue:
            session.add_frequency_state(PerFrequencyState(
                ear=ear,
                frequency_hz=frequency,
                current_level=self.config.protocol.start_level,
                status=FrequencyStatus.NOT_TESTED,
                is_retest=is_retest,
            ))
        self._queue = []

        session.status = SessionStatus.INCOMPLETE
        session.finished_at = self.clock.now()
        not_tested = len(session.states_with_status(FrequencyStatus.NOT_TESTED))
        self._log(DecisionKind.SESSION_ABORTED,
                  preserved=len(session.frequency_states) - not_tested,
                  not_tested=not_tested)
        logger.info("Session %s aborted; %d pairs not tested", self.session_id, not_tested)
        return self.snapshot()

    def resume(self) -> SessionState:
        """Continue an aborted session with the pairs that were not tested."""
        session = self._require_session()
        if session.status is not SessionStatus.INCOMPLETE:
            raise ProtocolStateError(f"Cannot resume a session that is {session.status.value}")

        requeue = [key for key, state in session.frequency_states.items()
                   if state.status is FrequencyStatus.NOT_TESTED]
        for key in requeue:
            state = session.frequency_states.pop(key)
            if state.trial_history:
                session.interrupted_states.append(state)

        self._queue = requeue
        self._last_issue_was_catch = False
        session.status = SessionStatus.IN_PROGRESS
        session.finished_at = None
        self._log(DecisionKind.SESSION_RESUMED, requeued=len(requeue))
        logger.info("Session %s resumed with %d pairs", self.session_id, len(requeue))
        return self.snapshot()

    # ------------------------------------------------------------------
    # Trial cycle
    # ------------------------------------------------------------------
    @property
    def status(self) -> Optional[SessionStatus]:
        return self._session.status if self._session is not None else None

    @property
    def outstanding_trial(self) -> Optional[Trial]:
        return self._outstanding

    def snapshot(self) -> SessionState:
        return self._require_session().snapshot()

    def issue_trial(self) -> Optional[Trial]:
        """
        Issue the next trial, or return the one still awaiting a response.

        Returns:
            Trial, or None once every pair is finished (session COMPLETE)
        """
        session = self._require_session()
        if session.status is SessionStatus.COMPLETE:
            return None
        if session.status is SessionStatus.INCOMPLETE:
            raise SessionAborted("Session was aborted; resume() to continue")
        if self._outstanding is not None:
            return self._outstanding

        if not self._familiarization_done:
            return self._issue(TrialKind.FAMILIARIZATION, self.config.ear_order[0],
                               self.config.familiarization_frequency, self._familiarization_level)

        machine = self._current_machine()
        if machine is None:
            self._complete()
            return None

        if self._should_insert_catch():
            state = machine.state
            return self._issue(TrialKind.CATCH, state.ear, state.frequency_hz, state.current_level)

        stimulus = machine.present_next_stimulus()
        return self._issue(TrialKind.SCORED, stimulus.ear, stimulus.frequency_hz, stimulus.level_db_hl)

    def submit_response(self, event: ResponseEvent) -> bool:
        """
        Deliver a patient response.

        Returns:
            bool: False when the event was spurious and discarded
        """
        session = self._require_session()
        trial = self._outstanding
        try:
            if (session.status is not SessionStatus.IN_PROGRESS or trial is None
                    or event.trial_id != trial.id):
                raise SpuriousResponse(event.trial_id, trial.id if trial else None)
        except SpuriousResponse as e:
            logger.warning("%s", e)
            self._log(DecisionKind.SPURIOUS_RESPONSE, trial_id=e.trial_id,
                      expected_trial_id=e.expected_trial_id)
            return False

        latency_ms = event.latency_ms
        if event.responded and latency_ms is None:
            latency_ms = max(0.0, (event.observed_at - trial.presented_at) * 1000.0)
        session.responses.append(event)
        resolution = Resolution.RESPONSE if event.responded else Resolution.NO_RESPONSE
        self._resolve(trial, bool(event.responded), latency_ms, resolution)
        return True

    def resolve_timeout(self, trial_id: Optional[int] = None) -> None:
        """Close the outstanding trial as a non-response after the wait window."""
        self._require_session()
        trial = self._outstanding
        if trial is None or (trial_id is not None and trial_id != trial.id):
            raise ProtocolStateError(f"Trial {trial_id} is not outstanding")
        self._log(DecisionKind.RESPONSE_TIMEOUT, trial_id=trial.id,
                  wait_s=self.config.response_wait_s)
        self._resolve(trial, False, None, Resolution.TIMEOUT)

    def run(self, audio, responder) -> SessionState:
        """
        Run the examination to completion or operator abort.

        Args:
            audio: Audio collaborator presenting tones (or silence for catch trials)
            responder: Response-input collaborator; its wait is the only suspension point

        Returns:
            SessionState: Final snapshot (COMPLETE or INCOMPLETE)
        """
        if self._session is None:
            self.start()
        try:
            while True:
                trial = self.issue_trial()
                if trial is None:
                    break
                if self.present_trial(audio, trial):
                    self._await_response(responder, trial)
        except SessionAborted:
            if self._session.status is SessionStatus.IN_PROGRESS:
                self.abort()
        return self.snapshot()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _plan(self) -> List[PairKey]:
        pairs = []
        for ear in self.config.ear_order:
            pairs.extend((ear, f, False) for f in self.config.frequencies)
            pairs.extend((ear, f, True) for f in self.config.retest_frequencies)
        return pairs

    def _require_session(self) -> SessionState:
        if self._session is None:
            raise ProtocolStateError("Session not started")
        return self._session

    def _current_machine(self) -> Optional[ProtocolStateMachine]:
        if self._machine is not None and not self._machine.is_finished:
            return self._machine
        if not self._queue:
            return None

        ear, frequency, is_retest = self._queue.pop(0)
        if self._last_ear is not None and ear is not self._last_ear:
            self._log(DecisionKind.EAR_SWITCHED, ear=ear.value, previous_ear=self._last_ear.value)
        self._last_ear = ear

        self._machine = ProtocolStateMachine(ear, frequency, self.config.protocol,
                                             self.decision_log, is_retest=is_retest)
        self._session.add_frequency_state(self._machine.state)
        self._scored_in_pair = 0
        self._log(DecisionKind.PAIR_STARTED, ear=ear.value, frequency_hz=frequency,
                  is_retest=is_retest, start_level=self._machine.state.current_level)
        return self._machine

    def _should_insert_catch(self) -> bool:
        catch = self.config.catch_trials
        if catch.probability <= 0 or self._last_issue_was_catch:
            return False
        if self._scored_in_pair < catch.min_scored_trials_before_catch:
            return False
        # Shortfall left by ineligible slots carries over to later eligible ones
        shortfall = catch.probability * (self._test_trials_issued + 1) - self._catch_trials_issued
        return bool(self.rng.random() < shortfall)

    def _issue(self, kind: TrialKind, ear: Ear, frequency_hz: int, level_db_hl: int) -> Trial:
        trial = Trial(
            id=self._next_trial_id,
            ear=ear,
            frequency_hz=frequency_hz,
            level_db_hl=level_db_hl,
            is_catch_trial=kind is TrialKind.CATCH,
            presented_at=self.clock.now(),
            kind=kind,
        )
        self._next_trial_id += 1
        self._session.trials.append(trial)
        self._outstanding = trial
        self._last_issue_was_catch = trial.is_catch_trial
        if kind is not TrialKind.FAMILIARIZATION:
            self._test_trials_issued += 1
            self._catch_trials_issued += int(trial.is_catch_trial)

        if trial.is_catch_trial:
            self._log(DecisionKind.CATCH_TRIAL_INSERTED, trial_id=trial.id, ear=ear.value,
                      frequency_hz=frequency_hz, level_db_hl=level_db_hl)
        else:
            self._log(DecisionKind.STIMULUS_PRESENTED, trial_id=trial.id, trial_kind=kind.value,
                      ear=ear.value, frequency_hz=frequency_hz, level_db_hl=level_db_hl)
        return trial

    def present_trial(self, audio, trial: Trial) -> bool:
        """Play the trial, retrying once; False when it resolved as a playback failure."""
        for attempt in (1, 2):
            try:
                audio.present_stimulus(trial.ear, trial.frequency_hz, trial.level_db_hl,
                                       trial.is_catch_trial)
                return True
            except CollaboratorFailure as e:
                if attempt == 1:
                    logger.warning("Playback failed for trial %d, retrying: %s", trial.id, e)
                    self._log(DecisionKind.PLAYBACK_RETRY, trial_id=trial.id, error=str(e),
                              backoff_s=self.config.audio_retry_backoff_s)
                    self.clock.sleep(self.config.audio_retry_backoff_s)
                else:
                    logger.error("Playback failed twice for trial %d: %s", trial.id, e)
                    self._log(DecisionKind.PLAYBACK_FAILED, trial_id=trial.id, error=str(e))
                    self._resolve(trial, False, None, Resolution.PLAYBACK_FAILURE)
        return False

    def _await_response(self, responder, trial: Trial) -> None:
        window_opened = self.clock.now()
        while self._outstanding is trial:
            remaining = self.config.response_wait_s - (self.clock.now() - window_opened)
            if remaining <= 0:
                self.resolve_timeout(trial.id)
                break
            event = responder.wait_for_response(trial, remaining)
            if event is None:
                self.resolve_timeout(trial.id)
            else:
                self.submit_response(event)

    def _resolve(self, trial: Trial, responded: bool, latency_ms, resolution: Resolution) -> None:
        session = self._session
        self._outstanding = None

        classification = self.timing.record(responded, latency_ms, trial.id)
        counts = responded and classification.counts_as_response
        if responded and not counts:
            resolution = Resolution.BEYOND_CEILING
        session.outcomes.append(
            TrialOutcome(trial, responded, latency_ms, resolution, classification.category))
        session.reliability = self.timing.reliability_score()

        if trial.kind is TrialKind.FAMILIARIZATION:
            self._handle_familiarization(trial, counts)
        elif trial.is_catch_trial:
            if resolution is not Resolution.PLAYBACK_FAILURE:
                session.catch_summary = self.catch_detector.record_catch_outcome(
                    trial, counts, latency_ms)
        else:
            self._handle_scored(trial, counts, latency_ms, classification.reliability)

    def _handle_familiarization(self, trial: Trial, acknowledged: bool) -> None:
        self._familiarization_attempts += 1
        attempt = self._familiarization_attempts
        if acknowledged:
            self._familiarization_done = True
            self._session.familiarization_acknowledged = True
            self._log(DecisionKind.FAMILIARIZATION_RESULT, acknowledged=True, retrying=False,
                      level_db_hl=trial.level_db_hl, attempt=attempt)
        elif attempt < self.config.familiarization_max_attempts:
            self._familiarization_level = self.config.protocol.clamp(
                trial.level_db_hl + FAMILIARIZATION_STEP_UP)
            self._log(DecisionKind.FAMILIARIZATION_RESULT, acknowledged=False, retrying=True,
                      level_db_hl=trial.level_db_hl, next_level=self._familiarization_level,
                      attempt=attempt)
        else:
            self._familiarization_done = True
            self._session.familiarization_acknowledged = False
            logger.warning("Familiarization not acknowledged after %d attempts", attempt)
            self._log(DecisionKind.FAMILIARIZATION_RESULT, acknowledged=False, retrying=False,
                      level_db_hl=trial.level_db_hl, attempt=attempt)

    def _handle_scored(self, trial: Trial, responded: bool, latency_ms, validity: float) -> None:
        session = self._session
        machine = self._machine
        self._scored_in_pair += 1
        self.catch_detector.record_genuine(trial.ear, trial.frequency_hz, trial.level_db_hl, responded)
        session.catch_summary = self.catch_detector.summary()

        try:
            machine.record_response(responded, latency_ms, validity=validity, trial_id=trial.id)
        except ProtocolExceeded as e:
            logger.info("Continuing after abandoned frequency: %s", e)

        if machine.is_finished:
            self._finalize_pair(machine.state)

    def _finalize_pair(self, state: PerFrequencyState) -> None:
        session = self._session
        assessment = self.risk_engine.recompute(
            list(session.frequency_states.values()),
            session.catch_summary,
            session.reliability,
            trigger=(state.ear.value, state.frequency_hz),
        )
        session.risk_history.append(assessment)

    def _complete(self) -> None:
        session = self._session
        unfinished = [s for s in session.frequency_states.values()
                      if s.status not in (FrequencyStatus.THRESHOLD_CONFIRMED, FrequencyStatus.ABANDONED)]
        if unfinished:
            raise ProtocolStateError(
                f"Cannot complete with unfinished pairs: "
                f"{[(s.ear.value, s.frequency_hz) for s in unfinished]}")

        session.status = SessionStatus.COMPLETE
        session.finished_at = self.clock.now()
        latest = session.latest_risk
        self._log(DecisionKind.SESSION_COMPLETE,
                  confirmed=len(session.states_with_status(FrequencyStatus.THRESHOLD_CONFIRMED)),
                  abandoned=len(session.states_with_status(FrequencyStatus.ABANDONED)),
                  risk_category=latest.category.value if latest else 'not assessed')
        logger.info("Session %s complete", self.session_id)

        if self.persistence is not None:
            self.persistence.save(self.snapshot())

    def _log(self, kind: DecisionKind, **payload) -> None:
        self.decision_log.record(DecisionSource.ORCHESTRATOR, kind, **payload)
