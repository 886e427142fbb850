"""Exceptions raised by the examiner."""


class AudiometryError(Exception):
    """Base class for all examiner errors."""


class ConfigurationError(AudiometryError, ValueError):
    """Invalid protocol parameters detected before any trial is issued."""


class ProtocolExceeded(AudiometryError):
    """A frequency could not confirm a threshold and was abandoned.

    Recovered locally by the orchestrator, which moves on to the next pair.
    """

    def __init__(self, ear, frequency_hz, reason, trial_count):
        self.ear = ear
        self.frequency_hz = frequency_hz
        self.reason = reason
        self.trial_count = trial_count
        super().__init__(
            f"{ear} ear {frequency_hz} Hz abandoned after {trial_count} trials: {reason}")


class SpuriousResponse(AudiometryError):
    """A response event with no matching outstanding trial."""

    def __init__(self, trial_id, expected_trial_id=None):
        self.trial_id = trial_id
        self.expected_trial_id = expected_trial_id
        super().__init__(
            f"Response for trial {trial_id} does not match outstanding trial {expected_trial_id}")


class SessionAborted(AudiometryError):
    """Operator cancellation at the suspension point."""


class CollaboratorFailure(AudiometryError):
    """An external collaborator (audio playback) failed."""


class ProtocolStateError(AudiometryError):
    """An operation was requested in a state that does not allow it."""
