"""
Human-readable rationale for examiner decisions.

The explainer only reads decision payloads and session snapshots. It never
changes protocol or risk state.
"""
# Standard library imports
from typing import Dict, List, Optional

# Local imports
from .decision_log import DecisionKind, DecisionLogEntry

TEMPLATES = {
    DecisionKind.SESSION_STARTED:
        "Session {session_id} started: ears {ears}, {n_frequencies} frequencies per ear, "
        "catch-trial probability {catch_probability:.0%}.",
    DecisionKind.PAIR_STARTED:
        "Testing {ear} ear at {frequency_hz} Hz{retest_note}, starting at {start_level} dB HL.",
    DecisionKind.EAR_SWITCHED:
        "Switched to {ear} ear after completing the {previous_ear} ear.",
    DecisionKind.STIMULUS_PRESENTED:
        "Trial {trial_id}: {kind} presentation, {ear} ear {frequency_hz} Hz at {level_db_hl} dB HL.",
    DecisionKind.CATCH_TRIAL_INSERTED:
        "Trial {trial_id} is a silent catch trial in place of the {level_db_hl} dB HL tone "
        "at {frequency_hz} Hz (false response detection).",
    DecisionKind.FIRST_RESPONSE:
        "First response at {level} dB HL (reversal #{reversal}); bracketing begins, "
        "next level {next_level} dB HL.",
    DecisionKind.CATCH_TRIAL_RESULT:
        "Catch trial {trial_id}: {result}; false-positive rate {false_positive_rate:.0%} "
        "({false_positives}/{catch_trials}).",
    DecisionKind.RESPONSE_TIMEOUT:
        "No response to trial {trial_id} within {wait_s:.1f} s; scored as no response.",
    DecisionKind.SPURIOUS_RESPONSE:
        "Ignored response for trial {trial_id}: no matching outstanding trial "
        "(outstanding: {expected_trial_id}).",
    DecisionKind.ANTICIPATORY_RESPONSE:
        "Anticipatory response ({latency_ms:.0f} ms < {limit_ms:.0f} ms) - possible guessing.",
    DecisionKind.BEYOND_CEILING_RESPONSE:
        "Response after {latency_ms:.0f} ms exceeds the {ceiling_ms:.0f} ms ceiling{ceiling_note}.",
    DecisionKind.FATIGUE_DETECTED:
        "Patient fatigue detected: recent latency {moving_average_ms:.0f} ms vs baseline "
        "{baseline_ms:.0f} ms ({slowdown:.0%} slower).",
    DecisionKind.PLAYBACK_RETRY:
        "Playback of trial {trial_id} failed ({error}); retrying after {backoff_s:.2f} s.",
    DecisionKind.PLAYBACK_FAILED:
        "Playback of trial {trial_id} failed twice ({error}); scored as no response.",
    DecisionKind.RISK_ESCALATED:
        "Risk category escalated to {category}: {reason}.",
    DecisionKind.TRIAL_ABORTED:
        "Trial {trial_id} aborted by the operator before a response was recorded.",
    DecisionKind.SESSION_ABORTED:
        "Session aborted by operator: {preserved} frequencies preserved, {not_tested} not tested.",
    DecisionKind.SESSION_RESUMED:
        "Session resumed: {requeued} frequencies re-queued.",
    DecisionKind.SESSION_COMPLETE:
        "Audiometric assessment completed: {confirmed} thresholds confirmed, {abandoned} "
        "undetermined, final risk {risk_category}.",
}

CONFIDENCE_DESCRIPTORS = [
    (0.9, 'excellent', 'highly reliable'),
    (0.8, 'good', 'clinically reliable'),
    (0.7, 'acceptable', 'adequate reliability'),
    (0.6, 'questionable', 'limited reliability'),
    (0.0, 'poor', 'unreliable'),
]


def describe_confidence(confidence):
    """Return (descriptor, clinical wording) for a 0-1 confidence."""
    for floor, descriptor, clinical in CONFIDENCE_DESCRIPTORS:
        if confidence >= floor:
            return descriptor, clinical
    return CONFIDENCE_DESCRIPTORS[-1][1:]


def classify_hearing_level(average_threshold):
    """Degree of hearing loss for a pure tone average."""
    if average_threshold <= 25:
        return 'normal hearing'
    if average_threshold <= 40:
        return 'mild hearing loss'
    if average_threshold <= 55:
        return 'moderate hearing loss'
    if average_threshold <= 70:
        return 'moderately severe hearing loss'
    if average_threshold <= 90:
        return 'severe hearing loss'
    return 'profound hearing loss'


class ClinicalExplainer:
    """Turns structured decision payloads into clinician-style sentences."""

    def __call__(self, entry: DecisionLogEntry) -> str:
        return self.explain(entry)

    def explain(self, entry: DecisionLogEntry) -> str:
        handler = getattr(self, f"_explain_{entry.kind.value}", None)
        if handler is not None:
            return handler(dict(entry.payload))
        data = self._enrich(entry.kind, dict(entry.payload))
        return TEMPLATES[entry.kind].format(**data)

    def _enrich(self, kind, data):
        if kind is DecisionKind.PAIR_STARTED:
            data['retest_note'] = ' (retest)' if data.get('is_retest') else ''
        elif kind is DecisionKind.CATCH_TRIAL_RESULT:
            data['result'] = ('response to silence - false positive' if data['responded']
                              else 'correctly withheld response')
        elif kind is DecisionKind.BEYOND_CEILING_RESPONSE:
            data['ceiling_note'] = ('; treated as no response' if not data['counted_as_response']
                                    else '; kept as a response')
        elif kind is DecisionKind.SESSION_STARTED:
            data['ears'] = ' then '.join(data['ears'])
        elif kind is DecisionKind.STIMULUS_PRESENTED:
            data['kind'] = data.get('trial_kind', 'scored')
        elif kind is DecisionKind.SPURIOUS_RESPONSE:
            data['expected_trial_id'] = data.get('expected_trial_id') or 'none'
        return data

    def _explain_level_adjusted(self, data):
        level, next_level = data['level'], data['next_level']
        if data['responded']:
            text = (f"Decreased to {next_level} dB HL (response at {level} dB HL - "
                    f"Hughson-Westlake descend 10 dB rule).")
        elif data['phase'] == 'seeking':
            text = (f"Increased to {next_level} dB HL (no response at {level} dB HL - "
                    f"seeking first response, ascend 10 dB).")
        else:
            text = (f"Increased to {next_level} dB HL (no response at {level} dB HL - "
                    f"Hughson-Westlake ascend 5 dB rule).")
        if next_level == level:
            text += " Level held at the output limit."
        if data.get('reversal'):
            text += f" Reversal #{data['reversal']}."
        elif data.get('direction_changed'):
            text += " Direction changed."
        return text

    def _explain_threshold_confirmed(self, data):
        descriptor, clinical = describe_confidence(data['confidence'])
        rule = data['rule'].replace('_', ' ')
        retest = ' retest' if data.get('is_retest') else ''
        return (f"Threshold{retest} confirmed at {data['threshold']} dB HL for the {data['ear']} ear "
                f"at {data['frequency_hz']} Hz after {data['reversals']} reversals in "
                f"{data['trials']} trials ({rule} rule); {descriptor} confidence "
                f"{data['confidence']:.0%}, {clinical}.")

    def _explain_frequency_abandoned(self, data):
        return (f"{data['frequency_hz']} Hz ({data['ear']} ear) abandoned after {data['trials']} "
                f"trials and {data['reversals']} reversals: {data['reason']}. "
                f"Threshold {data['flag']}.")

    def _explain_familiarization_result(self, data):
        if data['acknowledged']:
            return (f"Familiarization tone at {data['level_db_hl']} dB HL acknowledged "
                    f"(attempt {data['attempt']}); main sequence may begin.")
        if data['retrying']:
            return (f"Familiarization tone at {data['level_db_hl']} dB HL not acknowledged; "
                    f"re-presenting at {data['next_level']} dB HL.")
        return (f"Familiarization not acknowledged after {data['attempt']} attempts; "
                f"proceeding with instructions flagged for review.")

    def _explain_risk_recomputed(self, data):
        factors = data.get('factors') or []
        lead = next((f for f in factors if f['contribution'] > 0), None)
        text = f"Malingering risk {data['score']:.1f}/100 ({data['category']})"
        if lead is not None:
            text += f"; main factor {lead['name'].replace('_', ' ')}: {lead['detail']}"
        return text + "."

    def summarize_ear(self, thresholds: Dict[int, Optional[int]], ear) -> str:
        """One-line summary of an ear's thresholds (frequency -> dB HL or None)."""
        ear = getattr(ear, 'value', ear)
        if not thresholds:
            return f"{ear} ear assessment completed (no frequencies tested)"
        values = [v for v in thresholds.values() if v is not None]
        if not values:
            return (f"{ear} ear assessment completed ({len(thresholds)} frequencies attempted, "
                    f"no valid thresholds established)")
        average = round(sum(values) / len(values))
        frequencies = sorted(thresholds)
        span = (f"{frequencies[0]} Hz" if len(frequencies) == 1
                else f"{frequencies[0]}-{frequencies[-1]} Hz")
        return (f"{ear} ear completed: {len(values)}/{len(thresholds)} frequencies tested, "
                f"average threshold {average} dB HL ({classify_hearing_level(average)}), range {span}")

    def summarize_session(self, session) -> List[str]:
        """Summary lines for a session snapshot."""
        lines = [f"Session {session.session_id}: {session.status.value}"]
        summary = session.summary()
        for ear in session.ears_tested():
            lines.append(self.summarize_ear(session.thresholds(ear), ear))
            pta = summary[ear.value]['pta']
            if pta is not None:
                lines.append(f"{ear.value} ear PTA {pta:.0f} dB HL "
                             f"({summary[ear.value]['classification']})")
        bilateral = summary.get('bilateral')
        if bilateral and bilateral['asymmetry_significant']:
            lines.append(f"Significant asymmetry: {bilateral['asymmetry']:.0f} dB "
                         f"(worse ear: {bilateral['worse_ear']})")
        if session.risk_history:
            latest = session.risk_history[-1]
            lines.append(f"Malingering risk: {latest.category.value} ({latest.score:.1f}/100)")
        follow_up = [s for s in session.frequency_states.values() if s.follow_up_required]
        for state in follow_up:
            lines.append(f"{state.ear.value} {state.frequency_hz} Hz undetermined - follow-up required")
        return lines
