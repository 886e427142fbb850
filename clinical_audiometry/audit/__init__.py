"""
Audit trail of examiner decisions and their clinical explanations.
"""

from .decision_log import DecisionKind, DecisionLog, DecisionLogEntry, DecisionSource
from .explainer import ClinicalExplainer

__all__ = [
    "DecisionKind",
    "DecisionLog",
    "DecisionLogEntry",
    "DecisionSource",
    "ClinicalExplainer",
]
