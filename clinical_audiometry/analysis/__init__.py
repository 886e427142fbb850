"""
Analysis module for response validity.

This module contains functions for:
- Response latency classification and fatigue tracking
- False-response detection from catch trials
- Malingering risk scoring
"""

from .response_timing import ResponseTimingAnalyzer, classify_latency
from .catch_trials import FalseResponseDetector
from .malingering import MalingeringRiskEngine, assess_risk, recommendations

__all__ = [
    "ResponseTimingAnalyzer",
    "classify_latency",
    "FalseResponseDetector",
    "MalingeringRiskEngine",
    "assess_risk",
    "recommendations",
]
