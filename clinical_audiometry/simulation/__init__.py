"""
Simulation module for audiometry testing.

This module contains functions and classes for:
- Simulating patient responses and latencies
- Generating hearing profiles
- Replaying recorded sessions
"""

from .hearing_profiles import generate_clipped_data, generate_hearing_profile
from .response_model import HearingResponseModel, LatencyModel
from .patient import SimulatedPatient
from .replay import replay_session

__all__ = [
    "generate_clipped_data",
    "generate_hearing_profile",
    "HearingResponseModel",
    "LatencyModel",
    "SimulatedPatient",
    "replay_session",
]
