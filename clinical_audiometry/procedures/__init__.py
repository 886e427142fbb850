"""
Procedures module for the examination.

This module contains implementations of:
- Modified Hughson-Westlake threshold seeking for one ear/frequency pair
- Session orchestration across ears and frequencies
"""

from .hughson_westlake import ProtocolStateMachine
from .orchestrator import TestOrchestrator

__all__ = [
    "ProtocolStateMachine",
    "TestOrchestrator",
]
