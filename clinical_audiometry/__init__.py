"""
Clinical Audiometry - Autonomous Pure-Tone Audiometry Examiner
"""

__version__ = "0.2.0"

# Import main classes and functions for easy access
from .procedures.orchestrator import TestOrchestrator
from .procedures.hughson_westlake import ProtocolStateMachine
from .utils.config import ExaminerConfig, load_config
from .simulation.patient import SimulatedPatient

__all__ = [
    "TestOrchestrator",
    "ProtocolStateMachine",
    "ExaminerConfig",
    "load_config",
    "SimulatedPatient",
]
