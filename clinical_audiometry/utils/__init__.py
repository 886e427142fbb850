"""
Utility module for common functions and constants.

This module contains:
- Default values and constants
- Exception hierarchy
- Clock abstraction

The validated configuration lives in ``clinical_audiometry.utils.config``.
"""

from .defaults import *
from .errors import (
    AudiometryError,
    CollaboratorFailure,
    ConfigurationError,
    ProtocolExceeded,
    ProtocolStateError,
    SessionAborted,
    SpuriousResponse,
)

__all__ = [
    "AudiometryError",
    "CollaboratorFailure",
    "ConfigurationError",
    "ProtocolExceeded",
    "ProtocolStateError",
    "SessionAborted",
    "SpuriousResponse",
]
