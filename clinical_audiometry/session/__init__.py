"""
Session data model.

This module contains:
- Enumerations and immutable trial records
- Per-frequency adaptive state
- The session aggregate owned by the orchestrator
"""

from .models import *
from .state import SessionState

__all__ = ["SessionState"]
