"""
Registration

Selectors to identity templates, with copy-on-write snapshots.
"""

from .entry import RegistrationEntry, MatchResult, MatchStatus
from .store import RegistrationChange, RegistrationSnapshot, RegistrationStore

__all__ = [
    "RegistrationEntry",
    "MatchResult",
    "MatchStatus",
    "RegistrationChange",
    "RegistrationSnapshot",
    "RegistrationStore",
]
