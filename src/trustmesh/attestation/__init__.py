"""
Attestation

Node and workload attestation producing verified selector sets.
"""

from .selectors import Selector, SelectorSet, selector_set, fingerprint, lookup
from .verifiers import (
    AttestationStage,
    Evidence,
    Verifier,
    JoinTokenNodeVerifier,
    K8sPSATNodeVerifier,
    UnixWorkloadVerifier,
    K8sWorkloadVerifier,
)
from .attestor import Attestor, AttestationSession, SessionState

__all__ = [
    "Selector",
    "SelectorSet",
    "selector_set",
    "fingerprint",
    "lookup",
    "AttestationStage",
    "Evidence",
    "Verifier",
    "JoinTokenNodeVerifier",
    "K8sPSATNodeVerifier",
    "UnixWorkloadVerifier",
    "K8sWorkloadVerifier",
    "Attestor",
    "AttestationSession",
    "SessionState",
]
