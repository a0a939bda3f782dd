"""
TrustMesh - Workload Identity Issuance and Trust Federation

Attestation · Identity · Federation · Policy

TrustMesh attests workloads and the nodes hosting them, issues short-lived
signed identity documents, federates trust bundles with peer trust domains
and evaluates authorization policy against verified identities.

Version: 0.1.0
"""

__version__ = "0.1.0"

from .exceptions import (
    TrustMeshError,
    ConfigurationError,
    AttestationFailed,
    AttestationTimeout,
    RegistrationError,
    NoRegistration,
    AmbiguousRegistration,
    RegistrationConflict,
    SigningUnavailable,
    SigningTimeout,
    RotationInProgress,
    BundleRejected,
    FederationUnavailable,
    VerificationError,
    PolicyDenied,
)
from .config import TrustMeshConfig, load_config
from .events import Event, EventBus, InMemoryEventBus, QueuedEventBus

# Key Authority
from .identity import (
    SpiffeID,
    IdentityDocument,
    TrustBundle,
    KeyAuthority,
    RevocationLog,
    RevocationReason,
    RevocationRecord,
)

# Attestation & Registration
from .attestation import (
    Attestor,
    Evidence,
    Selector,
    JoinTokenNodeVerifier,
    K8sPSATNodeVerifier,
    UnixWorkloadVerifier,
    K8sWorkloadVerifier,
)
from .registration import RegistrationEntry, RegistrationStore, MatchResult, MatchStatus

# Issuance
from .issuance import IssuanceCoordinator

# Federation
from .federation import (
    FederationManager,
    ImportResult,
    PeerState,
    HttpBundleFetcher,
    InProcessFetcher,
)

# Verification & Policy
from .verification import DocumentVerifier, RevocationMode, VerificationResult
from .policy import PolicyRule, RuleStore, PolicyDecision, PolicyDecisionEngine

from .server import TrustDomainServer

__all__ = [
    "__version__",
    # Errors
    "TrustMeshError",
    "ConfigurationError",
    "AttestationFailed",
    "AttestationTimeout",
    "RegistrationError",
    "NoRegistration",
    "AmbiguousRegistration",
    "RegistrationConflict",
    "SigningUnavailable",
    "SigningTimeout",
    "RotationInProgress",
    "BundleRejected",
    "FederationUnavailable",
    "VerificationError",
    "PolicyDenied",
    # Config & events
    "TrustMeshConfig",
    "load_config",
    "Event",
    "EventBus",
    "InMemoryEventBus",
    "QueuedEventBus",
    # Key Authority
    "SpiffeID",
    "IdentityDocument",
    "TrustBundle",
    "KeyAuthority",
    "RevocationLog",
    "RevocationReason",
    "RevocationRecord",
    # Attestation & Registration
    "Attestor",
    "Evidence",
    "Selector",
    "JoinTokenNodeVerifier",
    "K8sPSATNodeVerifier",
    "UnixWorkloadVerifier",
    "K8sWorkloadVerifier",
    "RegistrationEntry",
    "RegistrationStore",
    "MatchResult",
    "MatchStatus",
    # Issuance
    "IssuanceCoordinator",
    # Federation
    "FederationManager",
    "ImportResult",
    "PeerState",
    "HttpBundleFetcher",
    "InProcessFetcher",
    # Verification & Policy
    "DocumentVerifier",
    "RevocationMode",
    "VerificationResult",
    "PolicyRule",
    "RuleStore",
    "PolicyDecision",
    "PolicyDecisionEngine",
    # Server
    "TrustDomainServer",
]
