"""
Identity & Key Authority

Short-lived workload credentials with:
- SPIFFE IDs and signed identity documents
- Root and rotating intermediate signing keys
- Sequenced trust bundles with overlapping rotation
- Append-only revocation records
"""

from .spiffe import SpiffeID, IdentityDocument, trust_domain_of
from .keystore import KeyStore, SoftwareKeyStore
from .bundle import BundleKey, TrustBundle
from .revocation import RevocationLog, RevocationReason, RevocationRecord
from .authority import AuthorityKey, AuthoritySnapshot, KeyAuthority, load_workload_public_key
from .jwk import to_jwk, from_jwk

__all__ = [
    "SpiffeID",
    "IdentityDocument",
    "trust_domain_of",
    "KeyStore",
    "SoftwareKeyStore",
    "BundleKey",
    "TrustBundle",
    "RevocationLog",
    "RevocationReason",
    "RevocationRecord",
    "AuthorityKey",
    "AuthoritySnapshot",
    "KeyAuthority",
    "load_workload_public_key",
    "to_jwk",
    "from_jwk",
]
