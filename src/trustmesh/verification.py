"""
Document Verification

The only contract with credential consumers: validate the signature chain
against a currently held trust bundle, check the validity window, and
consult the revocation stream.

Revocation checking is configurable. ``ALWAYS`` (the default) checks on
every verification; ``ADVISORY`` checks only when the caller marks the
operation as sensitive.
"""

from __future__ import annotations

import base64
import binascii
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Callable, Optional

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519
from pydantic import BaseModel

from trustmesh.exceptions import VerificationError
from trustmesh.identity.keystore import KeyStore
from trustmesh.identity.revocation import RevocationLog
from trustmesh.identity.spiffe import IdentityDocument, SpiffeID

if TYPE_CHECKING:
    from trustmesh.federation.manager import FederationManager
    from trustmesh.identity.authority import KeyAuthority

logger = logging.getLogger(__name__)


class RevocationMode(str, Enum):
    ALWAYS = "always"
    ADVISORY = "advisory"


class VerificationResult(BaseModel):
    """Outcome of verifying one identity document."""

    valid: bool
    subject: str
    trust_domain: str
    reason: Optional[str] = None
    revocation_checked: bool = False
    revoked: bool = False

    def raise_for_invalid(self) -> "VerificationResult":
        if not self.valid:
            raise VerificationError(f"{self.subject}: {self.reason}")
        return self


class DocumentVerifier:
    """
    Verifies identity documents of the local and federated trust domains.

    Local documents verify against the authority's current bundle, which
    keeps retired keys for ``max_ttl + clock_skew``. Foreign documents
    verify against the key material of bundles imported from that peer.
    """

    def __init__(
        self,
        trust_domain: str,
        authority: Optional["KeyAuthority"] = None,
        federation: Optional["FederationManager"] = None,
        revocations: Optional[RevocationLog] = None,
        mode: RevocationMode = RevocationMode.ALWAYS,
        clock_skew_seconds: int = 30,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.trust_domain = trust_domain
        self.authority = authority
        self.federation = federation
        if revocations is None and authority is not None:
            revocations = authority.revocations
        self.revocations = revocations
        self.mode = RevocationMode(mode)
        self.clock_skew = timedelta(seconds=clock_skew_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def keys_for(self, trust_domain: str, now: Optional[datetime] = None) -> dict[str, bytes]:
        """Public keys currently trusted for documents of ``trust_domain``."""
        if trust_domain == self.trust_domain:
            if self.authority is None:
                return {}
            now = now or self._clock()
            return {
                key.key_id: key.raw()
                for key in self.authority.bundle.keys
                if key.not_after is None or now <= key.not_after
            }
        if self.federation is None:
            return {}
        return self.federation.keys_for(trust_domain)

    def verify(
        self,
        document: IdentityDocument,
        now: Optional[datetime] = None,
        sensitive: bool = False,
    ) -> VerificationResult:
        """Verify a document.

        Args:
            document: The identity document presented by a workload.
            now: Verification time; defaults to the current time.
            sensitive: Force the revocation check in ``ADVISORY`` mode.

        Returns:
            A VerificationResult; ``valid`` is False with a ``reason`` on
            any failure. Verification never raises for an invalid document.
        """
        now = now or self._clock()

        def invalid(reason: str, **extra: bool) -> VerificationResult:
            logger.debug("Document %s for %s rejected: %s", document.serial, document.subject, reason)
            return VerificationResult(
                valid=False,
                subject=document.subject,
                trust_domain=document.trust_domain,
                reason=reason,
                **extra,
            )

        try:
            subject_domain = SpiffeID.parse(document.subject).trust_domain
        except ValueError:
            return invalid("malformed subject")
        if subject_domain != document.trust_domain:
            return invalid("subject is outside the document's trust domain")

        keys = self.keys_for(document.trust_domain, now)
        if not keys:
            return invalid(f"no trust bundle held for {document.trust_domain}")
        signing_key = keys.get(document.signing_key_id)
        if signing_key is None:
            return invalid(f"signing key {document.signing_key_id} is not in the trust bundle")
        try:
            signature = document.signature_bytes()
        except (binascii.Error, ValueError):
            return invalid("malformed signature")
        if not KeyStore.verify(signing_key, document.signing_payload(), signature):
            return invalid("signature does not verify")

        if document.is_not_yet_valid(now, self.clock_skew):
            return invalid("document is not yet valid")
        if document.is_expired(now, self.clock_skew):
            return invalid("document has expired")

        if document.certificate_chain:
            problem = self._check_certificate_chain(document, signing_key)
            if problem:
                return invalid(problem)

        check_revocation = self.mode == RevocationMode.ALWAYS or sensitive
        if check_revocation and self.revocations is not None:
            record = self.revocations.find(document.subject, document.issued_at)
            if record is not None:
                return invalid(
                    f"subject revoked at {record.revoked_at.isoformat()} ({record.reason.value})",
                    revocation_checked=True,
                    revoked=True,
                )

        return VerificationResult(
            valid=True,
            subject=document.subject,
            trust_domain=document.trust_domain,
            revocation_checked=check_revocation and self.revocations is not None,
        )

    @staticmethod
    def _check_certificate_chain(document: IdentityDocument, signing_key: bytes) -> Optional[str]:
        """Check the embedded X.509-SVID against the document and bundle key."""
        try:
            leaf = x509.load_pem_x509_certificate(document.certificate_chain[0].encode())
            intermediate = x509.load_pem_x509_certificate(document.certificate_chain[1].encode())
        except (IndexError, ValueError):
            return "malformed certificate chain"

        intermediate_key = intermediate.public_key()
        if not isinstance(intermediate_key, ed25519.Ed25519PublicKey):
            return "unsupported intermediate key type"
        if intermediate_key.public_bytes(
            serialization.Encoding.Raw, serialization.PublicFormat.Raw
        ) != signing_key:
            return "certificate chain does not match the signing key"
        try:
            intermediate_key.verify(leaf.signature, leaf.tbs_certificate_bytes)
        except InvalidSignature:
            return "leaf certificate signature does not verify"

        try:
            san = leaf.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        except x509.ExtensionNotFound:
            return "leaf certificate has no URI SAN"
        if san.value.get_values_for_type(x509.UniformResourceIdentifier) != [document.subject]:
            return "leaf certificate URI SAN does not match the subject"

        leaf_spki = leaf.public_key().public_bytes(
            serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
        )
        if base64.b64encode(leaf_spki).decode() != document.public_key:
            return "leaf certificate key does not match the document"
        return None
