"""
SPIFFE IDs and Identity Documents

An identity document is the short-lived credential issued to a workload
after successful attestation. It carries the workload's SPIFFE ID, the
validity window, the workload's public key and the fingerprint of the
selectors that justified issuance, and is signed by an intermediate key
of the issuing trust domain.

Documents are immutable: rotation issues a new document, it never edits
an old one.
"""

import base64
import json
import re
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from trustmesh.constants import SPIFFE_SCHEME

_TRUST_DOMAIN_RE = re.compile(r"^[a-z0-9._-]+$")
_PATH_SEGMENT_RE = re.compile(r"^[A-Za-z0-9._-]+$")


class SpiffeID(BaseModel):
    """A parsed ``spiffe://trust-domain/path`` identifier."""

    model_config = ConfigDict(frozen=True)

    trust_domain: str
    path: str = "/"

    @classmethod
    def parse(cls, spiffe_id: str) -> "SpiffeID":
        """Parse a SPIFFE ID into trust domain and path.

        Args:
            spiffe_id: The full SPIFFE ID string.

        Returns:
            The parsed SpiffeID.

        Raises:
            ValueError: If the ID is malformed.
        """
        if not spiffe_id.startswith(SPIFFE_SCHEME):
            raise ValueError(f"Invalid SPIFFE ID: {spiffe_id}")

        parts = spiffe_id[len(SPIFFE_SCHEME):].split("/", 1)
        trust_domain = parts[0]
        if not trust_domain or not _TRUST_DOMAIN_RE.match(trust_domain):
            raise ValueError(f"Invalid trust domain in SPIFFE ID: {spiffe_id}")

        if len(parts) == 1 or parts[1] == "":
            return cls(trust_domain=trust_domain, path="/")

        segments = parts[1].split("/")
        for segment in segments:
            if segment in ("", ".", "..") or not _PATH_SEGMENT_RE.match(segment):
                raise ValueError(f"Invalid path segment '{segment}' in SPIFFE ID: {spiffe_id}")
        return cls(trust_domain=trust_domain, path="/" + "/".join(segments))

    @classmethod
    def for_path(cls, trust_domain: str, path: str) -> "SpiffeID":
        """Build a SPIFFE ID from a trust domain and a workload path."""
        return cls.parse(f"{SPIFFE_SCHEME}{trust_domain}/{path.lstrip('/')}")

    def __str__(self) -> str:
        suffix = "" if self.path == "/" else self.path
        return f"{SPIFFE_SCHEME}{self.trust_domain}{suffix}"


def trust_domain_of(spiffe_id: str) -> str:
    """Return the trust domain of a SPIFFE ID string."""
    return SpiffeID.parse(spiffe_id).trust_domain


class IdentityDocument(BaseModel):
    """
    Signed, short-lived workload credential (an SVID).

    ``public_key`` is the base64 DER SubjectPublicKeyInfo of the workload
    key. ``certificate_chain`` optionally holds a PEM X.509-SVID leaf
    followed by the issuing intermediate.
    """

    model_config = ConfigDict(frozen=True)

    serial: str = Field(..., description="Unique document serial")
    subject: str = Field(..., description="SPIFFE ID (spiffe://trust-domain/path)")
    trust_domain: str
    issued_at: datetime
    expires_at: datetime

    public_key: str = Field(..., description="Base64 DER SubjectPublicKeyInfo")
    certificate_chain: Optional[list[str]] = Field(None, description="PEM-encoded cert chain")

    selector_fingerprint: str = Field(..., description="SHA-256 of the attested selectors")
    scopes: list[str] = Field(default_factory=list)

    signing_key_id: str
    signature: str = Field(default="", description="Base64 signature over signing_payload()")

    def signing_payload(self) -> bytes:
        """Canonical bytes covered by the signature."""
        data = self.model_dump(mode="json", exclude={"signature"})
        return json.dumps(data, sort_keys=True, separators=(",", ":")).encode()

    def signature_bytes(self) -> bytes:
        return base64.b64decode(self.signature)

    @property
    def ttl(self) -> timedelta:
        return self.expires_at - self.issued_at

    def is_expired(self, now: datetime, skew: timedelta = timedelta(0)) -> bool:
        """True once ``now`` is past expiry plus the allowed clock skew."""
        return now >= self.expires_at + skew

    def is_not_yet_valid(self, now: datetime, skew: timedelta = timedelta(0)) -> bool:
        return now + skew < self.issued_at

    def time_remaining(self, now: datetime) -> timedelta:
        """Get time remaining until expiration, never negative."""
        return max(timedelta(0), self.expires_at - now)

    def needs_rotation(self, now: datetime, threshold: float = 0.5) -> bool:
        """True once less than ``threshold`` of the lifetime remains."""
        total = self.ttl.total_seconds()
        if total <= 0:
            return True
        return self.time_remaining(now).total_seconds() < total * threshold
