"""
Trust Bundles

A trust bundle is the versioned set of public keys trusted for verifying
identity documents of one trust domain. Bundles move forward only: every
bundle carries a sequence number and is signed by a key that the previous
bundle already contained, so a consumer can follow a rotation without a
hard cutover.
"""

from __future__ import annotations

import base64
import json
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from trustmesh.exceptions import VerificationError
from trustmesh.identity.jwk import USE_JWT_SVID, from_jwk, to_jwk
from trustmesh.identity.keystore import KeyStore


class BundleKey(BaseModel):
    """One public key published in a trust bundle."""

    model_config = ConfigDict(frozen=True)

    key_id: str
    public_key: str = Field(..., description="Base64 raw Ed25519 public key")
    use: str = Field(default=USE_JWT_SVID)
    not_after: Optional[datetime] = Field(
        None, description="Time after which documents signed by this key are gone"
    )

    def raw(self) -> bytes:
        return base64.b64decode(self.public_key)


class TrustBundle(BaseModel):
    """Signed, sequenced key set for one trust domain."""

    model_config = ConfigDict(frozen=True)

    trust_domain: str
    sequence: int = Field(..., ge=1)
    keys: list[BundleKey]
    x509_authorities: list[str] = Field(default_factory=list, description="PEM root certificates")
    issued_at: datetime
    refresh_hint_seconds: int = Field(default=300, ge=1)

    signing_key_id: str
    signature: str = Field(default="")

    def signing_payload(self) -> bytes:
        """Canonical bytes covered by the bundle signature."""
        data = self.model_dump(mode="json", exclude={"signature"})
        return json.dumps(data, sort_keys=True, separators=(",", ":")).encode()

    def key_map(self) -> dict[str, bytes]:
        """Map of key ID to raw public key bytes."""
        return {key.key_id: key.raw() for key in self.keys}

    def get_key(self, key_id: str) -> Optional[bytes]:
        for key in self.keys:
            if key.key_id == key_id:
                return key.raw()
        return None

    def is_signed_by(self, trusted_keys: dict[str, bytes]) -> bool:
        """Check the bundle signature against a set of already trusted keys.

        Args:
            trusted_keys: Key ID to raw public key, usually the key map of
                the previously accepted bundle.

        Returns:
            True if ``signing_key_id`` is trusted and the signature verifies.
        """
        public_key = trusted_keys.get(self.signing_key_id)
        if public_key is None or not self.signature:
            return False
        try:
            signature = base64.b64decode(self.signature)
        except ValueError:
            return False
        return KeyStore.verify(public_key, self.signing_payload(), signature)

    def is_self_signed(self) -> bool:
        """True if the bundle verifies with one of its own keys."""
        return self.is_signed_by(self.key_map())

    # ------------------------------------------------------------------
    # Wire document (SPIFFE bundle style JWK Set)
    # ------------------------------------------------------------------

    def to_document(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible SPIFFE-style bundle document."""
        keys = []
        for key in self.keys:
            jwk = to_jwk(key.raw(), key.key_id, use=key.use)
            if key.not_after is not None:
                jwk["not_after"] = key.not_after.isoformat()
            keys.append(jwk)
        return {
            "trust_domain": self.trust_domain,
            "spiffe_sequence": self.sequence,
            "spiffe_refresh_hint": self.refresh_hint_seconds,
            "keys": keys,
            "x509_authorities": list(self.x509_authorities),
            "issued_at": self.issued_at.isoformat(),
            "signing_key_id": self.signing_key_id,
            "signature": self.signature,
        }

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> "TrustBundle":
        """Parse a bundle document produced by :meth:`to_document`.

        Raises:
            VerificationError: If the document is malformed.
        """
        try:
            keys = []
            for jwk in document["keys"]:
                kid, raw = from_jwk(jwk)
                not_after = jwk.get("not_after")
                keys.append(
                    BundleKey(
                        key_id=kid,
                        public_key=base64.b64encode(raw).decode(),
                        use=jwk.get("use", USE_JWT_SVID),
                        not_after=datetime.fromisoformat(not_after) if not_after else None,
                    )
                )
            return cls(
                trust_domain=document["trust_domain"],
                sequence=document["spiffe_sequence"],
                refresh_hint_seconds=document.get("spiffe_refresh_hint", 300),
                keys=keys,
                x509_authorities=document.get("x509_authorities", []),
                issued_at=datetime.fromisoformat(document["issued_at"]),
                signing_key_id=document["signing_key_id"],
                signature=document.get("signature", ""),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise VerificationError(f"Malformed trust bundle document: {e}") from e

    def to_json(self) -> str:
        return json.dumps(self.to_document(), indent=2)

    @classmethod
    def from_json(cls, content: str) -> "TrustBundle":
        try:
            document = json.loads(content)
        except json.JSONDecodeError as e:
            raise VerificationError(f"Malformed trust bundle JSON: {e}") from e
        return cls.from_document(document)
