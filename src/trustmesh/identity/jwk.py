"""
JWK (JSON Web Key) encoding for trust bundle keys.

SPIFFE bundles are published as JWK Sets (RFC 7517). Bundle keys here are
Ed25519 ("OKP") keys; ``use`` is ``jwt-svid`` for document signing keys.
"""

from __future__ import annotations

import base64
from typing import Any

from cryptography.hazmat.primitives.asymmetric import ed25519

from trustmesh.exceptions import VerificationError

USE_JWT_SVID = "jwt-svid"
USE_X509_SVID = "x509-svid"


def _base64url_encode(data: bytes) -> str:
    """Encode bytes as base64url without padding per RFC 7515."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _base64url_decode(s: str) -> bytes:
    """Decode base64url string without padding per RFC 7515."""
    padding = 4 - len(s) % 4
    if padding != 4:
        s += "=" * padding
    return base64.urlsafe_b64decode(s)


def to_jwk(public_key: bytes, kid: str, use: str = USE_JWT_SVID) -> dict[str, Any]:
    """Export a raw Ed25519 public key as a JWK."""
    return {
        "kty": "OKP",
        "crv": "Ed25519",
        "x": _base64url_encode(public_key),
        "kid": kid,
        "use": use,
    }


def from_jwk(jwk: dict[str, Any]) -> tuple[str, bytes]:
    """Import a JWK and return ``(kid, raw_public_key)``.

    Raises:
        VerificationError: If the JWK is invalid or has wrong key type/curve.
    """
    if not isinstance(jwk, dict):
        raise VerificationError("JWK must be a dict")
    if jwk.get("kty") != "OKP":
        raise VerificationError(f"Unsupported key type: {jwk.get('kty')}, expected 'OKP'")
    if jwk.get("crv") != "Ed25519":
        raise VerificationError(f"Unsupported curve: {jwk.get('crv')}, expected 'Ed25519'")
    if "x" not in jwk or "kid" not in jwk:
        raise VerificationError("JWK missing required 'x' or 'kid' parameter")

    try:
        public_key = _base64url_decode(jwk["x"])
        ed25519.Ed25519PublicKey.from_public_bytes(public_key)
    except ValueError as e:
        raise VerificationError(f"Invalid Ed25519 public key in JWK: {e}") from e
    return jwk["kid"], public_key
