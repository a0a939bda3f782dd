"""Tests for JWK encoding of bundle keys."""

import os

import pytest

from trustmesh.exceptions import VerificationError
from trustmesh.identity import SoftwareKeyStore, from_jwk, to_jwk
from trustmesh.identity.jwk import USE_X509_SVID


@pytest.fixture
def public_key() -> bytes:
    return SoftwareKeyStore().generate_keypair("key-1")


class TestToJwk:
    def test_structure(self, public_key):
        jwk = to_jwk(public_key, "key-1")
        assert jwk["kty"] == "OKP"
        assert jwk["crv"] == "Ed25519"
        assert jwk["kid"] == "key-1"
        assert jwk["use"] == "jwt-svid"
        assert "=" not in jwk["x"]

    def test_custom_use(self, public_key):
        assert to_jwk(public_key, "key-1", use=USE_X509_SVID)["use"] == "x509-svid"


class TestFromJwk:
    def test_import_returns_kid_and_key(self, public_key):
        kid, raw = from_jwk(to_jwk(public_key, "key-1"))
        assert kid == "key-1"
        assert raw == public_key

    def test_rejects_non_dict(self):
        with pytest.raises(VerificationError, match="must be a dict"):
            from_jwk("not-a-jwk")

    def test_rejects_wrong_key_type(self, public_key):
        jwk = to_jwk(public_key, "key-1")
        jwk["kty"] = "RSA"
        with pytest.raises(VerificationError, match="Unsupported key type"):
            from_jwk(jwk)

    def test_rejects_wrong_curve(self, public_key):
        jwk = to_jwk(public_key, "key-1")
        jwk["crv"] = "X25519"
        with pytest.raises(VerificationError, match="Unsupported curve"):
            from_jwk(jwk)

    def test_rejects_missing_kid(self, public_key):
        jwk = to_jwk(public_key, "key-1")
        del jwk["kid"]
        with pytest.raises(VerificationError, match="missing"):
            from_jwk(jwk)

    def test_rejects_wrong_length_key(self):
        jwk = to_jwk(os.urandom(16), "key-1")
        with pytest.raises(VerificationError, match="Invalid Ed25519"):
            from_jwk(jwk)
