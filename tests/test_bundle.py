"""Tests for trust bundle documents."""

import json

import pytest

from trustmesh.exceptions import VerificationError
from trustmesh.identity import TrustBundle


class TestTrustBundleDocument:
    def test_initial_bundle_is_self_signed(self, authority):
        bundle = authority.bundle
        assert bundle.sequence == 1
        assert bundle.trust_domain == "example.org"
        assert bundle.is_self_signed()

    def test_json_round_trip_preserves_signature(self, authority):
        bundle = authority.rotate(actor="ops", reason="scheduled")

        parsed = TrustBundle.from_json(bundle.to_json())

        assert parsed.sequence == bundle.sequence
        assert parsed.key_map() == bundle.key_map()
        assert parsed.signature == bundle.signature
        assert parsed.is_signed_by(authority.bundle.key_map())

    def test_document_uses_spiffe_field_names(self, authority):
        document = authority.bundle.to_document()
        assert document["spiffe_sequence"] == 1
        assert document["spiffe_refresh_hint"] == authority.config.bundle_refresh_hint_seconds
        assert document["keys"][0]["kty"] == "OKP"
        assert document["x509_authorities"] == [authority.root_certificate_pem]

    def test_tampered_document_fails_signature(self, authority):
        document = authority.bundle.to_document()
        document["spiffe_sequence"] = 99
        tampered = TrustBundle.from_document(document)
        assert not tampered.is_self_signed()

    def test_unknown_signer_is_not_trusted(self, authority):
        assert not authority.bundle.is_signed_by({})

    def test_retired_key_not_after_survives_round_trip(self, authority, clock):
        authority.rotate(actor="ops", reason="first")
        clock.advance(61)
        authority.complete_rotation()
        bundle = authority.rotate(actor="ops", reason="second")

        parsed = TrustBundle.from_json(bundle.to_json())

        assert [k.not_after for k in parsed.keys] == [k.not_after for k in bundle.keys]

    def test_malformed_json_raises_verification_error(self):
        with pytest.raises(VerificationError):
            TrustBundle.from_json("{not json")

    def test_missing_fields_raise_verification_error(self, authority):
        document = authority.bundle.to_document()
        del document["keys"]
        with pytest.raises(VerificationError):
            TrustBundle.from_json(json.dumps(document))

    def test_bad_key_material_raises_verification_error(self, authority):
        document = authority.bundle.to_document()
        document["keys"][0]["x"] = "!!"
        with pytest.raises(VerificationError):
            TrustBundle.from_document(document)
