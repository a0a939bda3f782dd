"""Tests for SPIFFE IDs and identity documents."""

from datetime import datetime, timedelta, timezone

import pytest

from trustmesh.identity import IdentityDocument, SpiffeID, trust_domain_of


def _document(**overrides) -> IdentityDocument:
    issued = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
    fields = {
        "serial": "abc123",
        "subject": "spiffe://example.org/svc/frontend",
        "trust_domain": "example.org",
        "issued_at": issued,
        "expires_at": issued + timedelta(hours=1),
        "public_key": "AAAA",
        "selector_fingerprint": "f" * 64,
        "signing_key_id": "key-1",
    }
    fields.update(overrides)
    return IdentityDocument(**fields)


class TestSpiffeID:
    def test_parse(self):
        sid = SpiffeID.parse("spiffe://example.org/ns/web/sa/frontend")
        assert sid.trust_domain == "example.org"
        assert sid.path == "/ns/web/sa/frontend"
        assert str(sid) == "spiffe://example.org/ns/web/sa/frontend"

    def test_parse_trust_domain_only(self):
        sid = SpiffeID.parse("spiffe://example.org")
        assert sid.path == "/"
        assert str(sid) == "spiffe://example.org"

    @pytest.mark.parametrize(
        "value",
        [
            "http://example.org/svc",
            "spiffe://",
            "spiffe://Example.ORG/svc",
            "spiffe://example.org//svc",
            "spiffe://example.org/svc/../admin",
            "spiffe://example.org/svc/a b",
        ],
    )
    def test_parse_rejects_malformed(self, value):
        with pytest.raises(ValueError):
            SpiffeID.parse(value)

    def test_for_path(self):
        assert str(SpiffeID.for_path("example.org", "/svc/api")) == "spiffe://example.org/svc/api"

    def test_trust_domain_of(self):
        assert trust_domain_of("spiffe://b.example/svc/x") == "b.example"


class TestIdentityDocument:
    def test_document_is_immutable(self):
        doc = _document()
        with pytest.raises(Exception):
            doc.subject = "spiffe://example.org/svc/other"

    def test_signing_payload_excludes_signature(self):
        doc = _document()
        signed = doc.model_copy(update={"signature": "c2ln"})
        assert doc.signing_payload() == signed.signing_payload()

    def test_signing_payload_covers_subject(self):
        other = _document(subject="spiffe://example.org/svc/backend")
        assert _document().signing_payload() != other.signing_payload()

    def test_ttl(self):
        assert _document().ttl == timedelta(hours=1)

    def test_expiry_with_skew(self):
        doc = _document()
        just_after = doc.expires_at + timedelta(seconds=10)
        assert doc.is_expired(just_after)
        assert not doc.is_expired(just_after, skew=timedelta(seconds=30))

    def test_not_yet_valid(self):
        doc = _document()
        before = doc.issued_at - timedelta(seconds=60)
        assert doc.is_not_yet_valid(before)
        assert not doc.is_not_yet_valid(before, skew=timedelta(seconds=60))

    def test_time_remaining_never_negative(self):
        doc = _document()
        assert doc.time_remaining(doc.expires_at + timedelta(hours=1)) == timedelta(0)

    def test_needs_rotation_after_half_life(self):
        doc = _document()
        assert not doc.needs_rotation(doc.issued_at + timedelta(minutes=10))
        assert doc.needs_rotation(doc.issued_at + timedelta(minutes=40))
