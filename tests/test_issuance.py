"""End-to-end tests for attest, match, issue."""

from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from helpers import k8s_evidence, make_attestor, node_evidence, workload_public_key
from trustmesh.exceptions import (
    AmbiguousRegistration,
    AttestationFailed,
    NoRegistration,
    SigningTimeout,
)
from trustmesh.identity import KeyStore
from trustmesh.issuance import IssuanceCoordinator
from trustmesh.issuance import coordinator as coordinator_module
from trustmesh.registration import MatchResult, MatchStatus, RegistrationStore

FRONTEND = "spiffe://example.org/svc/frontend"


@pytest.fixture
def registrations(clock):
    store = RegistrationStore("example.org", clock=clock)
    store.create(
        FRONTEND,
        ["k8s:ns:web", "k8s:sa:frontend"],
        actor="ops",
        reason="onboard frontend",
        scopes=["orders:read"],
    )
    return store


@pytest.fixture
def coordinator(clock, events, registrations, authority):
    return IssuanceCoordinator(
        make_attestor(clock, events=events), registrations, authority, events=events
    )


class TestRequestIdentity:
    @pytest.mark.asyncio
    async def test_issues_clamped_document(self, coordinator, authority, clock):
        document = await coordinator.request_identity(
            node_evidence(clock),
            k8s_evidence(clock),
            workload_public_key(),
            requested_ttl_seconds=24 * 3600,
        )

        assert document.subject == FRONTEND
        assert document.trust_domain == "example.org"
        assert document.expires_at == clock() + timedelta(hours=1)
        assert document.scopes == ["orders:read"]
        assert document.selector_fingerprint
        public_key = authority.bundle.get_key(document.signing_key_id)
        assert KeyStore.verify(public_key, document.signing_payload(), document.signature_bytes())

    @pytest.mark.asyncio
    async def test_entry_ttl_used_when_none_requested(self, coordinator, registrations, clock):
        entry = registrations.entries()[0]
        registrations.update(entry.entry_id, "ops", "shorter lifetime", ttl_seconds=600)

        document = await coordinator.request_identity(
            node_evidence(clock), k8s_evidence(clock), workload_public_key()
        )

        assert document.ttl == timedelta(seconds=600)

    @pytest.mark.asyncio
    async def test_default_ttl_when_nothing_requested(self, coordinator, authority, clock):
        document = await coordinator.request_identity(
            node_evidence(clock), k8s_evidence(clock), workload_public_key()
        )
        expected = min(authority.config.default_ttl_seconds, authority.config.max_ttl_seconds)
        assert document.ttl == timedelta(seconds=expected)

    @pytest.mark.asyncio
    async def test_repeated_requests_are_not_deduplicated(self, coordinator, clock):
        node, workload, key = node_evidence(clock), k8s_evidence(clock), workload_public_key()
        first = await coordinator.request_identity(node, workload, key)
        second = await coordinator.request_identity(node, workload, key)
        assert first.serial != second.serial

    @pytest.mark.asyncio
    async def test_ambiguous_registration_never_signs(self, coordinator, registrations, authority, clock):
        registrations.create(
            "spiffe://example.org/svc/web", ["k8s:pod-label:app:frontend"], "ops", "overlap"
        )
        authority.issue = AsyncMock()

        with pytest.raises(AmbiguousRegistration):
            await coordinator.request_identity(
                node_evidence(clock), k8s_evidence(clock), workload_public_key()
            )
        authority.issue.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_registration(self, coordinator, clock):
        with pytest.raises(NoRegistration):
            await coordinator.request_identity(
                node_evidence(clock),
                k8s_evidence(clock, namespace="batch"),
                workload_public_key(),
            )

    @pytest.mark.asyncio
    async def test_match_without_subject_never_signs(self, coordinator, registrations, authority, clock):
        registrations.match = lambda selectors: MatchResult(status=MatchStatus.MATCHED, revision=1)
        authority.issue = AsyncMock()

        with pytest.raises(NoRegistration, match="carries no subject"):
            await coordinator.request_identity(
                node_evidence(clock), k8s_evidence(clock), workload_public_key()
            )
        authority.issue.assert_not_called()

    @pytest.mark.asyncio
    async def test_attestation_failure_stops_before_matching(self, coordinator, registrations, clock):
        registrations.match = lambda selectors: pytest.fail("matched after failed attestation")
        with pytest.raises(AttestationFailed):
            await coordinator.request_identity(
                node_evidence(clock, token="forged"), k8s_evidence(clock), workload_public_key()
            )

    @pytest.mark.asyncio
    async def test_denial_emits_event(self, coordinator, clock, recorded):
        with pytest.raises(NoRegistration):
            await coordinator.request_identity(
                node_evidence(clock),
                k8s_evidence(clock, namespace="batch"),
                workload_public_key(),
            )
        denied = [e for e in recorded if e.event_type == "identity.denied"]
        assert denied[0].payload["error"] == "NoRegistration"

    @pytest.mark.asyncio
    async def test_issuance_emits_event(self, coordinator, clock, recorded):
        document = await coordinator.request_identity(
            node_evidence(clock), k8s_evidence(clock), workload_public_key()
        )
        issued = [e for e in recorded if e.event_type == "identity.issued"]
        assert issued[0].payload["serial"] == document.serial

    @pytest.mark.asyncio
    async def test_exhausted_deadline(self, coordinator, clock, monkeypatch):
        ticks = iter([0.0, 5.0])
        monkeypatch.setattr(
            coordinator_module, "time", SimpleNamespace(monotonic=lambda: next(ticks))
        )
        with pytest.raises(SigningTimeout):
            await coordinator.request_identity(
                node_evidence(clock), k8s_evidence(clock), workload_public_key(), deadline=1.0
            )
