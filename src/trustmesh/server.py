"""
Trust Domain Server

Wires the components of one trust domain together and bounds request
concurrency. This is the entry point an administrative API or a workload
API transport would call into.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping, Optional

from trustmesh.attestation import Attestor, Evidence, Verifier
from trustmesh.config import TrustMeshConfig
from trustmesh.events import EventBus, QueuedEventBus
from trustmesh.federation import BundleFetcher, FederationManager, ImportResult
from trustmesh.identity import (
    IdentityDocument,
    KeyAuthority,
    KeyStore,
    RevocationLog,
    RevocationReason,
    RevocationRecord,
    TrustBundle,
)
from trustmesh.issuance import IssuanceCoordinator
from trustmesh.policy import PolicyDecision, PolicyDecisionEngine, RuleStore
from trustmesh.registration import RegistrationStore
from trustmesh.verification import DocumentVerifier, RevocationMode, VerificationResult

logger = logging.getLogger(__name__)


class TrustDomainServer:
    """
    All components of one trust domain.

    Request handlers (``request_identity``, ``evaluate``) run under an
    ``asyncio.Semaphore`` sized by ``server.max_concurrency``.
    """

    def __init__(
        self,
        config: TrustMeshConfig,
        authority: KeyAuthority,
        attestor: Attestor,
        registrations: RegistrationStore,
        federation: FederationManager,
        rules: RuleStore,
        events: EventBus,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config
        self.trust_domain = config.trust_domain
        self.events = events
        self.authority = authority
        self.attestor = attestor
        self.registrations = registrations
        self.federation = federation
        self.rules = rules
        self.coordinator = IssuanceCoordinator(
            attestor, registrations, authority, config=config.authority, events=events
        )
        self.verifier = DocumentVerifier(
            config.trust_domain,
            authority=authority,
            federation=federation,
            mode=RevocationMode(config.policy.revocation_mode),
            clock_skew_seconds=config.authority.clock_skew_seconds,
            clock=clock,
        )
        self.policy = PolicyDecisionEngine(
            config.trust_domain,
            rules,
            self.verifier,
            federation=federation,
            config=config.policy,
            events=events,
        )
        self._semaphore = asyncio.Semaphore(config.server.max_concurrency)
        self._stop = asyncio.Event()

    @classmethod
    def from_config(
        cls,
        config: TrustMeshConfig,
        verifiers: Iterable[Verifier] = (),
        keystore: Optional[KeyStore] = None,
        fetchers: Optional[Mapping[str, BundleFetcher]] = None,
        events: Optional[EventBus] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> "TrustDomainServer":
        """Build a server from configuration.

        Args:
            config: Validated configuration.
            verifiers: Attestation verifiers to register.
            keystore: Signing backend; in-memory by default.
            fetchers: Bundle fetchers by peer trust domain, overriding the
                HTTP fetcher built from ``endpoint_url``.
            events: Observability sink; a QueuedEventBus by default.
            clock: Source of the current time, shared by all components.
        """
        domain = config.trust_domain
        if events is None:
            events = QueuedEventBus(maxsize=config.server.event_queue_size)
        revocations = RevocationLog(storage=config.server.revocation_storage, clock=clock)
        authority = KeyAuthority(
            domain,
            config=config.authority,
            keystore=keystore,
            revocations=revocations,
            events=events,
            clock=clock,
        )
        attestor = Attestor(verifiers, config=config.attestation, events=events, clock=clock)
        registrations = RegistrationStore(
            domain, storage=config.server.registration_storage, events=events, clock=clock
        )
        federation = FederationManager(authority, events=events, clock=clock)
        fetchers = fetchers or {}
        for peer in config.federation.peers:
            federation.configure_peer(peer, fetcher=fetchers.get(peer.trust_domain))

        rules = RuleStore(events=events, clock=clock)
        if config.policy.policy_file:
            rules.load_file(config.policy.policy_file, actor="config", reason="initial load")

        server = cls(
            config,
            authority=authority,
            attestor=attestor,
            registrations=registrations,
            federation=federation,
            rules=rules,
            events=events,
            clock=clock,
        )
        logger.info(
            "Trust domain %s ready (%d peers, %d policy rules)",
            domain,
            len(config.federation.peers),
            len(rules.rules()),
        )
        return server

    # ------------------------------------------------------------------
    # Request handling
    # ------------------------------------------------------------------

    async def request_identity(
        self,
        node_evidence: Evidence,
        workload_evidence: Evidence,
        public_key_or_csr: Any,
        requested_ttl_seconds: Optional[int] = None,
        deadline: Optional[float] = None,
    ) -> IdentityDocument:
        async with self._semaphore:
            return await self.coordinator.request_identity(
                node_evidence,
                workload_evidence,
                public_key_or_csr,
                requested_ttl_seconds=requested_ttl_seconds,
                deadline=deadline,
            )

    async def evaluate(
        self,
        document: IdentityDocument,
        action: str,
        resource: str,
        context: Optional[dict[str, Any]] = None,
        sensitive: bool = False,
    ) -> PolicyDecision:
        async with self._semaphore:
            return await self.policy.evaluate_async(
                document, action, resource, context=context, sensitive=sensitive
            )

    def verify(self, document: IdentityDocument, sensitive: bool = False) -> VerificationResult:
        return self.verifier.verify(document, sensitive=sensitive)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def rotate(self, actor: str, reason: str) -> TrustBundle:
        return self.authority.rotate(actor, reason)

    def revoke(
        self, subject: str, reason: RevocationReason, actor: str, note: str = ""
    ) -> RevocationRecord:
        return self.authority.revoke(subject, reason, actor, note=note)

    def bundle(self) -> TrustBundle:
        return self.federation.export()

    async def poll_federation(self) -> dict[str, ImportResult]:
        return await self.federation.poll_all()

    async def run_federation_poller(self) -> None:
        """Poll every peer on its own interval until :meth:`close` is called."""
        domains = [
            domain
            for domain in self.federation.peers()
            if self.federation.relationship(domain).fetcher is not None
        ]
        if not domains:
            return
        await asyncio.gather(
            *(self.federation.run_peer_poller(domain, self._stop) for domain in domains)
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if isinstance(self.events, QueuedEventBus):
            self.events.start()

    async def close(self) -> None:
        self._stop.set()
        await self.federation.close()
        if isinstance(self.events, QueuedEventBus):
            self.events.stop()
        logger.info("Trust domain %s stopped", self.trust_domain)

    async def __aenter__(self) -> "TrustDomainServer":
        self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
