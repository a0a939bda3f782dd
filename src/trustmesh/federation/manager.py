"""
Trust Bundle Federation Manager

Pull-based, point-to-point bundle exchange with peer trust domains.

Each peer is an independent directed edge with its own state machine and
its own lock::

    UNCONFIGURED -> PENDING_BOOTSTRAP -> ACTIVE <-> DEGRADED

A bundle is accepted only if its sequence is strictly greater than the
held one and it is signed by a key of the previously accepted bundle. The
very first bundle of a peer needs an explicit operator confirmation; that
trust-on-first-use moment is always logged at WARNING and emitted.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import threading
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional, Union

from pydantic import BaseModel

from trustmesh.config import FederationConfig, PeerConfig
from trustmesh.events import (
    EVENT_FEDERATION_BOOTSTRAP,
    EVENT_FEDERATION_DEGRADED,
    EVENT_FEDERATION_IMPORTED,
    EVENT_FEDERATION_REJECTED,
    EventBus,
)
from trustmesh.exceptions import (
    BundleRejected,
    ConfigurationError,
    FederationUnavailable,
    VerificationError,
)
from trustmesh.federation.fetcher import BundleFetcher, HttpBundleFetcher
from trustmesh.identity.authority import KeyAuthority
from trustmesh.identity.bundle import TrustBundle
from trustmesh.retry import retry_async

logger = logging.getLogger(__name__)

# Rejection reasons
REJECT_UNCONFIGURED = "peer_unconfigured"
REJECT_SELF = "own_trust_domain"
REJECT_DOMAIN_MISMATCH = "trust_domain_mismatch"
REJECT_BOOTSTRAP_REQUIRED = "bootstrap_not_confirmed"
REJECT_NOT_SELF_SIGNED = "bootstrap_bundle_not_self_signed"
REJECT_STALE_SEQUENCE = "stale_sequence"
REJECT_UNTRUSTED_SIGNER = "untrusted_signer"
REJECT_DEGRADED = "peer_degraded"
REJECT_UNREACHABLE = "peer_unreachable"
REJECT_MALFORMED = "malformed_bundle"

# Failed validation of a fetched bundle degrades the relationship;
# stale or duplicate sequences do not.
_DEGRADING_REASONS = {REJECT_DOMAIN_MISMATCH, REJECT_UNTRUSTED_SIGNER, REJECT_MALFORMED}


class PeerState(str, Enum):
    UNCONFIGURED = "unconfigured"
    PENDING_BOOTSTRAP = "pending_bootstrap"
    ACTIVE = "active"
    DEGRADED = "degraded"


class ImportResult(BaseModel):
    """Outcome of an import: accepted, or rejected with a reason code."""

    accepted: bool
    trust_domain: str
    sequence: Optional[int] = None
    reason: Optional[str] = None
    unchanged: bool = False

    @classmethod
    def ok(cls, bundle: TrustBundle, unchanged: bool = False) -> "ImportResult":
        return cls(
            accepted=True,
            trust_domain=bundle.trust_domain,
            sequence=bundle.sequence,
            unchanged=unchanged,
        )

    @classmethod
    def rejected(
        cls, trust_domain: str, reason: str, sequence: Optional[int] = None
    ) -> "ImportResult":
        return cls(accepted=False, trust_domain=trust_domain, sequence=sequence, reason=reason)

    def raise_for_rejection(self) -> "ImportResult":
        if not self.accepted:
            raise BundleRejected(
                self.reason or "rejected",
                f"Bundle from {self.trust_domain} rejected: {self.reason}",
            )
        return self


@dataclasses.dataclass(frozen=True)
class BootstrapApproval:
    actor: str
    reason: str
    approved_at: datetime


@dataclasses.dataclass(frozen=True)
class RetainedBundle:
    bundle: TrustBundle
    superseded_at: datetime


@dataclasses.dataclass
class PeerRelationship:
    """State of the directed edge from this domain to one peer."""

    trust_domain: str
    config: PeerConfig
    state: PeerState = PeerState.PENDING_BOOTSTRAP
    fetcher: Optional[BundleFetcher] = None
    bundle: Optional[TrustBundle] = None
    retained: tuple[RetainedBundle, ...] = ()
    approval: Optional[BootstrapApproval] = None
    last_success: Optional[datetime] = None
    last_error: Optional[str] = None
    consecutive_failures: int = 0
    lock: threading.Lock = dataclasses.field(default_factory=threading.Lock, repr=False)


class FederationManager:
    """
    Exchanges trust bundles with configured peers.

    Args:
        authority: Local key authority; its current bundle is exported.
        config: Peer list and per-peer fetch settings.
        retention_seconds: How long superseded bundles stay usable for
            verification. Defaults to the authority's ``max_ttl + clock_skew``.
        events: Observability sink.
        clock: Source of the current time.
    """

    def __init__(
        self,
        authority: KeyAuthority,
        config: Optional[FederationConfig] = None,
        retention_seconds: Optional[float] = None,
        events: Optional[EventBus] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.authority = authority
        self.trust_domain = authority.trust_domain
        self.config = config or FederationConfig()
        if retention_seconds is None:
            retention_seconds = (authority.max_ttl + authority.clock_skew).total_seconds()
        self.retention = timedelta(seconds=retention_seconds)
        self._events = events
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._peers: dict[str, PeerRelationship] = {}
        self._peers_lock = threading.Lock()
        self._replaced_fetchers: list[BundleFetcher] = []
        for peer in self.config.peers:
            self.configure_peer(peer)

    # ------------------------------------------------------------------
    # Peer configuration
    # ------------------------------------------------------------------

    def configure_peer(
        self,
        peer: Union[PeerConfig, str],
        fetcher: Optional[BundleFetcher] = None,
    ) -> PeerRelationship:
        """Add a peer, moving it from UNCONFIGURED to PENDING_BOOTSTRAP.

        Reconfiguring an existing peer only replaces its fetch settings. An
        HTTP fetcher is rebuilt only when the endpoint changes, and a replaced
        fetcher is released by :meth:`close`.
        """
        config = peer if isinstance(peer, PeerConfig) else PeerConfig(trust_domain=peer)
        if config.trust_domain == self.trust_domain:
            raise ConfigurationError("A trust domain cannot federate with itself")

        with self._peers_lock:
            relationship = self._peers.get(config.trust_domain)
            if relationship is None:
                if fetcher is None and config.endpoint_url:
                    fetcher = self._http_fetcher(config)
                relationship = PeerRelationship(
                    trust_domain=config.trust_domain, config=config, fetcher=fetcher
                )
                self._peers[config.trust_domain] = relationship
                logger.info("Configured federation peer %s", config.trust_domain)
            else:
                with relationship.lock:
                    endpoint_changed = config.endpoint_url != relationship.config.endpoint_url
                    relationship.config = config
                    if fetcher is None and config.endpoint_url:
                        if endpoint_changed or relationship.fetcher is None:
                            fetcher = self._http_fetcher(config)
                    if fetcher is not None and fetcher is not relationship.fetcher:
                        if relationship.fetcher is not None:
                            self._replaced_fetchers.append(relationship.fetcher)
                        relationship.fetcher = fetcher
        return relationship

    def _http_fetcher(self, config: PeerConfig) -> HttpBundleFetcher:
        return HttpBundleFetcher(config.endpoint_url, trust_domain=self.trust_domain)

    def peers(self) -> list[str]:
        return sorted(self._peers)

    def peer_state(self, trust_domain: str) -> PeerState:
        relationship = self._peers.get(trust_domain)
        return relationship.state if relationship else PeerState.UNCONFIGURED

    def relationship(self, trust_domain: str) -> Optional[PeerRelationship]:
        return self._peers.get(trust_domain)

    def confirm_bootstrap(self, trust_domain: str, actor: str, reason: str) -> None:
        """Authorize the first import from a peer.

        The approval is consumed by the next accepted import. It is the
        only trust-on-first-use point in the system.

        Raises:
            ValueError: If ``actor`` or ``reason`` is missing.
            ConfigurationError: If the peer is not configured or already bootstrapped.
        """
        if not actor or not reason:
            raise ValueError("Bootstrap confirmation requires an actor and a reason")
        relationship = self._peers.get(trust_domain)
        if relationship is None:
            raise ConfigurationError(f"Peer {trust_domain} is not configured")
        with relationship.lock:
            if relationship.state != PeerState.PENDING_BOOTSTRAP:
                raise ConfigurationError(
                    f"Peer {trust_domain} is {relationship.state.value}, not pending bootstrap"
                )
            relationship.approval = BootstrapApproval(
                actor=actor, reason=reason, approved_at=self._clock()
            )
        logger.warning(
            "Bootstrap of federation with %s confirmed by %s: %s", trust_domain, actor, reason
        )
        self._emit(
            EVENT_FEDERATION_BOOTSTRAP,
            peer=trust_domain,
            actor=actor,
            reason=reason,
            stage="confirmed",
        )

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------

    def export(self) -> TrustBundle:
        """The local trust domain's current bundle."""
        return self.authority.bundle

    def bundles(self) -> dict[str, TrustBundle]:
        """Current bundle per trust domain, including the local one."""
        result = {self.trust_domain: self.export()}
        for domain, relationship in list(self._peers.items()):
            if relationship.bundle is not None:
                result[domain] = relationship.bundle
        return result

    def retained(self, trust_domain: str) -> list[TrustBundle]:
        """Superseded bundles of a peer still inside the retention window."""
        relationship = self._peers.get(trust_domain)
        if relationship is None:
            return []
        now = self._clock()
        return [
            r.bundle for r in relationship.retained if now < r.superseded_at + self.retention
        ]

    def keys_for(self, trust_domain: str) -> dict[str, bytes]:
        """Union of key material from the held and retained bundles of a peer."""
        relationship = self._peers.get(trust_domain)
        if relationship is None or relationship.bundle is None:
            return {}
        now = self._clock()
        keys: dict[str, bytes] = {}
        for bundle in self.retained(trust_domain) + [relationship.bundle]:
            for key in bundle.keys:
                if key.not_after is None or now <= key.not_after:
                    keys[key.key_id] = key.raw()
        return keys

    def import_bundle(self, peer_domain: str, bundle: TrustBundle) -> ImportResult:
        """Validate and import a peer bundle.

        Returns:
            ImportResult. A rejected import never alters the held bundle.
        """
        return self._import(peer_domain, bundle, fetched=False)

    def _import(self, peer_domain: str, bundle: TrustBundle, fetched: bool) -> ImportResult:
        if peer_domain == self.trust_domain:
            return self._reject(peer_domain, bundle, REJECT_SELF)
        relationship = self._peers.get(peer_domain)
        if relationship is None:
            return self._reject(peer_domain, bundle, REJECT_UNCONFIGURED)

        with relationship.lock:
            if bundle.trust_domain != peer_domain:
                return self._reject(peer_domain, bundle, REJECT_DOMAIN_MISMATCH, relationship)
            if relationship.state == PeerState.DEGRADED and not fetched:
                return self._reject(peer_domain, bundle, REJECT_DEGRADED)

            held = relationship.bundle
            now = self._clock()
            if held is None:
                approval = relationship.approval
                if approval is None:
                    return self._reject(peer_domain, bundle, REJECT_BOOTSTRAP_REQUIRED)
                if not bundle.is_self_signed():
                    return self._reject(peer_domain, bundle, REJECT_NOT_SELF_SIGNED)
                relationship.approval = None
                logger.warning(
                    "Trust on first use: imported bundle seq=%d of %s (approved by %s)",
                    bundle.sequence,
                    peer_domain,
                    approval.actor,
                )
                self._emit(
                    EVENT_FEDERATION_BOOTSTRAP,
                    peer=peer_domain,
                    actor=approval.actor,
                    reason=approval.reason,
                    sequence=bundle.sequence,
                    stage="imported",
                )
            else:
                if fetched and bundle.sequence == held.sequence and bundle.signature == held.signature:
                    self._mark_healthy(relationship, now)
                    return ImportResult.ok(held, unchanged=True)
                if bundle.sequence <= held.sequence:
                    return self._reject(peer_domain, bundle, REJECT_STALE_SEQUENCE)
                if not bundle.is_signed_by(held.key_map()):
                    return self._reject(
                        peer_domain, bundle, REJECT_UNTRUSTED_SIGNER, relationship
                    )
                relationship.retained = tuple(
                    r for r in relationship.retained if now < r.superseded_at + self.retention
                ) + (RetainedBundle(bundle=held, superseded_at=now),)

            relationship.bundle = bundle
            self._mark_healthy(relationship, now)

        logger.info(
            "Imported bundle seq=%d from %s (%d keys)", bundle.sequence, peer_domain, len(bundle.keys)
        )
        self._emit(
            EVENT_FEDERATION_IMPORTED,
            peer=peer_domain,
            sequence=bundle.sequence,
            key_ids=sorted(bundle.key_map()),
        )
        return ImportResult.ok(bundle)

    def _mark_healthy(self, relationship: PeerRelationship, now: datetime) -> None:
        if relationship.state == PeerState.DEGRADED:
            logger.info("Federation with %s restored", relationship.trust_domain)
        if relationship.bundle is not None:
            relationship.state = PeerState.ACTIVE
        relationship.last_success = now
        relationship.last_error = None
        relationship.consecutive_failures = 0

    def _reject(
        self,
        peer_domain: str,
        bundle: Optional[TrustBundle],
        reason: str,
        relationship: Optional[PeerRelationship] = None,
    ) -> ImportResult:
        """Record a rejection. Caller holds the relationship lock, if any."""
        sequence = bundle.sequence if bundle is not None else None
        logger.warning("Rejected bundle from %s (seq=%s): %s", peer_domain, sequence, reason)
        self._emit(EVENT_FEDERATION_REJECTED, peer=peer_domain, sequence=sequence, reason=reason)
        if relationship is not None and reason in _DEGRADING_REASONS:
            self._degrade(relationship, reason)
        return ImportResult.rejected(peer_domain, reason, sequence)

    def _degrade(self, relationship: PeerRelationship, error: str) -> None:
        """Caller holds the relationship lock."""
        relationship.last_error = error
        relationship.consecutive_failures += 1
        if relationship.state != PeerState.ACTIVE:
            return
        relationship.state = PeerState.DEGRADED
        logger.warning("Federation with %s degraded: %s", relationship.trust_domain, error)
        self._emit(EVENT_FEDERATION_DEGRADED, peer=relationship.trust_domain, error=error)

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def poll_peer(self, trust_domain: str) -> ImportResult:
        """Fetch and import a peer's current bundle.

        Fetch failures are retried with bounded backoff; a peer that stays
        unreachable becomes DEGRADED but keeps its imported bundles.

        Raises:
            ConfigurationError: If the peer is unknown or has no fetcher.
        """
        relationship = self._peers.get(trust_domain)
        if relationship is None:
            raise ConfigurationError(f"Peer {trust_domain} is not configured")
        fetcher = relationship.fetcher
        if fetcher is None:
            raise ConfigurationError(f"Peer {trust_domain} has no bundle endpoint")
        config = relationship.config

        try:
            bundle = await retry_async(
                lambda: fetcher.fetch(config.timeout_seconds),
                attempts=config.retries,
                description=f"bundle fetch from {trust_domain}",
            )
        except FederationUnavailable as e:
            with relationship.lock:
                self._degrade(relationship, str(e))
            return ImportResult.rejected(trust_domain, REJECT_UNREACHABLE)
        except VerificationError as e:
            logger.warning("Malformed bundle from %s: %s", trust_domain, e)
            with relationship.lock:
                return self._reject(trust_domain, None, REJECT_MALFORMED, relationship)

        return self._import(trust_domain, bundle, fetched=True)

    async def poll_all(self) -> dict[str, ImportResult]:
        """Poll every peer that has a fetcher, concurrently and independently."""
        domains = [d for d, r in list(self._peers.items()) if r.fetcher is not None]
        results = await asyncio.gather(*(self.poll_peer(d) for d in domains))
        return dict(zip(domains, results))

    async def refresh(self, trust_domain: str, force: bool = False) -> PeerState:
        """Poll a peer on demand before cross-domain verification.

        Skips the fetch while the held bundle is younger than its refresh
        hint, unless ``force`` is set.
        """
        relationship = self._peers.get(trust_domain)
        if relationship is None or relationship.fetcher is None:
            return self.peer_state(trust_domain)
        if not force and relationship.bundle is not None and relationship.last_success:
            hint = timedelta(seconds=relationship.bundle.refresh_hint_seconds)
            if self._clock() < relationship.last_success + hint:
                return relationship.state
        await self.poll_peer(trust_domain)
        return relationship.state

    async def run_peer_poller(self, trust_domain: str, stop: asyncio.Event) -> None:
        """Poll one peer on its configured interval until ``stop`` is set."""
        relationship = self._peers.get(trust_domain)
        if relationship is None:
            raise ConfigurationError(f"Peer {trust_domain} is not configured")
        while not stop.is_set():
            await self.poll_peer(trust_domain)
            try:
                await asyncio.wait_for(stop.wait(), timeout=relationship.config.poll_interval_seconds)
            except asyncio.TimeoutError:
                continue

    async def close(self) -> None:
        with self._peers_lock:
            fetchers = self._replaced_fetchers + [
                r.fetcher for r in self._peers.values() if r.fetcher is not None
            ]
            self._replaced_fetchers = []
        for fetcher in fetchers:
            await fetcher.close()

    def status(self) -> dict[str, dict[str, Any]]:
        """Per-peer summary for diagnostics."""
        return {
            domain: {
                "state": r.state.value,
                "sequence": r.bundle.sequence if r.bundle else None,
                "retained": len(r.retained),
                "last_success": r.last_success.isoformat() if r.last_success else None,
                "last_error": r.last_error,
                "consecutive_failures": r.consecutive_failures,
            }
            for domain, r in sorted(self._peers.items())
        }

    def _emit(self, event_type: str, **payload: Any) -> None:
        if self._events is not None:
            self._events.publish(event_type, source=f"federation:{self.trust_domain}", **payload)
