"""
Identity Issuance Coordinator

Attest, match, issue: strictly in that order and fail fast. A failure at
any step returns before the next one runs, so no credential is produced
for a workload that did not fully qualify.
"""

import logging
import time
from typing import Any, Optional

from trustmesh.attestation import Attestor, Evidence, fingerprint
from trustmesh.config import AuthorityConfig
from trustmesh.events import EVENT_IDENTITY_DENIED, EventBus
from trustmesh.exceptions import (
    AttestationFailed,
    NoRegistration,
    RegistrationError,
    SigningTimeout,
)
from trustmesh.identity.authority import KeyAuthority
from trustmesh.identity.spiffe import IdentityDocument
from trustmesh.registration import RegistrationStore

logger = logging.getLogger(__name__)


class IssuanceCoordinator:
    """
    Produces identity documents for attested workloads.

    Issuance is not deduplicated: the same fresh evidence and public key
    presented twice yields two distinct documents.
    """

    def __init__(
        self,
        attestor: Attestor,
        registrations: RegistrationStore,
        authority: KeyAuthority,
        config: Optional[AuthorityConfig] = None,
        events: Optional[EventBus] = None,
    ):
        self.attestor = attestor
        self.registrations = registrations
        self.authority = authority
        self.config = config or authority.config
        self._events = events

    async def request_identity(
        self,
        node_evidence: Evidence,
        workload_evidence: Evidence,
        public_key_or_csr: Any,
        requested_ttl_seconds: Optional[int] = None,
        deadline: Optional[float] = None,
    ) -> IdentityDocument:
        """Attest a workload and issue it an identity document.

        Args:
            node_evidence: Evidence for the hosting node.
            workload_evidence: Evidence for the workload.
            public_key_or_csr: Workload public key or CSR.
            requested_ttl_seconds: Requested lifetime. Falls back to the
                matched entry's TTL, then to the configured default. The
                authority clamps it to the maximum either way.
            deadline: Total seconds the caller is willing to wait.

        Returns:
            The issued IdentityDocument. Read ``expires_at`` from it; the
            requested TTL may have been clamped.

        Raises:
            AttestationFailed: Evidence rejected (not retryable as is).
            NoRegistration: No entry matches the attested selectors.
            AmbiguousRegistration: Matching entries imply different subjects.
            SigningUnavailable: The signing backend is unavailable (retryable).
        """
        started = time.monotonic()
        try:
            selectors = await self.attestor.attest(
                node_evidence, workload_evidence, deadline=deadline
            )
            match = self.registrations.match(selectors).raise_for_status()
            if match.subject is None:
                raise NoRegistration(f"Match at revision {match.revision} carries no subject")
        except (AttestationFailed, RegistrationError) as e:
            self._deny(type(e).__name__, str(e))
            raise

        ttl = requested_ttl_seconds or match.ttl_seconds or self.config.default_ttl_seconds
        remaining = None
        if deadline is not None:
            remaining = deadline - (time.monotonic() - started)
            if remaining <= 0:
                self._deny("SigningTimeout", "deadline exhausted before signing")
                raise SigningTimeout(f"Deadline of {deadline}s exhausted before signing")

        document = await self.authority.issue(
            subject=match.subject,
            trust_domain=self.authority.trust_domain,
            requested_ttl_seconds=ttl,
            public_key_or_csr=public_key_or_csr,
            selector_fingerprint=fingerprint(selectors),
            scopes=match.scopes,
            deadline=remaining,
        )
        logger.debug(
            "Issued %s to %s from entries %s (registration revision %d)",
            document.serial,
            document.subject,
            match.entry_ids,
            match.revision,
        )
        return document

    def _deny(self, error: str, reason: str) -> None:
        logger.warning("Identity request denied (%s): %s", error, reason)
        if self._events is not None:
            self._events.publish(
                EVENT_IDENTITY_DENIED,
                source="issuance",
                error=error,
                reason=reason,
            )
