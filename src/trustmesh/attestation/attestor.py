"""
Attestor

Sequences node and workload attestation. Interpretation of evidence is
delegated to pluggable verifiers; the attestor enforces ordering,
freshness, deadlines and single use.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Iterable, Optional

from trustmesh.attestation.selectors import SelectorSet
from trustmesh.attestation.verifiers import AttestationStage, Evidence, Verifier
from trustmesh.config import AttestationConfig
from trustmesh.events import EVENT_ATTESTATION_REJECTED, EventBus
from trustmesh.exceptions import AttestationFailed, AttestationTimeout

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    NODE_UNVERIFIED = "node_unverified"
    NODE_VERIFIED = "node_verified"
    WORKLOAD_UNVERIFIED = "workload_unverified"
    WORKLOAD_VERIFIED = "workload_verified"
    REJECTED = "rejected"


_TRANSITIONS = {
    SessionState.NODE_UNVERIFIED: {SessionState.NODE_VERIFIED, SessionState.REJECTED},
    SessionState.NODE_VERIFIED: {SessionState.WORKLOAD_UNVERIFIED, SessionState.REJECTED},
    SessionState.WORKLOAD_UNVERIFIED: {SessionState.WORKLOAD_VERIFIED, SessionState.REJECTED},
    SessionState.WORKLOAD_VERIFIED: set(),
    SessionState.REJECTED: set(),
}


class AttestationSession:
    """
    One attestation attempt.

    A session moves forward only: a workload can be verified only after
    its hosting node was verified in the same session, and a session yields
    at most one SelectorSet. Rejected and completed sessions are terminal.
    """

    def __init__(self) -> None:
        self.session_id = f"att-{uuid.uuid4().hex[:16]}"
        self.state = SessionState.NODE_UNVERIFIED
        self.node_selectors: SelectorSet = frozenset()
        self.workload_selectors: SelectorSet = frozenset()
        self.rejection_reason: Optional[str] = None
        self.reserved: list[str] = []
        self._consumed = False

    @property
    def is_terminal(self) -> bool:
        return not _TRANSITIONS[self.state]

    def advance(self, target: SessionState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise AttestationFailed(
                f"Session {self.session_id}: illegal transition {self.state.value} -> {target.value}"
            )
        self.state = target

    def reject(self, reason: str) -> None:
        if self.state != SessionState.REJECTED:
            self.advance(SessionState.REJECTED)
        self.rejection_reason = reason

    def verify_node(self, selectors: SelectorSet) -> None:
        self.advance(SessionState.NODE_VERIFIED)
        self.node_selectors = selectors

    def begin_workload(self) -> None:
        self.advance(SessionState.WORKLOAD_UNVERIFIED)

    def verify_workload(self, selectors: SelectorSet) -> None:
        self.advance(SessionState.WORKLOAD_VERIFIED)
        self.workload_selectors = selectors

    def result(self) -> SelectorSet:
        """Hand out the verified selectors. Only once per session."""
        if self.state != SessionState.WORKLOAD_VERIFIED:
            raise AttestationFailed(f"Session {self.session_id} is {self.state.value}")
        if self._consumed:
            raise AttestationFailed(f"Session {self.session_id} was already consumed")
        self._consumed = True
        return self.node_selectors | self.workload_selectors


class Attestor:
    """
    Two-stage attestation over registered verifiers.

    Dispatch is by the evidence-type tag carried in each Evidence; the
    attestor never inspects verifier classes at runtime.
    """

    def __init__(
        self,
        verifiers: Iterable[Verifier] = (),
        config: Optional[AttestationConfig] = None,
        events: Optional[EventBus] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config or AttestationConfig()
        self._events = events
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._verifiers: dict[str, Verifier] = {}
        self._seen: dict[str, datetime] = {}
        self._seen_lock = threading.Lock()
        for verifier in verifiers:
            self.register(verifier)

    def register(self, verifier: Verifier) -> None:
        """Register a verifier for its evidence type, replacing any existing one."""
        self._verifiers[verifier.evidence_type] = verifier
        logger.debug(
            "Registered %s verifier for evidence type %s",
            verifier.stage.value,
            verifier.evidence_type,
        )

    @property
    def evidence_types(self) -> list[str]:
        return sorted(self._verifiers)

    async def attest(
        self,
        node_evidence: Evidence,
        workload_evidence: Evidence,
        deadline: Optional[float] = None,
    ) -> SelectorSet:
        """Attest a node and the workload it hosts.

        Args:
            node_evidence: Evidence for the hosting node.
            workload_evidence: Evidence for the workload.
            deadline: Seconds allowed for each verifier call; defaults to
                the configured verifier timeout.

        Returns:
            The union of node and workload selectors.

        Raises:
            AttestationFailed: Evidence was invalid, stale, replayed or ambiguous.
            AttestationTimeout: A verifier did not answer within the deadline.
        """
        session = AttestationSession()
        try:
            node_selectors = await self._run_stage(
                session, AttestationStage.NODE, node_evidence, frozenset(), deadline
            )
            session.verify_node(node_selectors)
            session.begin_workload()
            workload_selectors = await self._run_stage(
                session, AttestationStage.WORKLOAD, workload_evidence, node_selectors, deadline
            )
            session.verify_workload(workload_selectors)
        except AttestationFailed as e:
            session.reject(str(e))
            self._release(session)
            logger.warning("Attestation session %s rejected: %s", session.session_id, e)
            self._emit_rejection(session, node_evidence, workload_evidence)
            raise
        except asyncio.CancelledError:
            self._release(session)
            raise

        selectors = session.result()
        logger.debug(
            "Attestation session %s verified %d selectors", session.session_id, len(selectors)
        )
        return selectors

    async def _run_stage(
        self,
        session: AttestationSession,
        stage: AttestationStage,
        evidence: Evidence,
        node_selectors: SelectorSet,
        deadline: Optional[float],
    ) -> SelectorSet:
        verifier = self._verifiers.get(evidence.evidence_type)
        if verifier is None:
            raise AttestationFailed(f"No verifier for evidence type {evidence.evidence_type!r}")
        if verifier.stage != stage:
            raise AttestationFailed(
                f"Evidence type {evidence.evidence_type!r} cannot be used for {stage.value} attestation"
            )
        self._check_fresh(session, evidence)

        timeout = deadline if deadline is not None else self.config.verifier_timeout_seconds
        try:
            selectors = await asyncio.wait_for(
                verifier.verify(evidence, node_selectors), timeout=timeout
            )
        except asyncio.TimeoutError:
            raise AttestationTimeout(
                f"{evidence.evidence_type} verifier did not answer within {timeout}s"
            )
        except AttestationFailed:
            raise
        except Exception as e:
            raise AttestationFailed(f"{evidence.evidence_type} verifier failed: {e}") from e

        if not selectors:
            raise AttestationFailed(
                f"{evidence.evidence_type} verifier returned no selectors"
            )
        return frozenset(selectors)

    def _check_fresh(self, session: AttestationSession, evidence: Evidence) -> None:
        now = self._clock()
        issued_at = evidence.issued_at
        if issued_at.tzinfo is None:
            issued_at = issued_at.replace(tzinfo=timezone.utc)
        skew = timedelta(seconds=self.config.clock_skew_seconds)
        if issued_at > now + skew:
            raise AttestationFailed(
                f"{evidence.evidence_type} evidence is dated in the future ({issued_at.isoformat()})"
            )
        if now - issued_at > timedelta(seconds=self.config.evidence_max_age_seconds):
            raise AttestationFailed(f"{evidence.evidence_type} evidence is stale")
        if self.config.reject_replayed_evidence:
            digest = evidence.digest()
            with self._seen_lock:
                self._expire_seen(now)
                if digest in self._seen:
                    raise AttestationFailed(f"{evidence.evidence_type} evidence was replayed")
                # Reserved until the session is rejected or the window passes.
                window = timedelta(
                    seconds=self.config.evidence_max_age_seconds + self.config.clock_skew_seconds
                )
                self._seen[digest] = now + window
                session.reserved.append(digest)

    def _release(self, session: AttestationSession) -> None:
        with self._seen_lock:
            for digest in session.reserved:
                self._seen.pop(digest, None)
        session.reserved.clear()

    def _expire_seen(self, now: datetime) -> None:
        expired = [digest for digest, until in self._seen.items() if until <= now]
        for digest in expired:
            del self._seen[digest]

    def _emit_rejection(
        self,
        session: AttestationSession,
        node_evidence: Evidence,
        workload_evidence: Evidence,
    ) -> None:
        if self._events is None:
            return
        self._events.publish(
            EVENT_ATTESTATION_REJECTED,
            source="attestor",
            session_id=session.session_id,
            node_evidence_type=node_evidence.evidence_type,
            workload_evidence_type=workload_evidence.evidence_type,
            reason=session.rejection_reason,
        )
