"""
Policy Decision Engine

Evaluates an identity document against the rule set:

1. verify the document (signature, validity window, revocation);
2. for a foreign trust domain, require an ACTIVE federation relationship;
3. gather matching rules: any deny wins, else any allow, else default deny.

Decisions are cached for a short TTL in a bounded LRU, keyed on the policy
version. The rule store broadcasts every version bump, and the engine clears
its cache on receipt instead of waiting for entries to expire.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from trustmesh.config import PolicyConfig
from trustmesh.events import EVENT_POLICY_EVALUATED, EventBus
from trustmesh.exceptions import PolicyDenied
from trustmesh.federation.manager import FederationManager, PeerState
from trustmesh.identity.spiffe import IdentityDocument
from trustmesh.policy.rules import RuleStore
from trustmesh.verification import DocumentVerifier

logger = logging.getLogger(__name__)

NO_MATCHING_POLICY = "no matching policy"


class PolicyDecision(BaseModel):
    """Result of policy evaluation."""

    allowed: bool
    effect: Literal["allow", "deny"]
    reason: Optional[str] = None
    matched_rules: list[str] = Field(default_factory=list)
    policy_version: int

    subject: str
    action: str
    resource: str
    cached: bool = False
    evaluated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def deny(
        cls,
        document: IdentityDocument,
        action: str,
        resource: str,
        reason: str,
        policy_version: int,
        matched_rules: Optional[list[str]] = None,
    ) -> "PolicyDecision":
        return cls(
            allowed=False,
            effect="deny",
            reason=reason,
            matched_rules=matched_rules or [],
            policy_version=policy_version,
            subject=document.subject,
            action=action,
            resource=resource,
        )

    def raise_for_denial(self) -> "PolicyDecision":
        """Raise PolicyDenied for callers that prefer exceptions."""
        if not self.allowed:
            raise PolicyDenied(f"{self.subject} may not {self.action} {self.resource}: {self.reason}")
        return self


class PolicyDecisionEngine:
    """
    Allow/deny decisions over a versioned rule store.

    Evaluation is deterministic and order independent: for a fixed rule
    version and input, the decision is always the same.
    """

    def __init__(
        self,
        trust_domain: str,
        rules: RuleStore,
        verifier: DocumentVerifier,
        federation: Optional[FederationManager] = None,
        config: Optional[PolicyConfig] = None,
        events: Optional[EventBus] = None,
    ):
        self.trust_domain = trust_domain
        self.rules = rules
        self.verifier = verifier
        self.federation = federation
        self.config = config or PolicyConfig()
        self._events = events
        self._cache: OrderedDict[tuple[Any, ...], tuple[float, PolicyDecision]] = OrderedDict()
        self._cache_lock = threading.Lock()
        rules.subscribe(self._on_version_change)

    def evaluate(
        self,
        document: IdentityDocument,
        action: str,
        resource: str,
        context: Optional[dict[str, Any]] = None,
        sensitive: bool = False,
    ) -> PolicyDecision:
        """Decide whether ``document`` may perform ``action`` on ``resource``.

        Args:
            document: Identity document of the caller.
            action: Requested action, e.g. ``GET`` or ``read``.
            resource: Target resource, e.g. ``database:main``.
            context: Extra request attributes available to rule conditions.
            sensitive: Force the revocation check in advisory mode.

        Returns:
            A PolicyDecision. Denial is a normal outcome, not an exception.
        """
        snapshot = self.rules.snapshot

        if document.trust_domain != self.trust_domain:
            state = self.federation.peer_state(document.trust_domain) if self.federation else None
            if state != PeerState.ACTIVE:
                reason = f"no active federation with {document.trust_domain}"
                return self._finish(
                    PolicyDecision.deny(document, action, resource, reason, snapshot.version)
                )

        verification = self.verifier.verify(document, sensitive=sensitive)
        if not verification.valid:
            reason = f"invalid identity document: {verification.reason}"
            return self._finish(
                PolicyDecision.deny(document, action, resource, reason, snapshot.version)
            )

        evaluation_context = {
            "subject": document.subject,
            "trust_domain": document.trust_domain,
            "scopes": list(document.scopes),
            **(context or {}),
        }
        key = (
            document.subject,
            action,
            resource,
            snapshot.version,
            json.dumps(evaluation_context, sort_keys=True, default=str),
        )
        cached = self._cache_get(key)
        if cached is not None:
            logger.debug("Policy cache hit for %s %s %s", document.subject, action, resource)
            return self._finish(cached.model_copy(update={"cached": True}))

        matched = [
            rule
            for rule in snapshot.rules
            if rule.matches(
                document.subject, document.trust_domain, action, resource, evaluation_context
            )
        ]
        denies = sorted(r.name for r in matched if r.effect == "deny")
        allows = sorted(r.name for r in matched if r.effect == "allow")
        if denies:
            decision = PolicyDecision.deny(
                document,
                action,
                resource,
                f"denied by {', '.join(denies)}",
                snapshot.version,
                matched_rules=denies,
            )
        elif allows:
            decision = PolicyDecision(
                allowed=True,
                effect="allow",
                reason=f"allowed by {', '.join(allows)}",
                matched_rules=allows,
                policy_version=snapshot.version,
                subject=document.subject,
                action=action,
                resource=resource,
            )
        else:
            decision = PolicyDecision.deny(
                document, action, resource, NO_MATCHING_POLICY, snapshot.version
            )

        self._cache_put(key, decision)
        return self._finish(decision)

    async def evaluate_async(
        self,
        document: IdentityDocument,
        action: str,
        resource: str,
        context: Optional[dict[str, Any]] = None,
        sensitive: bool = False,
    ) -> PolicyDecision:
        """Like :meth:`evaluate`, refreshing a foreign peer's bundle first."""
        if document.trust_domain != self.trust_domain and self.federation is not None:
            await self.federation.refresh(document.trust_domain)
        return self.evaluate(document, action, resource, context, sensitive)

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    def _on_version_change(self, version: int) -> None:
        with self._cache_lock:
            dropped = len(self._cache)
            self._cache.clear()
        logger.debug("Policy version %d published; dropped %d cached decisions", version, dropped)

    def _cache_get(self, key: tuple[Any, ...]) -> Optional[PolicyDecision]:
        if self.config.cache_ttl_seconds <= 0:
            return None
        with self._cache_lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            expires_at, decision = entry
            if time.monotonic() >= expires_at:
                del self._cache[key]
                return None
            self._cache.move_to_end(key)
            return decision

    def _cache_put(self, key: tuple[Any, ...], decision: PolicyDecision) -> None:
        if self.config.cache_ttl_seconds <= 0:
            return
        # A version bump between snapshot read and insert would leave a stale entry.
        if decision.policy_version != self.rules.version:
            return
        with self._cache_lock:
            self._cache[key] = (time.monotonic() + self.config.cache_ttl_seconds, decision)
            self._cache.move_to_end(key)
            while len(self._cache) > self.config.max_cache_entries:
                self._cache.popitem(last=False)

    def _finish(self, decision: PolicyDecision) -> PolicyDecision:
        if self._events is not None:
            self._events.publish(
                EVENT_POLICY_EVALUATED,
                source="policy",
                subject=decision.subject,
                action=decision.action,
                resource=decision.resource,
                allowed=decision.allowed,
                reason=decision.reason,
                policy_version=decision.policy_version,
                cached=decision.cached,
            )
        return decision
