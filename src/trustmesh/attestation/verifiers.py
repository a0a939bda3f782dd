"""
Attestation Verifiers

Each verifier interprets one evidence type and turns it into selectors.
The attestor dispatches on the ``evidence_type`` tag carried by the
evidence, so adding an evidence source means registering a new verifier.
"""

from __future__ import annotations

import hashlib
import json
import logging
import secrets
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field

from trustmesh.attestation.selectors import Selector, SelectorSet, lookup
from trustmesh.exceptions import AttestationFailed

logger = logging.getLogger(__name__)


class AttestationStage(str, Enum):
    NODE = "node"
    WORKLOAD = "workload"


class Evidence(BaseModel):
    """Opaque evidence blob tagged with its type.

    Attributes:
        evidence_type: Tag used to pick the verifier (``k8s_psat``, ``unix``...).
        payload: Evidence contents, interpreted only by the verifier.
        issued_at: When the evidence was produced; drives freshness checks.
        nonce: Random value distinguishing otherwise identical evidence.
    """

    model_config = ConfigDict(frozen=True)

    evidence_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    issued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    nonce: str = Field(default_factory=lambda: secrets.token_hex(16))

    def digest(self) -> str:
        """Stable SHA-256 digest of the evidence."""
        data = self.model_dump(mode="json")
        canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(canonical.encode()).hexdigest()


class Verifier(ABC):
    """Verifies one evidence type for one attestation stage."""

    evidence_type: str
    stage: AttestationStage

    @abstractmethod
    async def verify(
        self,
        evidence: Evidence,
        node_selectors: SelectorSet = frozenset(),
    ) -> SelectorSet:
        """Verify evidence and return the selectors it proves.

        Args:
            evidence: The evidence to verify.
            node_selectors: Selectors already proven for the hosting node
                (empty during node attestation).

        Raises:
            AttestationFailed: If the evidence is invalid or ambiguous.
        """


def _require(payload: dict[str, Any], *fields: str) -> None:
    missing = [f for f in fields if not payload.get(f)]
    if missing:
        raise AttestationFailed(f"Evidence missing required fields: {', '.join(missing)}")


# ----------------------------------------------------------------------
# Node verifiers
# ----------------------------------------------------------------------


class JoinTokenNodeVerifier(Verifier):
    """Single-use join tokens handed to a node out of band.

    A token is consumed by its first successful use and expires after its
    TTL. The selector carries a hash of the token, never the token itself.
    """

    evidence_type = "join_token"
    stage = AttestationStage.NODE

    def __init__(self, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._tokens: dict[str, datetime] = {}
        self._lock = threading.Lock()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def create_token(self, ttl_seconds: int = 600) -> str:
        token = secrets.token_urlsafe(24)
        with self._lock:
            self._tokens[token] = self._clock() + timedelta(seconds=ttl_seconds)
        return token

    @staticmethod
    def selector_for(token: str) -> Selector:
        return Selector(type="join_token", value=hashlib.sha256(token.encode()).hexdigest()[:32])

    async def verify(
        self,
        evidence: Evidence,
        node_selectors: SelectorSet = frozenset(),
    ) -> SelectorSet:
        _require(evidence.payload, "token")
        token = evidence.payload["token"]
        with self._lock:
            expires_at = self._tokens.pop(token, None)
        if expires_at is None:
            raise AttestationFailed("Join token is unknown or already used")
        if self._clock() >= expires_at:
            raise AttestationFailed("Join token expired")
        return frozenset({self.selector_for(token)})


class K8sPSATNodeVerifier(Verifier):
    """Kubernetes projected service account token node attestation.

    ``token_validator`` validates the token against the cluster (for
    example via the TokenReview API) and returns its claims:
    ``namespace``, ``service_account``, ``node_name`` and optionally
    ``pod_name``.
    """

    evidence_type = "k8s_psat"
    stage = AttestationStage.NODE

    def __init__(
        self,
        allowed_clusters: Iterable[str],
        token_validator: Callable[[str, str], dict[str, Any]],
    ) -> None:
        self.allowed_clusters = set(allowed_clusters)
        self._validate_token = token_validator

    async def verify(
        self,
        evidence: Evidence,
        node_selectors: SelectorSet = frozenset(),
    ) -> SelectorSet:
        _require(evidence.payload, "cluster", "token")
        cluster = evidence.payload["cluster"]
        if cluster not in self.allowed_clusters:
            raise AttestationFailed(f"Cluster {cluster!r} is not configured for attestation")

        try:
            claims = self._validate_token(cluster, evidence.payload["token"])
        except AttestationFailed:
            raise
        except Exception as e:
            raise AttestationFailed(f"Service account token rejected: {e}") from e

        _require(claims, "namespace", "service_account", "node_name")
        selectors = {
            Selector(type="k8s_psat", value=f"cluster:{cluster}"),
            Selector(type="k8s_psat", value=f"agent_ns:{claims['namespace']}"),
            Selector(type="k8s_psat", value=f"agent_sa:{claims['service_account']}"),
            Selector(type="k8s_psat", value=f"agent_node_name:{claims['node_name']}"),
        }
        if claims.get("pod_name"):
            selectors.add(Selector(type="k8s_psat", value=f"agent_pod_name:{claims['pod_name']}"))
        return frozenset(selectors)


# ----------------------------------------------------------------------
# Workload verifiers
# ----------------------------------------------------------------------


class UnixWorkloadVerifier(Verifier):
    """Process metadata gathered by the node agent (uid, gid, binary)."""

    evidence_type = "unix"
    stage = AttestationStage.WORKLOAD

    async def verify(
        self,
        evidence: Evidence,
        node_selectors: SelectorSet = frozenset(),
    ) -> SelectorSet:
        payload = evidence.payload
        if payload.get("uid") is None:
            raise AttestationFailed("Evidence missing required fields: uid")

        selectors = {Selector(type="unix", value=f"uid:{payload['uid']}")}
        if payload.get("gid") is not None:
            selectors.add(Selector(type="unix", value=f"gid:{payload['gid']}"))
        if payload.get("path"):
            selectors.add(Selector(type="unix", value=f"path:{payload['path']}"))
        if payload.get("sha256"):
            selectors.add(Selector(type="unix", value=f"sha256:{payload['sha256']}"))
        return frozenset(selectors)


class K8sWorkloadVerifier(Verifier):
    """Pod metadata for a workload running on an attested Kubernetes node.

    When the node was attested with a service account token, the pod must
    report the same node name; anything else is treated as ambiguous.
    """

    evidence_type = "k8s"
    stage = AttestationStage.WORKLOAD

    async def verify(
        self,
        evidence: Evidence,
        node_selectors: SelectorSet = frozenset(),
    ) -> SelectorSet:
        payload = evidence.payload
        _require(payload, "namespace", "service_account")

        attested_node = lookup(node_selectors, "k8s_psat:agent_node_name")
        node_name = payload.get("node_name")
        if attested_node is not None and node_name != attested_node:
            raise AttestationFailed(
                f"Pod reports node {node_name!r} but node {attested_node!r} was attested"
            )

        selectors = {
            Selector(type="k8s", value=f"ns:{payload['namespace']}"),
            Selector(type="k8s", value=f"sa:{payload['service_account']}"),
        }
        if node_name:
            selectors.add(Selector(type="k8s", value=f"node-name:{node_name}"))
        if payload.get("pod_name"):
            selectors.add(Selector(type="k8s", value=f"pod-name:{payload['pod_name']}"))
        if payload.get("pod_uid"):
            selectors.add(Selector(type="k8s", value=f"pod-uid:{payload['pod_uid']}"))
        for key, value in sorted((payload.get("labels") or {}).items()):
            selectors.add(Selector(type="k8s", value=f"pod-label:{key}:{value}"))
        for image in payload.get("images") or []:
            selectors.add(Selector(type="k8s", value=f"pod-image:{image}"))
        return frozenset(selectors)
