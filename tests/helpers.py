"""Test helpers shared across TrustMesh test modules."""

from datetime import datetime, timedelta, timezone

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from trustmesh.attestation import (
    Attestor,
    Evidence,
    K8sPSATNodeVerifier,
    K8sWorkloadVerifier,
    UnixWorkloadVerifier,
)
from trustmesh.config import AttestationConfig


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


PSAT_CLAIMS = {
    "token-node-1": {
        "namespace": "spire",
        "service_account": "spire-agent",
        "node_name": "node-1",
    },
}


def validate_psat(cluster: str, token: str) -> dict:
    if token not in PSAT_CLAIMS:
        raise ValueError("token review failed")
    return PSAT_CLAIMS[token]


def workload_public_key() -> bytes:
    key = ed25519.Ed25519PrivateKey.generate()
    return key.public_key().public_bytes(
        serialization.Encoding.Raw, serialization.PublicFormat.Raw
    )


def node_evidence(clock: FakeClock, token: str = "token-node-1", cluster: str = "prod") -> Evidence:
    return Evidence(
        evidence_type="k8s_psat",
        payload={"cluster": cluster, "token": token},
        issued_at=clock(),
    )


def k8s_evidence(clock: FakeClock, **overrides) -> Evidence:
    payload = {
        "namespace": "web",
        "service_account": "frontend",
        "node_name": "node-1",
        "pod_name": "frontend-7d9f",
        "labels": {"app": "frontend"},
    }
    payload.update(overrides)
    return Evidence(evidence_type="k8s", payload=payload, issued_at=clock())


def make_attestor(clock: FakeClock, events=None, **config) -> Attestor:
    return Attestor(
        [
            K8sPSATNodeVerifier(["prod"], validate_psat),
            K8sWorkloadVerifier(),
            UnixWorkloadVerifier(),
        ],
        config=AttestationConfig(**config),
        events=events,
        clock=clock,
    )
