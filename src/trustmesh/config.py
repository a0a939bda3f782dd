"""
Configuration

Pydantic models for every TrustMesh component, loadable from YAML.
"""

from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from trustmesh import constants
from trustmesh.exceptions import ConfigurationError


class AuthorityConfig(BaseModel):
    """Key Authority settings."""

    max_ttl_seconds: int = Field(default=constants.MAX_SVID_TTL_SECONDS, ge=1)
    default_ttl_seconds: int = Field(default=constants.DEFAULT_SVID_TTL_SECONDS, ge=1)
    rotation_grace_seconds: float = Field(default=constants.ROTATION_GRACE_SECONDS, ge=0)
    clock_skew_seconds: int = Field(default=constants.CLOCK_SKEW_SECONDS, ge=0)
    signing_timeout_seconds: float = Field(default=constants.SIGNING_TIMEOUT_SECONDS, gt=0)
    signing_retries: int = Field(default=constants.SIGNING_RETRIES, ge=1, le=10)
    bundle_refresh_hint_seconds: int = Field(
        default=constants.BUNDLE_REFRESH_HINT_SECONDS, ge=1
    )
    embed_x509: bool = Field(default=False, description="Embed an X.509-SVID chain")


class AttestationConfig(BaseModel):
    """Attestor settings."""

    evidence_max_age_seconds: int = Field(default=constants.EVIDENCE_MAX_AGE_SECONDS, ge=1)
    verifier_timeout_seconds: float = Field(
        default=constants.VERIFIER_TIMEOUT_SECONDS, gt=0
    )
    clock_skew_seconds: int = Field(default=constants.CLOCK_SKEW_SECONDS, ge=0)
    reject_replayed_evidence: bool = Field(
        default=False, description="Refuse identical evidence presented twice"
    )


class PeerConfig(BaseModel):
    """A federated trust domain and where to fetch its bundle."""

    trust_domain: str
    endpoint_url: Optional[str] = Field(None, description="HTTPS bundle endpoint")
    poll_interval_seconds: float = Field(
        default=constants.FEDERATION_POLL_INTERVAL_SECONDS, gt=0
    )
    timeout_seconds: float = Field(default=constants.FEDERATION_TIMEOUT_SECONDS, gt=0)
    retries: int = Field(default=constants.FEDERATION_RETRIES, ge=1, le=10)


class FederationConfig(BaseModel):
    """Federation settings."""

    peers: list[PeerConfig] = Field(default_factory=list)


class PolicyConfig(BaseModel):
    """Policy Decision Engine settings."""

    cache_ttl_seconds: float = Field(default=constants.POLICY_CACHE_TTL_SECONDS, ge=0)
    max_cache_entries: int = Field(default=constants.POLICY_CACHE_MAX_ENTRIES, ge=1)
    revocation_mode: Literal["always", "advisory"] = Field(default="always")
    policy_file: Optional[str] = None


class ServerConfig(BaseModel):
    """Request handling settings."""

    max_concurrency: int = Field(default=constants.MAX_CONCURRENCY, ge=1)
    event_queue_size: int = Field(default=constants.EVENT_QUEUE_SIZE, ge=1)
    registration_storage: str = Field(default="memory")
    revocation_storage: str = Field(default="memory")


class TrustMeshConfig(BaseModel):
    """Top-level configuration for one trust domain."""

    trust_domain: str = Field(default=constants.DEFAULT_TRUST_DOMAIN)
    authority: AuthorityConfig = Field(default_factory=AuthorityConfig)
    attestation: AttestationConfig = Field(default_factory=AttestationConfig)
    federation: FederationConfig = Field(default_factory=FederationConfig)
    policy: PolicyConfig = Field(default_factory=PolicyConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @model_validator(mode="after")
    def _check_consistency(self) -> "TrustMeshConfig":
        if self.authority.default_ttl_seconds > self.authority.max_ttl_seconds:
            raise ValueError("default_ttl_seconds must not exceed max_ttl_seconds")
        if "/" in self.trust_domain or ":" in self.trust_domain:
            raise ValueError(f"Invalid trust domain: {self.trust_domain}")
        for peer in self.federation.peers:
            if peer.trust_domain == self.trust_domain:
                raise ValueError("A trust domain cannot federate with itself")
        return self

    @classmethod
    def from_yaml(cls, yaml_content: str) -> "TrustMeshConfig":
        """Parse configuration from a YAML string."""
        try:
            data = yaml.safe_load(yaml_content) or {}
            return cls.model_validate(data)
        except (yaml.YAMLError, ValidationError) as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e


def load_config(path: str | Path) -> TrustMeshConfig:
    """Load and validate a YAML configuration file.

    Raises:
        ConfigurationError: If the file is missing or invalid.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}")
    return TrustMeshConfig.from_yaml(config_path.read_text())
