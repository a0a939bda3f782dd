# Copyright (c) TrustMesh Contributors. All rights reserved.
# Licensed under the MIT License.
"""Centralized exception hierarchy for TrustMesh.

All TrustMesh exceptions inherit from TrustMeshError. Every class carries a
``retryable`` flag so automated callers can tell a transient infrastructure
failure ("try again") from a security or configuration rejection ("do not
retry without new evidence or a config change").
"""


class TrustMeshError(Exception):
    """Base exception for all TrustMesh errors."""

    retryable: bool = False


class ConfigurationError(TrustMeshError):
    """Invalid or unreadable configuration."""


class AttestationFailed(TrustMeshError):
    """Evidence was invalid, stale, replayed, or the session was rejected."""


class AttestationTimeout(AttestationFailed):
    """An attestation verifier exceeded its deadline."""


class RegistrationError(TrustMeshError):
    """Errors related to registration entries."""


class NoRegistration(RegistrationError):
    """No registration entry matches the attested selectors."""


class AmbiguousRegistration(RegistrationError):
    """Several entries match the attested selectors with different subjects."""


class RegistrationConflict(RegistrationError):
    """An administrative mutation conflicts with the current store state."""


class SigningUnavailable(TrustMeshError):
    """The signing backend could not be reached or failed transiently."""

    retryable = True


class SigningTimeout(SigningUnavailable):
    """A signing operation exceeded its deadline."""


class RotationInProgress(TrustMeshError):
    """A key rotation is still inside its propagation grace period."""

    retryable = True


class BundleRejected(TrustMeshError):
    """A federated trust bundle failed import validation."""

    def __init__(self, reason: str, message: str | None = None) -> None:
        self.reason = reason
        super().__init__(message or reason)


class FederationUnavailable(TrustMeshError):
    """A federation peer could not be reached."""

    retryable = True


class VerificationError(TrustMeshError):
    """An identity document failed verification."""


class PolicyDenied(TrustMeshError):
    """Raised on request when a policy decision denies an action."""


__all__ = [
    "TrustMeshError",
    "ConfigurationError",
    "AttestationFailed",
    "AttestationTimeout",
    "RegistrationError",
    "NoRegistration",
    "AmbiguousRegistration",
    "RegistrationConflict",
    "SigningUnavailable",
    "SigningTimeout",
    "RotationInProgress",
    "BundleRejected",
    "FederationUnavailable",
    "VerificationError",
    "PolicyDenied",
]
