"""
Identity Issuance

Orchestrates attestation, registration matching and signing.
"""

from .coordinator import IssuanceCoordinator

__all__ = ["IssuanceCoordinator"]
