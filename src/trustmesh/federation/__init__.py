"""
Federation

Trust bundle exchange with peer trust domains.
"""

from .fetcher import BundleFetcher, HttpBundleFetcher, InProcessFetcher
from .manager import (
    FederationManager,
    ImportResult,
    PeerRelationship,
    PeerState,
)

__all__ = [
    "BundleFetcher",
    "HttpBundleFetcher",
    "InProcessFetcher",
    "FederationManager",
    "ImportResult",
    "PeerRelationship",
    "PeerState",
]
