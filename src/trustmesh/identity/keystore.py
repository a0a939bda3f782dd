"""
Signing Key Store

Abstract signing backend for the Key Authority with an in-memory Ed25519
implementation. Private key material never leaves the store; callers sign
by key ID. All key lifecycle operations are logged for audit.
"""

from __future__ import annotations

import abc
import logging

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

logger = logging.getLogger(__name__)


class KeyStore(abc.ABC):
    """Abstract base class for signing key backends.

    Implementations may hold keys in memory, on disk, or in a hardware
    security module. Backend failures surface as
    :class:`~trustmesh.exceptions.SigningUnavailable` so the authority can
    retry them.

    Example:
        >>> store = SoftwareKeyStore()
        >>> pub = store.generate_keypair("key-1")
        >>> sig = store.sign("key-1", b"hello")
        >>> store.verify(pub, b"hello", sig)
        True
    """

    @abc.abstractmethod
    def generate_keypair(self, key_id: str) -> bytes:
        """Generate a signing keypair.

        Args:
            key_id: Identifier for the new key.

        Returns:
            The raw public key bytes.

        Raises:
            ValueError: If a keypair already exists for ``key_id``.
        """

    @abc.abstractmethod
    def sign(self, key_id: str, data: bytes) -> bytes:
        """Sign *data* with the private key *key_id*.

        Raises:
            KeyError: If no keypair exists for ``key_id``.
            SigningUnavailable: If the backend cannot sign right now.
        """

    @abc.abstractmethod
    def sign_certificate(
        self, key_id: str, builder: x509.CertificateBuilder
    ) -> x509.Certificate:
        """Sign an X.509 certificate builder with the private key *key_id*."""

    @abc.abstractmethod
    def get_public_key(self, key_id: str) -> bytes:
        """Retrieve the raw public key bytes for *key_id*.

        Raises:
            KeyError: If no keypair exists for ``key_id``.
        """

    @abc.abstractmethod
    def delete_key(self, key_id: str) -> None:
        """Delete the keypair *key_id*.

        Raises:
            KeyError: If no keypair exists for ``key_id``.
        """

    @staticmethod
    def verify(public_key: bytes, data: bytes, signature: bytes) -> bool:
        """Verify an Ed25519 signature against a raw public key."""
        try:
            pk = ed25519.Ed25519PublicKey.from_public_bytes(public_key)
            pk.verify(signature, data)
            return True
        except (InvalidSignature, ValueError):
            return False


class SoftwareKeyStore(KeyStore):
    """In-memory Ed25519 key store (default backend).

    Suitable for development, testing, and deployments without an HSM.
    """

    def __init__(self) -> None:
        self._keys: dict[str, ed25519.Ed25519PrivateKey] = {}

    def generate_keypair(self, key_id: str) -> bytes:
        if key_id in self._keys:
            raise ValueError(f"Keypair already exists: {key_id}")

        private_key = ed25519.Ed25519PrivateKey.generate()
        self._keys[key_id] = private_key
        logger.info("Generated software signing key %s", key_id)
        return self._public_bytes(private_key)

    def sign(self, key_id: str, data: bytes) -> bytes:
        signature = self._private_key(key_id).sign(data)
        logger.debug("Signed %d bytes with key %s", len(data), key_id)
        return signature

    def sign_certificate(
        self, key_id: str, builder: x509.CertificateBuilder
    ) -> x509.Certificate:
        # Ed25519 doesn't use a hash algorithm
        return builder.sign(self._private_key(key_id), None)

    def get_public_key(self, key_id: str) -> bytes:
        return self._public_bytes(self._private_key(key_id))

    def delete_key(self, key_id: str) -> None:
        if key_id not in self._keys:
            raise KeyError(f"No keypair found: {key_id}")
        del self._keys[key_id]
        logger.info("Deleted signing key %s", key_id)

    def _private_key(self, key_id: str) -> ed25519.Ed25519PrivateKey:
        if key_id not in self._keys:
            raise KeyError(f"No keypair found: {key_id}")
        return self._keys[key_id]

    @staticmethod
    def _public_bytes(private_key: ed25519.Ed25519PrivateKey) -> bytes:
        return private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )


__all__ = ["KeyStore", "SoftwareKeyStore"]
