"""
Key Authority

Owns the root and intermediate signing keys of a trust domain, issues
short-lived identity documents, rotates intermediates and records
revocations.

Signing key state is an immutable snapshot register: rotation builds a new
:class:`AuthoritySnapshot` (new bundle, new active-key pointer) and swaps
it in atomically, so issuance never observes a torn state. Issuance reads
the current snapshot and signs in parallel; only rotation is serialized.

Rotation protocol:

1. generate a new intermediate key;
2. publish bundle ``sequence + 1`` containing old and new keys, signed by
   the currently active key;
3. after ``rotation_grace_seconds`` switch to signing with the new key.

The retired key stays in every bundle for ``max_ttl + clock_skew`` after
retirement so documents it signed remain verifiable until they expire.
"""

from __future__ import annotations

import asyncio
import base64
import dataclasses
import logging
import secrets
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Sequence

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, rsa
from cryptography.x509.oid import NameOID

from trustmesh.config import AuthorityConfig
from trustmesh.events import (
    EVENT_AUTHORITY_ROTATED,
    EVENT_IDENTITY_ISSUED,
    EVENT_IDENTITY_REVOKED,
    EventBus,
)
from trustmesh.exceptions import RotationInProgress, SigningTimeout
from trustmesh.identity.bundle import BundleKey, TrustBundle
from trustmesh.identity.keystore import KeyStore, SoftwareKeyStore
from trustmesh.identity.revocation import RevocationLog, RevocationReason, RevocationRecord
from trustmesh.identity.spiffe import IdentityDocument, SpiffeID
from trustmesh.retry import retry_async

logger = logging.getLogger(__name__)

WorkloadPublicKey = ed25519.Ed25519PublicKey | ec.EllipticCurvePublicKey | rsa.RSAPublicKey
BundleListener = Callable[[TrustBundle], None]


@dataclasses.dataclass(frozen=True)
class AuthorityKey:
    """An intermediate signing key and its certificate."""

    key_id: str
    public_key: bytes
    created_at: datetime
    certificate_pem: str
    retired_at: Optional[datetime] = None


@dataclasses.dataclass(frozen=True)
class AuthoritySnapshot:
    """Immutable view of the authority's signing state."""

    active_key_id: str
    keys: tuple[AuthorityKey, ...]
    bundle: TrustBundle
    pending_key_id: Optional[str] = None
    pending_since: Optional[datetime] = None

    def key(self, key_id: str) -> AuthorityKey:
        for key in self.keys:
            if key.key_id == key_id:
                return key
        raise KeyError(f"Unknown authority key: {key_id}")


def load_workload_public_key(value: Any) -> WorkloadPublicKey:
    """Load a workload public key from raw bytes, PEM, or a PEM CSR.

    Raises:
        ValueError: If the value is not a supported key or the CSR
            signature does not verify.
    """
    if isinstance(value, (ed25519.Ed25519PublicKey, ec.EllipticCurvePublicKey, rsa.RSAPublicKey)):
        return value
    if isinstance(value, str):
        value = value.encode()
    if not isinstance(value, bytes):
        raise ValueError(f"Unsupported public key type: {type(value).__name__}")

    stripped = value.strip()
    if stripped.startswith(b"-----BEGIN CERTIFICATE REQUEST-----"):
        csr = x509.load_pem_x509_csr(stripped)
        if not csr.is_signature_valid:
            raise ValueError("CSR signature is invalid")
        key = csr.public_key()
    elif stripped.startswith(b"-----BEGIN PUBLIC KEY-----"):
        key = serialization.load_pem_public_key(stripped)
    elif len(value) == 32:
        return ed25519.Ed25519PublicKey.from_public_bytes(value)
    else:
        raise ValueError("Unrecognized public key or CSR encoding")

    if not isinstance(key, (ed25519.Ed25519PublicKey, ec.EllipticCurvePublicKey, rsa.RSAPublicKey)):
        raise ValueError(f"Unsupported public key algorithm: {type(key).__name__}")
    return key


def _spki_b64(public_key: WorkloadPublicKey) -> str:
    der = public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return base64.b64encode(der).decode()


class KeyAuthority:
    """
    Certificate and key authority for one trust domain.

    Issues identity documents with ``effective_ttl = min(requested, max)``.
    Requests above the maximum are clamped, not rejected: callers must read
    ``expires_at`` from the returned document rather than assume the
    requested lifetime.
    """

    def __init__(
        self,
        trust_domain: str,
        config: Optional[AuthorityConfig] = None,
        keystore: Optional[KeyStore] = None,
        revocations: Optional[RevocationLog] = None,
        events: Optional[EventBus] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the authority and bootstrap its first bundle.

        Args:
            trust_domain: Trust domain this authority issues for.
            config: Authority settings (TTLs, grace period, signing timeouts).
            keystore: Signing backend. Defaults to an in-memory store.
            revocations: Revocation stream shared with verifiers.
            events: Observability sink.
            clock: Source of the current UTC time.
        """
        self.trust_domain = trust_domain
        self.config = config or AuthorityConfig()
        self._keystore = keystore or SoftwareKeyStore()
        self.revocations = revocations or RevocationLog(clock=clock)
        self.revocations.require_retention(self.max_ttl + self.clock_skew)
        self._events = events
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._rotation_lock = threading.Lock()
        self._listeners: list[BundleListener] = []

        now = self._clock()
        self._root_key_id = f"root-{secrets.token_hex(8)}"
        self._keystore.generate_keypair(self._root_key_id)
        self._root_certificate = self._generate_root_certificate(now)

        first = self._create_intermediate(now)
        bundle = self._build_bundle((first,), sequence=1, signer=first.key_id, now=now)
        self._snapshot = AuthoritySnapshot(
            active_key_id=first.key_id,
            keys=(first,),
            bundle=bundle,
        )
        logger.info(
            "Bootstrapped key authority for %s (active key %s)",
            trust_domain,
            first.key_id,
        )

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> AuthoritySnapshot:
        return self._snapshot

    @property
    def bundle(self) -> TrustBundle:
        """The current trust bundle of this domain."""
        return self._snapshot.bundle

    @property
    def active_key_id(self) -> str:
        return self._signing_snapshot().active_key_id

    @property
    def max_ttl(self) -> timedelta:
        return timedelta(seconds=self.config.max_ttl_seconds)

    @property
    def clock_skew(self) -> timedelta:
        return timedelta(seconds=self.config.clock_skew_seconds)

    @property
    def root_certificate_pem(self) -> str:
        return self._root_certificate.public_bytes(serialization.Encoding.PEM).decode()

    def subscribe(self, listener: BundleListener) -> None:
        """Register a callback invoked with every newly published bundle."""
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def effective_ttl(self, requested_ttl_seconds: int) -> int:
        """Clamp a requested TTL to the configured maximum."""
        if requested_ttl_seconds <= 0:
            raise ValueError(f"requested TTL must be positive, got: {requested_ttl_seconds}")
        return min(requested_ttl_seconds, self.config.max_ttl_seconds)

    async def issue(
        self,
        subject: str,
        trust_domain: str,
        requested_ttl_seconds: int,
        public_key_or_csr: Any,
        selector_fingerprint: str = "",
        scopes: Sequence[str] = (),
        deadline: Optional[float] = None,
    ) -> IdentityDocument:
        """Issue a signed identity document.

        Args:
            subject: SPIFFE ID of the workload.
            trust_domain: Must be this authority's trust domain.
            requested_ttl_seconds: Requested lifetime; clamped to the maximum.
            public_key_or_csr: Raw Ed25519 key, PEM public key, or PEM CSR.
            selector_fingerprint: Hash of the selectors that justified issuance.
            scopes: Authorized scopes copied from the registration entry.
            deadline: Seconds the caller is willing to wait for signing.

        Returns:
            The signed, immutable IdentityDocument.

        Raises:
            ValueError: For a foreign subject or an unusable public key.
            SigningUnavailable: If the signing backend stays unavailable.
            SigningTimeout: If signing misses the deadline.
        """
        if trust_domain != self.trust_domain:
            raise ValueError(
                f"Authority for {self.trust_domain} cannot issue for {trust_domain}"
            )
        if SpiffeID.parse(subject).trust_domain != trust_domain:
            raise ValueError(f"Subject {subject} is outside trust domain {trust_domain}")

        ttl = self.effective_ttl(requested_ttl_seconds)
        if ttl < requested_ttl_seconds:
            logger.debug(
                "Clamped requested TTL %ds to %ds for %s", requested_ttl_seconds, ttl, subject
            )
        workload_key = load_workload_public_key(public_key_or_csr)

        snapshot = self._signing_snapshot()
        signing_key = snapshot.key(snapshot.active_key_id)
        now = self._clock()
        expires_at = now + timedelta(seconds=ttl)

        chain = None
        if self.config.embed_x509:
            leaf = await self._call_backend(
                self._sign_leaf_certificate,
                signing_key,
                subject,
                workload_key,
                now,
                expires_at,
                deadline=deadline,
            )
            chain = [
                leaf.public_bytes(serialization.Encoding.PEM).decode(),
                signing_key.certificate_pem,
            ]

        unsigned = IdentityDocument(
            serial=uuid.uuid4().hex,
            subject=subject,
            trust_domain=trust_domain,
            issued_at=now,
            expires_at=expires_at,
            public_key=_spki_b64(workload_key),
            certificate_chain=chain,
            selector_fingerprint=selector_fingerprint,
            scopes=sorted(set(scopes)),
            signing_key_id=signing_key.key_id,
        )
        signature = await self._call_backend(
            self._keystore.sign,
            signing_key.key_id,
            unsigned.signing_payload(),
            deadline=deadline,
        )
        document = unsigned.model_copy(
            update={"signature": base64.b64encode(signature).decode()}
        )

        logger.info(
            "Issued identity document %s for %s (ttl=%ds, key=%s)",
            document.serial,
            subject,
            ttl,
            signing_key.key_id,
        )
        self._emit(
            EVENT_IDENTITY_ISSUED,
            subject=subject,
            serial=document.serial,
            ttl_seconds=ttl,
            signing_key_id=signing_key.key_id,
        )
        return document

    async def _call_backend(
        self, func: Callable[..., Any], *args: Any, deadline: Optional[float] = None
    ) -> Any:
        """Run a blocking signing-backend call with timeout and retries."""
        timeout = self.config.signing_timeout_seconds
        if deadline is not None:
            timeout = min(timeout, deadline)

        async def attempt() -> Any:
            try:
                return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=timeout)
            except asyncio.TimeoutError as e:
                raise SigningTimeout(f"Signing backend exceeded {timeout}s") from e

        operation = retry_async(
            attempt,
            attempts=self.config.signing_retries,
            description="signing backend call",
        )
        if deadline is None:
            return await operation
        try:
            return await asyncio.wait_for(operation, timeout=deadline)
        except asyncio.TimeoutError as e:
            raise SigningTimeout(f"Signing did not complete within {deadline}s deadline") from e

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    def rotate(self, actor: str, reason: str) -> TrustBundle:
        """Start a key rotation and publish the overlapping bundle.

        The new bundle contains both the current and the new intermediate
        and is signed by the current one, so any peer holding the previous
        bundle can validate it. Signing switches to the new key once the
        grace period elapses.

        Args:
            actor: Operator or automation requesting the rotation.
            reason: Why the rotation was triggered.

        Returns:
            The newly published TrustBundle.

        Raises:
            RotationInProgress: If a previous rotation is still in its grace period.
        """
        if not actor or not reason:
            raise ValueError("Rotation requires an actor and a reason")

        with self._rotation_lock:
            snapshot = self._snapshot
            now = self._clock()
            if snapshot.pending_key_id is not None:
                if not self._grace_elapsed(snapshot, now):
                    raise RotationInProgress(
                        f"Rotation to {snapshot.pending_key_id} is still propagating"
                    )
                snapshot = self._finish_rotation(snapshot, now)

            new_key = self._create_intermediate(now)
            try:
                kept, pruned = self._partition_keys(snapshot.keys, now)
                keys = kept + (new_key,)
                bundle = self._build_bundle(
                    keys,
                    sequence=snapshot.bundle.sequence + 1,
                    signer=snapshot.active_key_id,
                    now=now,
                )
            except Exception:
                self._keystore.delete_key(new_key.key_id)
                raise

            rotated = AuthoritySnapshot(
                active_key_id=snapshot.active_key_id,
                keys=keys,
                bundle=bundle,
                pending_key_id=new_key.key_id,
                pending_since=now,
            )
            if self.config.rotation_grace_seconds <= 0:
                rotated = self._finish_rotation(rotated, now)
            self._snapshot = rotated

            for key in pruned:
                self._keystore.delete_key(key.key_id)
            aged_out = self.age_out_revocations()

        logger.info(
            "Rotation by %s (%s): published bundle seq=%d with new key %s",
            actor,
            reason,
            bundle.sequence,
            new_key.key_id,
        )
        if aged_out:
            logger.info("Aged out %d revocation records", aged_out)
        self._emit(
            EVENT_AUTHORITY_ROTATED,
            actor=actor,
            reason=reason,
            sequence=bundle.sequence,
            new_key_id=new_key.key_id,
        )
        for listener in list(self._listeners):
            listener(bundle)
        return bundle

    def complete_rotation(self) -> bool:
        """Switch to the pending key if its grace period has elapsed.

        Returns:
            True if the active key changed.
        """
        with self._rotation_lock:
            snapshot = self._snapshot
            now = self._clock()
            if snapshot.pending_key_id is None or not self._grace_elapsed(snapshot, now):
                return False
            self._snapshot = self._finish_rotation(snapshot, now)
            return True

    def _signing_snapshot(self) -> AuthoritySnapshot:
        snapshot = self._snapshot
        if snapshot.pending_key_id is not None and self._grace_elapsed(snapshot, self._clock()):
            self.complete_rotation()
            snapshot = self._snapshot
        return snapshot

    def _grace_elapsed(self, snapshot: AuthoritySnapshot, now: datetime) -> bool:
        if snapshot.pending_since is None:
            return False
        grace = timedelta(seconds=self.config.rotation_grace_seconds)
        return now >= snapshot.pending_since + grace

    def _finish_rotation(self, snapshot: AuthoritySnapshot, now: datetime) -> AuthoritySnapshot:
        if snapshot.pending_key_id is None:
            return snapshot
        keys = tuple(
            dataclasses.replace(key, retired_at=now)
            if key.key_id == snapshot.active_key_id
            else key
            for key in snapshot.keys
        )
        logger.info(
            "Signing switched from %s to %s", snapshot.active_key_id, snapshot.pending_key_id
        )
        return AuthoritySnapshot(
            active_key_id=snapshot.pending_key_id,
            keys=keys,
            bundle=snapshot.bundle,
        )

    def _partition_keys(
        self, keys: tuple[AuthorityKey, ...], now: datetime
    ) -> tuple[tuple[AuthorityKey, ...], tuple[AuthorityKey, ...]]:
        """Split keys into those still needed for verification and expired ones."""
        retention = self.max_ttl + self.clock_skew
        kept = tuple(k for k in keys if k.retired_at is None or now < k.retired_at + retention)
        pruned = tuple(k for k in keys if k not in kept)
        return kept, pruned

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def age_out_revocations(self) -> int:
        """Drop revocation records that no unexpired document can be affected by."""
        return self.revocations.age_out(self.max_ttl + self.clock_skew)

    def revoke(
        self,
        subject: str,
        reason: RevocationReason,
        actor: str,
        note: str = "",
    ) -> RevocationRecord:
        """Record a revocation for every outstanding document of ``subject``."""
        record = self.revocations.append(subject, reason, actor, note=note)
        self._emit(
            EVENT_IDENTITY_REVOKED,
            subject=subject,
            reason=reason.value,
            actor=actor,
        )
        return record

    # ------------------------------------------------------------------
    # Key material
    # ------------------------------------------------------------------

    def _create_intermediate(self, now: datetime) -> AuthorityKey:
        key_id = f"key-{secrets.token_hex(8)}"
        public_key = self._keystore.generate_keypair(key_id)
        try:
            certificate = self._issue_intermediate_certificate(key_id, public_key, now)
        except Exception:
            self._keystore.delete_key(key_id)
            raise
        return AuthorityKey(
            key_id=key_id,
            public_key=public_key,
            created_at=now,
            certificate_pem=certificate.public_bytes(serialization.Encoding.PEM).decode(),
        )

    def _build_bundle(
        self,
        keys: Sequence[AuthorityKey],
        sequence: int,
        signer: str,
        now: datetime,
    ) -> TrustBundle:
        retention = self.max_ttl + self.clock_skew
        unsigned = TrustBundle(
            trust_domain=self.trust_domain,
            sequence=sequence,
            keys=[
                BundleKey(
                    key_id=key.key_id,
                    public_key=base64.b64encode(key.public_key).decode(),
                    not_after=key.retired_at + retention if key.retired_at else None,
                )
                for key in keys
            ],
            x509_authorities=[self.root_certificate_pem],
            issued_at=now,
            refresh_hint_seconds=self.config.bundle_refresh_hint_seconds,
            signing_key_id=signer,
        )
        signature = self._keystore.sign(signer, unsigned.signing_payload())
        return unsigned.model_copy(update={"signature": base64.b64encode(signature).decode()})

    def _generate_root_certificate(self, now: datetime) -> x509.Certificate:
        """Generate the self-signed root certificate of the trust domain."""
        subject = issuer = x509.Name([
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "TrustMesh"),
            x509.NameAttribute(NameOID.COMMON_NAME, f"{self.trust_domain} root"),
        ])
        public_key = ed25519.Ed25519PublicKey.from_public_bytes(
            self._keystore.get_public_key(self._root_key_id)
        )
        builder = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(issuer)
            .public_key(public_key)
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - self.clock_skew)
            .not_valid_after(now + timedelta(days=3650))
            .add_extension(x509.BasicConstraints(ca=True, path_length=1), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    key_cert_sign=True,
                    crl_sign=True,
                    key_encipherment=False,
                    content_commitment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(
                x509.SubjectAlternativeName([
                    x509.UniformResourceIdentifier(f"spiffe://{self.trust_domain}"),
                ]),
                critical=False,
            )
        )
        return self._keystore.sign_certificate(self._root_key_id, builder)

    def _issue_intermediate_certificate(
        self, key_id: str, public_key: bytes, now: datetime
    ) -> x509.Certificate:
        builder = (
            x509.CertificateBuilder()
            .subject_name(x509.Name([
                x509.NameAttribute(NameOID.ORGANIZATION_NAME, "TrustMesh"),
                x509.NameAttribute(NameOID.COMMON_NAME, f"{self.trust_domain} {key_id}"),
            ]))
            .issuer_name(self._root_certificate.subject)
            .public_key(ed25519.Ed25519PublicKey.from_public_bytes(public_key))
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - self.clock_skew)
            .not_valid_after(now + timedelta(days=365))
            .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    key_cert_sign=True,
                    crl_sign=True,
                    key_encipherment=False,
                    content_commitment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
        )
        return self._keystore.sign_certificate(self._root_key_id, builder)

    def _sign_leaf_certificate(
        self,
        signing_key: AuthorityKey,
        subject: str,
        workload_key: WorkloadPublicKey,
        not_before: datetime,
        not_after: datetime,
    ) -> x509.Certificate:
        """Build and sign an X.509-SVID leaf with the SPIFFE ID as URI SAN."""
        issuer = x509.load_pem_x509_certificate(signing_key.certificate_pem.encode()).subject
        builder = (
            x509.CertificateBuilder()
            .subject_name(x509.Name([
                x509.NameAttribute(NameOID.ORGANIZATION_NAME, "TrustMesh"),
            ]))
            .issuer_name(issuer)
            .public_key(workload_key)
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_before)
            .not_valid_after(not_after)
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    key_cert_sign=False,
                    crl_sign=False,
                    key_encipherment=False,
                    content_commitment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(
                x509.SubjectAlternativeName([x509.UniformResourceIdentifier(subject)]),
                critical=False,
            )
        )
        return self._keystore.sign_certificate(signing_key.key_id, builder)

    def _emit(self, event_type: str, **payload: Any) -> None:
        if self._events is not None:
            self._events.publish(event_type, source=f"authority:{self.trust_domain}", **payload)
