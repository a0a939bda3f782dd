"""
Revocation Log

Append-only stream of revocation records. A record invalidates every
document for its subject issued before the revocation timestamp. Records
are never removed individually; they only age out once every document
they could affect has expired on its own.
"""

import json
import logging
import threading
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict, Field

from trustmesh.persistence import write_json_atomic

logger = logging.getLogger(__name__)


class RevocationReason(str, Enum):
    """Reason codes for revocation records."""

    KEY_COMPROMISE = "key_compromise"
    WORKLOAD_COMPROMISE = "workload_compromise"
    ANOMALY_DETECTED = "anomaly_detected"
    DECOMMISSIONED = "decommissioned"
    SUPERSEDED = "superseded"
    UNSPECIFIED = "unspecified"


class RevocationRecord(BaseModel):
    """A single revocation of a subject's outstanding documents.

    Attributes:
        subject: SPIFFE ID whose documents are revoked.
        revoked_at: Documents issued before this instant are invalid.
        reason: Reason code.
        actor: Identity of the operator or automation that revoked.
        note: Free-form explanation persisted with the record.
    """

    model_config = ConfigDict(frozen=True)

    subject: str = Field(..., description="SPIFFE ID of the revoked subject")
    revoked_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    reason: RevocationReason = Field(default=RevocationReason.UNSPECIFIED)
    actor: str = Field(..., description="Who performed the revocation")
    note: str = Field(default="")

    def applies_to(self, subject: str, issued_at: datetime) -> bool:
        return self.subject == subject and issued_at < self.revoked_at


class RevocationLog:
    """Append-only revocation stream with optional file-backed persistence.

    Readers always observe a prefix of the append order: ``records()``
    returns an immutable tuple snapshot, and records are only ever added
    at the end.

    Args:
        storage: "memory" for in-memory only, or a file path for file-backed storage.
        clock: Source of the current time.
        min_retention: Shortest horizon :meth:`age_out` accepts.
    """

    def __init__(
        self,
        storage: str = "memory",
        clock: Optional[Callable[[], datetime]] = None,
        min_retention: timedelta = timedelta(0),
    ) -> None:
        self._records: tuple[RevocationRecord, ...] = ()
        self.min_retention = min_retention
        self._lock = threading.Lock()
        self._storage = storage
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        if storage != "memory" and Path(storage).exists():
            self.load(storage)

    def append(
        self,
        subject: str,
        reason: RevocationReason,
        actor: str,
        note: str = "",
    ) -> RevocationRecord:
        """Append a revocation record for ``subject``.

        Returns:
            The created RevocationRecord.
        """
        if not actor:
            raise ValueError("Revocation requires an actor")
        record = RevocationRecord(
            subject=subject,
            revoked_at=self._clock(),
            reason=reason,
            actor=actor,
            note=note,
        )
        with self._lock:
            self._publish(self._records + (record,))
        logger.info("Revoked %s (%s) by %s", subject, reason.value, actor)
        return record

    def records(self) -> tuple[RevocationRecord, ...]:
        """Snapshot of all records in append order."""
        return self._records

    def since(self, offset: int) -> tuple[RevocationRecord, ...]:
        """Records appended after the first ``offset`` records."""
        return self._records[offset:]

    def is_revoked(self, subject: str, issued_at: datetime) -> bool:
        """True if a document for ``subject`` issued at ``issued_at`` is revoked."""
        return self.find(subject, issued_at) is not None

    def find(self, subject: str, issued_at: datetime) -> Optional[RevocationRecord]:
        for record in self._records:
            if record.applies_to(subject, issued_at):
                return record
        return None

    def age_out(self, horizon: timedelta) -> int:
        """Drop records older than ``horizon``.

        ``horizon`` must be at least the maximum document TTL plus clock
        skew so that no still-valid document loses its revocation.

        Returns:
            Number of records removed.

        Raises:
            ValueError: If ``horizon`` is shorter than ``min_retention``.
        """
        if horizon < self.min_retention:
            raise ValueError(
                f"Revocation horizon {horizon} is shorter than the retention floor {self.min_retention}"
            )
        cutoff = self._clock() - horizon
        with self._lock:
            kept = tuple(r for r in self._records if r.revoked_at >= cutoff)
            removed = len(self._records) - len(kept)
            if removed:
                self._publish(kept)
        return removed

    def save(self, path: str) -> None:
        """Persist the revocation log to a JSON file."""
        write_json_atomic(path, _serialize(self._records))

    def load(self, path: str) -> None:
        """Load the revocation log from a JSON file."""
        raw = json.loads(Path(path).read_text())
        self._records = tuple(RevocationRecord.model_validate(item) for item in raw)

    def require_retention(self, retention: timedelta) -> None:
        """Raise the retention floor to at least ``retention``."""
        with self._lock:
            self.min_retention = max(self.min_retention, retention)

    def _publish(self, records: tuple[RevocationRecord, ...]) -> None:
        """Persist, then swap in ``records``. Caller holds the lock."""
        if self._storage != "memory":
            write_json_atomic(self._storage, _serialize(records))
        self._records = records

    def __len__(self) -> int:
        return len(self._records)


def _serialize(records: tuple[RevocationRecord, ...]) -> list[dict]:
    return [record.model_dump(mode="json") for record in records]
