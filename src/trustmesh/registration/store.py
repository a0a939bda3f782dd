"""
Registration Store

Read-mostly mapping from selectors to identity templates.

Writers build a new immutable :class:`RegistrationSnapshot` and publish it
atomically; readers take one snapshot per request and never observe a
half-written registration state.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Literal, Optional, Union

from pydantic import BaseModel, Field

from trustmesh.attestation.selectors import Selector, SelectorSet
from trustmesh.events import EVENT_REGISTRATION_CHANGED, EventBus
from trustmesh.exceptions import RegistrationConflict, RegistrationError
from trustmesh.persistence import write_json_atomic
from trustmesh.registration.entry import MatchResult, MatchStatus, RegistrationEntry

logger = logging.getLogger(__name__)


class RegistrationChange(BaseModel):
    """Audit record of one administrative mutation."""

    revision: int
    operation: Literal["create", "update", "delete"]
    entry_id: str
    actor: str
    reason: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


@dataclasses.dataclass(frozen=True)
class RegistrationSnapshot:
    """Point-in-time registration state."""

    revision: int = 0
    entries: tuple[RegistrationEntry, ...] = ()

    def get(self, entry_id: str) -> Optional[RegistrationEntry]:
        for entry in self.entries:
            if entry.entry_id == entry_id:
                return entry
        return None

    def match(self, presented: SelectorSet) -> MatchResult:
        """Match presented selectors against every entry in this snapshot.

        Entries whose selectors are a subset of ``presented`` and whose
        template renders are candidates. Candidates implying different
        subjects make the result AMBIGUOUS; there is no first-match rule.
        """
        candidates: dict[str, str] = {}
        by_subject: dict[str, list[RegistrationEntry]] = {}
        for entry in self.entries:
            if not entry.matches(presented):
                continue
            subject = entry.render_subject(presented)
            if subject is None:
                continue
            candidates[entry.entry_id] = subject
            by_subject.setdefault(subject, []).append(entry)

        if not by_subject:
            return MatchResult(status=MatchStatus.NO_MATCH, revision=self.revision)
        if len(by_subject) > 1:
            return MatchResult(
                status=MatchStatus.AMBIGUOUS,
                revision=self.revision,
                candidates=candidates,
            )

        subject, entries = next(iter(by_subject.items()))
        ttls = [e.ttl_seconds for e in entries if e.ttl_seconds is not None]
        return MatchResult(
            status=MatchStatus.MATCHED,
            revision=self.revision,
            subject=subject,
            entry_ids=sorted(e.entry_id for e in entries),
            scopes=sorted({scope for e in entries for scope in e.scopes}),
            ttl_seconds=min(ttls) if ttls else None,
            candidates=candidates,
        )


class RegistrationStore:
    """
    Copy-on-write registration store for one trust domain.

    Every mutation requires an actor and a reason, bumps the revision and
    is appended to the audit history.

    Args:
        trust_domain: Entries must render SPIFFE IDs in this domain.
        storage: "memory" for in-memory only, or a JSON file path.
        events: Observability sink for ``registration.changed``.
        clock: Source of the current time.
    """

    def __init__(
        self,
        trust_domain: str,
        storage: str = "memory",
        events: Optional[EventBus] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.trust_domain = trust_domain
        self._storage = storage
        self._events = events
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self._snapshot = RegistrationSnapshot()
        self._history: tuple[RegistrationChange, ...] = ()
        if storage != "memory" and Path(storage).exists():
            self.load(storage)

    @property
    def snapshot(self) -> RegistrationSnapshot:
        return self._snapshot

    @property
    def revision(self) -> int:
        return self._snapshot.revision

    def entries(self) -> tuple[RegistrationEntry, ...]:
        return self._snapshot.entries

    def get(self, entry_id: str) -> Optional[RegistrationEntry]:
        return self._snapshot.get(entry_id)

    def history(self) -> tuple[RegistrationChange, ...]:
        return self._history

    def match(self, presented: SelectorSet) -> MatchResult:
        """Match against the latest committed snapshot."""
        return self._snapshot.match(presented)

    # ------------------------------------------------------------------
    # Administrative mutations
    # ------------------------------------------------------------------

    def create(
        self,
        spiffe_id: str,
        selectors: Iterable[Union[str, Selector]],
        actor: str,
        reason: str,
        scopes: Iterable[str] = (),
        ttl_seconds: Optional[int] = None,
        entry_id: Optional[str] = None,
    ) -> RegistrationEntry:
        """Register a new entry.

        Raises:
            RegistrationError: If the template is outside this trust domain.
            RegistrationConflict: If the entry ID exists, or an entry with the
                same selectors implies a different subject.
        """
        self._require_audit(actor, reason)
        now = self._clock()
        fields: dict[str, Any] = {
            "spiffe_id": spiffe_id,
            "selectors": list(selectors),
            "scopes": sorted(set(scopes)),
            "ttl_seconds": ttl_seconds,
            "created_at": now,
            "updated_at": now,
            "actor": actor,
            "reason": reason,
        }
        if entry_id is not None:
            fields["entry_id"] = entry_id
        entry = self._build(fields)

        with self._lock:
            snapshot = self._snapshot
            if snapshot.get(entry.entry_id) is not None:
                raise RegistrationConflict(f"Entry {entry.entry_id} already exists")
            self._check_overlap(snapshot.entries, entry)
            self._commit(snapshot.entries + (entry,), "create", entry, actor, reason)
        return entry

    def update(
        self,
        entry_id: str,
        actor: str,
        reason: str,
        expected_revision: Optional[int] = None,
        **changes: Any,
    ) -> RegistrationEntry:
        """Replace fields of an existing entry.

        Args:
            entry_id: Entry to update.
            actor: Who is making the change.
            reason: Why the change is made.
            expected_revision: If given, the entry's current revision must
                match (optimistic concurrency).
            **changes: ``spiffe_id``, ``selectors``, ``scopes`` or ``ttl_seconds``.

        Raises:
            RegistrationError: If the entry does not exist or a field is unknown.
            RegistrationConflict: On a revision mismatch or overlapping selectors.
        """
        self._require_audit(actor, reason)
        unknown = set(changes) - {"spiffe_id", "selectors", "scopes", "ttl_seconds"}
        if unknown:
            raise RegistrationError(f"Unknown entry fields: {', '.join(sorted(unknown))}")

        with self._lock:
            snapshot = self._snapshot
            current = snapshot.get(entry_id)
            if current is None:
                raise RegistrationError(f"Entry {entry_id} does not exist")
            if expected_revision is not None and current.revision != expected_revision:
                raise RegistrationConflict(
                    f"Entry {entry_id} is at revision {current.revision}, expected {expected_revision}"
                )

            fields = current.model_dump()
            fields.update(changes)
            if "selectors" in changes:
                fields["selectors"] = list(changes["selectors"])
            if "scopes" in changes:
                fields["scopes"] = sorted(set(changes["scopes"]))
            fields.update(
                revision=current.revision + 1,
                updated_at=self._clock(),
                actor=actor,
                reason=reason,
            )
            updated = self._build(fields)

            others = tuple(e for e in snapshot.entries if e.entry_id != entry_id)
            self._check_overlap(others, updated)
            entries = tuple(updated if e.entry_id == entry_id else e for e in snapshot.entries)
            self._commit(entries, "update", updated, actor, reason)
        return updated

    def delete(self, entry_id: str, actor: str, reason: str) -> RegistrationEntry:
        """Remove an entry.

        Raises:
            RegistrationError: If the entry does not exist.
        """
        self._require_audit(actor, reason)
        with self._lock:
            snapshot = self._snapshot
            current = snapshot.get(entry_id)
            if current is None:
                raise RegistrationError(f"Entry {entry_id} does not exist")
            entries = tuple(e for e in snapshot.entries if e.entry_id != entry_id)
            self._commit(entries, "delete", current, actor, reason)
        return current

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, path: str) -> None:
        """Persist entries, revision and audit history to a JSON file."""
        write_json_atomic(path, self._serialize(self._snapshot, self._history))

    def load(self, path: str) -> None:
        """Load entries from a JSON file written by :meth:`save`."""
        raw = json.loads(Path(path).read_text())
        if raw.get("trust_domain", self.trust_domain) != self.trust_domain:
            raise RegistrationError(
                f"{path} holds entries for {raw['trust_domain']}, not {self.trust_domain}"
            )
        entries = tuple(RegistrationEntry.model_validate(item) for item in raw.get("entries", []))
        history = tuple(RegistrationChange.model_validate(item) for item in raw.get("history", []))
        with self._lock:
            self._snapshot = RegistrationSnapshot(revision=raw.get("revision", 0), entries=entries)
            self._history = history
        logger.info("Loaded %d registration entries from %s", len(entries), path)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _serialize(
        self, snapshot: RegistrationSnapshot, history: tuple[RegistrationChange, ...]
    ) -> dict[str, Any]:
        return {
            "trust_domain": self.trust_domain,
            "revision": snapshot.revision,
            "entries": [entry.model_dump(mode="json") for entry in snapshot.entries],
            "history": [change.model_dump(mode="json") for change in history],
        }

    @staticmethod
    def _require_audit(actor: str, reason: str) -> None:
        if not actor or not reason:
            raise RegistrationError("Registration changes require an actor and a reason")

    def _build(self, fields: dict[str, Any]) -> RegistrationEntry:
        try:
            entry = RegistrationEntry.model_validate(fields)
        except ValueError as e:
            raise RegistrationError(f"Invalid registration entry: {e}") from e
        if entry.trust_domain != self.trust_domain:
            raise RegistrationError(
                f"Entry {entry.spiffe_id} is outside trust domain {self.trust_domain}"
            )
        return entry

    @staticmethod
    def _check_overlap(entries: Iterable[RegistrationEntry], candidate: RegistrationEntry) -> None:
        for entry in entries:
            if entry.selectors == candidate.selectors and entry.spiffe_id != candidate.spiffe_id:
                raise RegistrationConflict(
                    f"Entry {entry.entry_id} has the same selectors but maps to {entry.spiffe_id}"
                )

    def _commit(
        self,
        entries: tuple[RegistrationEntry, ...],
        operation: Literal["create", "update", "delete"],
        entry: RegistrationEntry,
        actor: str,
        reason: str,
    ) -> None:
        """Persist, then publish a new snapshot. Caller holds the writer lock.

        If persisting fails the published state is left untouched.
        """
        revision = self._snapshot.revision + 1
        change = RegistrationChange(
            revision=revision,
            operation=operation,
            entry_id=entry.entry_id,
            actor=actor,
            reason=reason,
            timestamp=self._clock(),
        )
        snapshot = RegistrationSnapshot(revision=revision, entries=entries)
        history = self._history + (change,)
        if self._storage != "memory":
            write_json_atomic(self._storage, self._serialize(snapshot, history))
        self._snapshot = snapshot
        self._history = history

        logger.info(
            "Registration %s %s by %s (%s), revision %d",
            operation,
            entry.entry_id,
            actor,
            reason,
            revision,
        )
        if self._events is not None:
            self._events.publish(
                EVENT_REGISTRATION_CHANGED,
                source=f"registration:{self.trust_domain}",
                operation=operation,
                entry_id=entry.entry_id,
                spiffe_id=entry.spiffe_id,
                revision=revision,
                actor=actor,
                reason=reason,
            )
