"""
Registration Entries

A registration entry maps a set of selectors to a SPIFFE ID template and
the scopes granted to workloads that present those selectors.
"""

import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from trustmesh.attestation.selectors import Selector, SelectorSet, lookup, selector_set
from trustmesh.exceptions import AmbiguousRegistration, NoRegistration
from trustmesh.identity.spiffe import SpiffeID

_PLACEHOLDER = re.compile(r"\{([a-zA-Z0-9_\-]+:[a-zA-Z0-9_\-.]+)\}")


class RegistrationEntry(BaseModel):
    """
    Maps selectors to an identity template.

    ``spiffe_id`` may reference selector values, e.g.
    ``spiffe://example.org/ns/{k8s:ns}/sa/{k8s:sa}``. The entry matches a
    workload when every one of its selectors is among the presented ones.
    """

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: f"entry-{uuid.uuid4().hex[:12]}")
    spiffe_id: str = Field(..., description="SPIFFE ID or template")
    selectors: frozenset[Selector] = Field(..., min_length=1)
    scopes: list[str] = Field(default_factory=list)
    ttl_seconds: Optional[int] = Field(None, ge=1, description="Requested TTL override")

    revision: int = Field(default=1, ge=1)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    actor: str = Field(..., description="Who made the last change")
    reason: str = Field(..., description="Why the last change was made")

    @field_validator("selectors", mode="before")
    @classmethod
    def _parse_selectors(cls, value: Any) -> Any:
        if isinstance(value, (list, tuple, set, frozenset)):
            return selector_set(
                Selector.model_validate(item) if isinstance(item, dict) else item
                for item in value
            )
        return value

    @field_validator("spiffe_id")
    @classmethod
    def _check_template(cls, value: str) -> str:
        # Render every placeholder with a dummy value to validate the shape.
        SpiffeID.parse(_PLACEHOLDER.sub("x", value))
        if _PLACEHOLDER.search(value.split("/", 3)[2]):
            raise ValueError("The trust domain of a SPIFFE ID template must be literal")
        return value

    @field_serializer("selectors")
    def _serialize_selectors(self, selectors: frozenset[Selector]) -> list[str]:
        return sorted(str(s) for s in selectors)

    @property
    def trust_domain(self) -> str:
        return self.spiffe_id.split("/", 3)[2]

    @property
    def placeholders(self) -> list[str]:
        return _PLACEHOLDER.findall(self.spiffe_id)

    def matches(self, presented: SelectorSet) -> bool:
        """Subset containment: extra presented selectors are ignored."""
        return self.selectors <= presented

    def render_subject(self, presented: SelectorSet) -> Optional[str]:
        """Fill template placeholders from the presented selectors.

        Returns:
            The concrete SPIFFE ID, or None if a placeholder cannot be
            resolved to exactly one value or the result is not a valid ID.
        """
        unresolved = False

        def substitute(match: "re.Match[str]") -> str:
            nonlocal unresolved
            value = lookup(presented, match.group(1))
            if value is None:
                unresolved = True
                return ""
            return value

        rendered = _PLACEHOLDER.sub(substitute, self.spiffe_id)
        if unresolved:
            return None
        try:
            return str(SpiffeID.parse(rendered))
        except ValueError:
            return None


class MatchStatus(str, Enum):
    MATCHED = "matched"
    NO_MATCH = "no_match"
    AMBIGUOUS = "ambiguous"


class MatchResult(BaseModel):
    """Outcome of matching a SelectorSet against a registration snapshot.

    For ``MATCHED`` results, entries that imply the same subject have been
    merged: ``scopes`` is the union and ``ttl_seconds`` the smallest
    override among them.
    """

    model_config = ConfigDict(frozen=True)

    status: MatchStatus
    revision: int
    subject: Optional[str] = None
    entry_ids: list[str] = Field(default_factory=list)
    scopes: list[str] = Field(default_factory=list)
    ttl_seconds: Optional[int] = None
    candidates: dict[str, str] = Field(
        default_factory=dict, description="entry_id -> rendered subject for ambiguous matches"
    )

    @property
    def matched(self) -> bool:
        return self.status == MatchStatus.MATCHED

    def raise_for_status(self) -> "MatchResult":
        """Raise the registration error that corresponds to a failed match."""
        if self.status == MatchStatus.NO_MATCH:
            raise NoRegistration(f"No registration entry matches (revision {self.revision})")
        if self.status == MatchStatus.AMBIGUOUS:
            subjects = ", ".join(sorted(set(self.candidates.values())))
            raise AmbiguousRegistration(
                f"Entries {sorted(self.candidates)} imply different subjects: {subjects}"
            )
        return self
