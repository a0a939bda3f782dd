"""
Selectors

A selector is an atomic fact about a node or workload, written
``type:value`` (for example ``k8s:ns:payments`` or ``unix:uid:1000``).
Attestation yields a set of selectors; registration entries match on
subset containment.
"""

import hashlib
from typing import Iterable, Optional, Union

from pydantic import BaseModel, ConfigDict


class Selector(BaseModel):
    """A single ``type:value`` selector."""

    model_config = ConfigDict(frozen=True)

    type: str
    value: str

    @classmethod
    def parse(cls, text: str) -> "Selector":
        """Parse ``type:value``; the value may itself contain colons."""
        selector_type, sep, value = text.partition(":")
        if not sep or not selector_type or not value:
            raise ValueError(f"Invalid selector: {text!r}")
        return cls(type=selector_type, value=value)

    def __str__(self) -> str:
        return f"{self.type}:{self.value}"


SelectorSet = frozenset[Selector]


def selector_set(items: Iterable[Union[str, Selector]]) -> SelectorSet:
    """Build a SelectorSet from strings or Selector instances."""
    return frozenset(
        item if isinstance(item, Selector) else Selector.parse(item) for item in items
    )


def fingerprint(selectors: Iterable[Selector]) -> str:
    """SHA-256 over the sorted selectors; independent of presentation order."""
    canonical = "\n".join(sorted(str(s) for s in selectors))
    return hashlib.sha256(canonical.encode()).hexdigest()


def lookup(selectors: Iterable[Selector], key: str) -> Optional[str]:
    """Resolve a ``type:name`` key to the single value presented for it.

    ``lookup(selectors, "k8s:ns")`` returns ``"payments"`` for
    ``k8s:ns:payments``. Returns None when the key is absent or presented
    with more than one value.
    """
    prefix = key + ":"
    values = {str(s)[len(prefix):] for s in selectors if str(s).startswith(prefix)}
    if len(values) != 1:
        return None
    return values.pop()
