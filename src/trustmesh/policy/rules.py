"""
Policy Rules

Declarative allow/deny rules loaded from YAML, kept in a versioned,
copy-on-write rule store. Every published change bumps the version and is
broadcast to subscribers so decision caches are invalidated eagerly.
"""

from __future__ import annotations

import dataclasses
import fnmatch
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from trustmesh.events import EVENT_POLICY_CHANGED, EventBus
from trustmesh.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

VersionListener = Callable[[int], None]


class PolicyRule(BaseModel):
    """
    A single allow or deny rule.

    Patterns are shell-style globs. A rule matches when the action, the
    resource, the subject and the subject's trust domain each match one of
    its patterns and every condition holds.

    ``conditions`` maps a dotted path into the evaluation context to an
    expected value: a scalar must be equal, a list lists the accepted
    values. When the context value is itself a list (``scopes``), the
    condition holds if any accepted value is in it.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Unique rule name")
    description: Optional[str] = Field(None)
    effect: Literal["allow", "deny"] = Field(default="deny")
    actions: list[str] = Field(default_factory=lambda: ["*"])
    resources: list[str] = Field(default_factory=lambda: ["*"])
    subjects: list[str] = Field(default_factory=lambda: ["*"])
    trust_domains: list[str] = Field(default_factory=lambda: ["*"])
    conditions: dict[str, Any] = Field(default_factory=dict)

    def matches(
        self,
        subject: str,
        trust_domain: str,
        action: str,
        resource: str,
        context: Optional[dict[str, Any]] = None,
    ) -> bool:
        if not _any_match(action, self.actions):
            return False
        if not _any_match(resource, self.resources):
            return False
        if not _any_match(subject, self.subjects):
            return False
        if not _any_match(trust_domain, self.trust_domains):
            return False
        context = context or {}
        return all(
            _condition_holds(_get_nested(context, path), expected)
            for path, expected in self.conditions.items()
        )


def _any_match(value: str, patterns: Iterable[str]) -> bool:
    return any(fnmatch.fnmatchcase(value, pattern) for pattern in patterns)


def _get_nested(obj: dict[str, Any], path: str) -> Any:
    """Get nested value from dict using dot notation."""
    current: Any = obj
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        else:
            return None
    return current


def _condition_holds(actual: Any, expected: Any) -> bool:
    accepted = expected if isinstance(expected, list) else [expected]
    if isinstance(actual, (list, tuple, set, frozenset)):
        return any(value in actual for value in accepted)
    return actual in accepted


class PolicySet(BaseModel):
    """A named collection of rules, as stored in a policy file."""

    name: str = Field(default="default")
    description: Optional[str] = None
    rules: list[PolicyRule] = Field(default_factory=list)

    @classmethod
    def from_yaml(cls, yaml_content: str) -> "PolicySet":
        """Load rules from YAML.

        Two layouts are accepted: a flat ``rules:`` list of PolicyRule
        fields, and the workload policy layout with ``servicePolicies``
        and ``resourcePolicies`` sections. In the latter, ``service:<name>``
        workload patterns become ``spiffe://*/svc/<name>`` subjects.
        ``networkPolicies`` are enforced at the network layer and ignored.

        Raises:
            ConfigurationError: If the YAML or a rule is invalid.
        """
        try:
            data = yaml.safe_load(yaml_content) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid policy YAML: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError("Policy document must be a mapping")

        try:
            if "rules" in data:
                return cls.model_validate(data)
            return cls(
                name=data.get("kind", "default"),
                description=data.get("apiVersion"),
                rules=_workload_policy_rules(data),
            )
        except (ValidationError, KeyError, TypeError) as e:
            raise ConfigurationError(f"Invalid policy rule: {e}") from e

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.model_dump(exclude_none=True), sort_keys=False)


def _subject_pattern(workload: str) -> str:
    kind, _, name = workload.partition(":")
    if kind == "service" and name:
        return f"spiffe://*/svc/{name}"
    return workload


def _workload_policy_rules(data: dict[str, Any]) -> list[PolicyRule]:
    rules = []
    for policy in data.get("servicePolicies") or []:
        for index, rule in enumerate(policy.get("rules") or []):
            destination = rule["destination"]
            rules.append(
                PolicyRule(
                    name=f"{policy['name']}#{index}",
                    description=policy.get("description"),
                    effect=rule.get("action", "deny"),
                    subjects=[_subject_pattern(rule.get("source", "*"))],
                    actions=rule.get("methods") or ["*"],
                    resources=[f"{destination}{path}" for path in rule.get("paths") or [""]],
                )
            )
    for policy in data.get("resourcePolicies") or []:
        for index, rule in enumerate(policy.get("rules") or []):
            rules.append(
                PolicyRule(
                    name=f"{policy['name']}#{index}",
                    description=policy.get("description"),
                    effect=rule.get("action", "deny"),
                    subjects=[_subject_pattern(rule.get("workload", "*"))],
                    actions=rule.get("operations") or ["*"],
                    resources=[rule["resource"]],
                )
            )
    if data.get("networkPolicies"):
        logger.debug("Ignoring %d network policies", len(data["networkPolicies"]))
    return rules


class PolicyChange(BaseModel):
    """Audit record of one published rule change."""

    model_config = ConfigDict(frozen=True)

    version: int
    operation: Literal["add", "remove", "replace"]
    target: Optional[str] = None
    actor: str
    reason: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


@dataclasses.dataclass(frozen=True)
class RuleSnapshot:
    """Immutable rule set at one version."""

    version: int = 0
    rules: tuple[PolicyRule, ...] = ()
    updated_at: Optional[datetime] = None
    change: Optional[PolicyChange] = None


class RuleStore:
    """
    Versioned, copy-on-write rule set.

    Writers publish a new snapshot under a lock and then broadcast the new
    version to every subscriber. Readers take one snapshot per evaluation.
    """

    def __init__(
        self,
        rules: Iterable[PolicyRule] = (),
        events: Optional[EventBus] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._events = events
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self._listeners: list[VersionListener] = []
        self._history: tuple[PolicyChange, ...] = ()
        initial = tuple(rules)
        _check_unique(initial)
        self._snapshot = RuleSnapshot(version=1, rules=initial, updated_at=self._clock())

    @property
    def snapshot(self) -> RuleSnapshot:
        return self._snapshot

    @property
    def version(self) -> int:
        return self._snapshot.version

    def rules(self) -> tuple[PolicyRule, ...]:
        return self._snapshot.rules

    def history(self) -> tuple[PolicyChange, ...]:
        """Audit trail of every published change, oldest first."""
        return self._history

    def subscribe(self, listener: VersionListener) -> None:
        """Register a callback invoked with each new version."""
        self._listeners.append(listener)

    def unsubscribe(self, listener: VersionListener) -> None:
        self._listeners = [f for f in self._listeners if f != listener]

    def add(self, rule: PolicyRule, actor: str, reason: str) -> int:
        """Add a rule. Returns the new version."""
        with self._lock:
            rules = self._snapshot.rules + (rule,)
            _check_unique(rules)
            return self._publish(rules, "add", rule.name, actor, reason)

    def remove(self, name: str, actor: str, reason: str) -> int:
        """Remove a rule by name. Returns the new version."""
        with self._lock:
            rules = tuple(r for r in self._snapshot.rules if r.name != name)
            if len(rules) == len(self._snapshot.rules):
                raise KeyError(f"No policy rule named {name!r}")
            return self._publish(rules, "remove", name, actor, reason)

    def replace(self, rules: Iterable[PolicyRule], actor: str, reason: str) -> int:
        """Replace the whole rule set. Returns the new version."""
        new_rules = tuple(rules)
        _check_unique(new_rules)
        with self._lock:
            return self._publish(new_rules, "replace", None, actor, reason)

    def load_yaml(self, yaml_content: str, actor: str, reason: str) -> int:
        return self.replace(PolicySet.from_yaml(yaml_content).rules, actor, reason)

    def load_file(self, path: str, actor: str, reason: str) -> int:
        policy_path = Path(path)
        if not policy_path.exists():
            raise ConfigurationError(f"Policy file not found: {policy_path}")
        return self.load_yaml(policy_path.read_text(), actor, reason)

    def _publish(
        self,
        rules: tuple[PolicyRule, ...],
        operation: Literal["add", "remove", "replace"],
        target: Optional[str],
        actor: str,
        reason: str,
    ) -> int:
        """Swap in a new snapshot and record who changed it. Caller holds the writer lock."""
        if not actor or not reason:
            raise ValueError("Policy changes require an actor and a reason")
        version = self._snapshot.version + 1
        now = self._clock()
        change = PolicyChange(
            version=version,
            operation=operation,
            target=target,
            actor=actor,
            reason=reason,
            timestamp=now,
        )
        self._snapshot = RuleSnapshot(version=version, rules=rules, updated_at=now, change=change)
        self._history = self._history + (change,)
        summary = f"{operation} {target}" if target else operation
        logger.info("Policy version %d (%s) by %s: %s", version, summary, actor, reason)

        for listener in list(self._listeners):
            listener(version)
        if self._events is not None:
            self._events.publish(
                EVENT_POLICY_CHANGED,
                source="policy",
                version=version,
                change=summary,
                actor=actor,
                reason=reason,
            )
        return version


def _check_unique(rules: Iterable[PolicyRule]) -> None:
    seen: set[str] = set()
    for rule in rules:
        if rule.name in seen:
            raise ConfigurationError(f"Duplicate policy rule name: {rule.name}")
        seen.add(rule.name)
