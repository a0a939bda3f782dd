"""Tests for policy rules and the policy decision engine."""

import asyncio

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from helpers import FakeClock, workload_public_key
from trustmesh.config import PolicyConfig
from trustmesh.exceptions import ConfigurationError, PolicyDenied
from trustmesh.federation import FederationManager
from trustmesh.identity import KeyAuthority, RevocationReason
from trustmesh.policy import (
    NO_MATCHING_POLICY,
    PolicyDecisionEngine,
    PolicyRule,
    PolicySet,
    RuleStore,
)
from trustmesh.verification import DocumentVerifier

FRONTEND = "spiffe://example.org/svc/frontend"

RULES = [
    PolicyRule(
        name="frontend-reads-orders",
        effect="allow",
        subjects=["spiffe://example.org/svc/frontend"],
        actions=["GET"],
        resources=["orders:*"],
    ),
    PolicyRule(
        name="nobody-reads-secrets",
        effect="deny",
        resources=["orders:secrets"],
    ),
    PolicyRule(
        name="writers-need-scope",
        effect="allow",
        actions=["POST"],
        resources=["orders:*"],
        conditions={"scopes": ["orders:write"]},
    ),
]

WORKLOAD_POLICIES = """
apiVersion: trustmesh/v1
kind: WorkloadPolicy
servicePolicies:
  - name: frontend-to-api
    description: Frontend may call the orders API
    rules:
      - source: service:frontend
        destination: "api:orders"
        methods: [GET, POST]
        paths: ["/v1/*"]
        action: allow
resourcePolicies:
  - name: no-ledger-writes
    rules:
      - workload: "*"
        resource: "db:ledger"
        operations: [write]
        action: deny
networkPolicies:
  - name: default-deny
"""


def _issue(authority, subject=FRONTEND, scopes=()):
    return asyncio.run(
        authority.issue(subject, authority.trust_domain, 600, workload_public_key(), scopes=scopes)
    )


@pytest.fixture
def rules(clock, events):
    return RuleStore(RULES, events=events, clock=clock)


@pytest.fixture
def engine(authority, rules, events, clock):
    verifier = DocumentVerifier("example.org", authority=authority, clock=clock)
    return PolicyDecisionEngine("example.org", rules, verifier, events=events)


@pytest.fixture
def document(authority):
    return _issue(authority)


class TestPolicyRule:
    def test_defaults_match_everything(self):
        rule = PolicyRule(name="catch-all")
        assert rule.effect == "deny"
        assert rule.matches(FRONTEND, "example.org", "GET", "anything")

    def test_globs(self):
        rule = PolicyRule(name="r", subjects=["spiffe://example.org/svc/*"], resources=["db:*"])
        assert rule.matches(FRONTEND, "example.org", "GET", "db:main")
        assert not rule.matches(FRONTEND, "example.org", "GET", "cache:main")
        assert not rule.matches("spiffe://example.org/ns/web", "example.org", "GET", "db:main")

    def test_trust_domain_pattern(self):
        rule = PolicyRule(name="r", trust_domains=["partner.org"])
        assert not rule.matches(FRONTEND, "example.org", "GET", "db:main")

    def test_nested_conditions(self):
        rule = PolicyRule(name="r", conditions={"request.region": ["eu", "us"]})
        assert rule.matches(FRONTEND, "example.org", "GET", "x", {"request": {"region": "eu"}})
        assert not rule.matches(FRONTEND, "example.org", "GET", "x", {"request": {"region": "ap"}})
        assert not rule.matches(FRONTEND, "example.org", "GET", "x", {})

    def test_list_context_condition(self):
        rule = PolicyRule(name="r", conditions={"scopes": "orders:write"})
        assert rule.matches(FRONTEND, "example.org", "POST", "x", {"scopes": ["orders:write"]})
        assert not rule.matches(FRONTEND, "example.org", "POST", "x", {"scopes": ["orders:read"]})


class TestPolicyLoading:
    def test_flat_rules_layout(self):
        policy = PolicySet.from_yaml(
            """
name: orders
rules:
  - name: allow-reads
    effect: allow
    actions: [GET]
    resources: ["orders:*"]
"""
        )
        assert policy.name == "orders"
        assert policy.rules[0].effect == "allow"

    def test_workload_policy_layout(self):
        policy = PolicySet.from_yaml(WORKLOAD_POLICIES)
        by_name = {rule.name: rule for rule in policy.rules}

        service = by_name["frontend-to-api#0"]
        assert service.subjects == ["spiffe://*/svc/frontend"]
        assert service.actions == ["GET", "POST"]
        assert service.resources == ["api:orders/v1/*"]
        assert service.effect == "allow"

        resource = by_name["no-ledger-writes#0"]
        assert resource.effect == "deny"
        assert resource.resources == ["db:ledger"]
        assert len(policy.rules) == 2

    def test_yaml_round_trip(self):
        policy = PolicySet(name="orders", rules=RULES)
        loaded = PolicySet.from_yaml(policy.to_yaml())
        assert [r.model_dump() for r in loaded.rules] == [r.model_dump() for r in RULES]

    @pytest.mark.parametrize(
        "content",
        ["rules: [", "- just\n- a list", "rules:\n  - effect: allow"],
    )
    def test_invalid_policy(self, content):
        with pytest.raises(ConfigurationError):
            PolicySet.from_yaml(content)


class TestRuleStore:
    def test_initial_version(self, rules):
        assert rules.version == 1
        assert len(rules.rules()) == 3

    def test_mutations_bump_version_and_notify(self, rules, recorded):
        versions = []
        rules.subscribe(versions.append)

        rules.add(PolicyRule(name="extra"), actor="ops", reason="test")
        rules.remove("extra", actor="ops", reason="test")

        assert rules.version == 3
        assert versions == [2, 3]
        changed = [e.payload["version"] for e in recorded if e.event_type == "policy.changed"]
        assert changed == [2, 3]

    def test_history_records_actor_and_reason(self, rules, clock):
        rules.add(PolicyRule(name="extra"), actor="alice", reason="new tenant")
        clock.advance(5)
        rules.remove("extra", actor="bob", reason="tenant left")
        rules.replace(RULES, actor="carol", reason="baseline reset")

        history = rules.history()
        assert [(c.version, c.operation, c.target) for c in history] == [
            (2, "add", "extra"),
            (3, "remove", "extra"),
            (4, "replace", None),
        ]
        assert [(c.actor, c.reason) for c in history] == [
            ("alice", "new tenant"),
            ("bob", "tenant left"),
            ("carol", "baseline reset"),
        ]
        assert history[1].timestamp == clock()
        assert rules.snapshot.change == history[-1]

    def test_rejected_change_is_not_recorded(self, rules):
        with pytest.raises(ValueError):
            rules.add(PolicyRule(name="extra"), actor="", reason="no actor")
        assert rules.history() == ()
        assert rules.version == 1

    def test_unsubscribe(self, rules):
        versions = []
        rules.subscribe(versions.append)
        rules.unsubscribe(versions.append)
        rules.add(PolicyRule(name="extra"), actor="ops", reason="test")
        assert versions == []

    def test_duplicate_names_rejected(self, rules):
        with pytest.raises(ConfigurationError):
            rules.add(PolicyRule(name="nobody-reads-secrets"), actor="ops", reason="test")
        assert rules.version == 1

    def test_remove_unknown(self, rules):
        with pytest.raises(KeyError):
            rules.remove("missing", actor="ops", reason="test")

    def test_changes_require_actor(self, rules):
        with pytest.raises(ValueError):
            rules.replace([], actor="", reason="test")

    def test_load_file(self, rules, tmp_path):
        path = tmp_path / "policies.yaml"
        path.write_text(WORKLOAD_POLICIES)
        rules.load_file(str(path), actor="ops", reason="deploy")
        assert {r.name for r in rules.rules()} == {"frontend-to-api#0", "no-ledger-writes#0"}

    def test_load_missing_file(self, rules, tmp_path):
        with pytest.raises(ConfigurationError):
            rules.load_file(str(tmp_path / "missing.yaml"), actor="ops", reason="deploy")


class TestDecisions:
    def test_allow(self, engine, document):
        decision = engine.evaluate(document, "GET", "orders:42")
        assert decision.allowed
        assert decision.matched_rules == ["frontend-reads-orders"]
        assert decision.policy_version == 1

    def test_deny_wins_over_allow(self, engine, document):
        decision = engine.evaluate(document, "GET", "orders:secrets")
        assert not decision.allowed
        assert decision.matched_rules == ["nobody-reads-secrets"]

    def test_default_deny(self, engine, document):
        decision = engine.evaluate(document, "DELETE", "orders:42")
        assert not decision.allowed
        assert decision.reason == NO_MATCHING_POLICY

    def test_scope_condition_uses_document_scopes(self, engine, authority):
        writer = _issue(authority, scopes=["orders:write"])
        reader = _issue(authority, scopes=["orders:read"])
        assert engine.evaluate(writer, "POST", "orders:42").allowed
        assert not engine.evaluate(reader, "POST", "orders:42").allowed

    def test_invalid_document_denied(self, engine, document):
        tampered = document.model_copy(update={"scopes": ["orders:write"]})
        decision = engine.evaluate(tampered, "POST", "orders:42")
        assert not decision.allowed
        assert "signature does not verify" in decision.reason

    def test_expired_document_denied(self, engine, document, clock):
        clock.advance(3600)
        assert "expired" in engine.evaluate(document, "GET", "orders:42").reason

    def test_raise_for_denial(self, engine, document):
        engine.evaluate(document, "GET", "orders:42").raise_for_denial()
        with pytest.raises(PolicyDenied):
            engine.evaluate(document, "GET", "orders:secrets").raise_for_denial()

    def test_decisions_emit_events(self, engine, document, recorded):
        engine.evaluate(document, "GET", "orders:42")
        evaluated = [e for e in recorded if e.event_type == "policy.evaluated"]
        assert evaluated[0].payload["allowed"] is True


class TestDecisionCache:
    def test_repeat_evaluation_is_cached(self, engine, document):
        first = engine.evaluate(document, "GET", "orders:42")
        second = engine.evaluate(document, "GET", "orders:42")
        assert not first.cached
        assert second.cached
        assert second.allowed == first.allowed
        assert engine.cache_size == 1

    def test_version_bump_invalidates_cache(self, engine, rules, document):
        assert engine.evaluate(document, "GET", "orders:42").allowed

        rules.add(PolicyRule(name="lockdown", resources=["orders:*"]), actor="secops", reason="incident")

        assert engine.cache_size == 0
        decision = engine.evaluate(document, "GET", "orders:42")
        assert not decision.allowed
        assert not decision.cached
        assert decision.policy_version == 2

    def test_context_is_part_of_cache_key(self, engine, document):
        engine.evaluate(document, "GET", "orders:42", context={"request": {"id": 1}})
        decision = engine.evaluate(document, "GET", "orders:42", context={"request": {"id": 2}})
        assert not decision.cached

    def test_revocation_applies_despite_cached_allow(self, engine, authority, document, clock):
        assert engine.evaluate(document, "GET", "orders:42").allowed
        clock.advance(1)
        authority.revoke(FRONTEND, RevocationReason.WORKLOAD_COMPROMISE, actor="secops")
        assert not engine.evaluate(document, "GET", "orders:42").allowed

    def test_cache_disabled(self, authority, rules, clock, document):
        verifier = DocumentVerifier("example.org", authority=authority, clock=clock)
        engine = PolicyDecisionEngine(
            "example.org", rules, verifier, config=PolicyConfig(cache_ttl_seconds=0)
        )
        engine.evaluate(document, "GET", "orders:42")
        assert not engine.evaluate(document, "GET", "orders:42").cached
        assert engine.cache_size == 0

    def test_cache_is_bounded(self, authority, rules, clock, document):
        verifier = DocumentVerifier("example.org", authority=authority, clock=clock)
        engine = PolicyDecisionEngine(
            "example.org", rules, verifier, config=PolicyConfig(max_cache_entries=3)
        )
        for request_id in range(10):
            engine.evaluate(document, "GET", "orders:42", context={"request_id": request_id})
        assert engine.cache_size == 3

    def test_least_recently_used_entry_is_evicted(self, authority, rules, clock, document):
        verifier = DocumentVerifier("example.org", authority=authority, clock=clock)
        engine = PolicyDecisionEngine(
            "example.org", rules, verifier, config=PolicyConfig(max_cache_entries=2)
        )
        engine.evaluate(document, "GET", "orders:1")
        engine.evaluate(document, "GET", "orders:2")
        assert engine.evaluate(document, "GET", "orders:1").cached
        engine.evaluate(document, "GET", "orders:3")

        assert engine.evaluate(document, "GET", "orders:1").cached
        assert not engine.evaluate(document, "GET", "orders:2").cached


class TestCrossDomain:
    @pytest.fixture
    def partner(self, clock):
        return KeyAuthority("partner.org", clock=clock)

    @pytest.fixture
    def federated_engine(self, authority, partner, rules, clock):
        federation = FederationManager(authority, clock=clock)
        federation.configure_peer("partner.org")
        verifier = DocumentVerifier(
            "example.org", authority=authority, federation=federation, clock=clock
        )
        rules.add(
            PolicyRule(name="partner-billing", effect="allow", trust_domains=["partner.org"]),
            actor="ops",
            reason="partner access",
        )
        engine = PolicyDecisionEngine("example.org", rules, verifier, federation=federation)
        return engine, federation

    def test_pending_peer_denied(self, federated_engine, partner):
        engine, _ = federated_engine
        document = _issue(partner, subject="spiffe://partner.org/svc/billing")
        decision = engine.evaluate(document, "GET", "invoices:1")
        assert not decision.allowed
        assert "no active federation" in decision.reason

    def test_active_peer_allowed(self, federated_engine, partner):
        engine, federation = federated_engine
        federation.confirm_bootstrap("partner.org", actor="ops", reason="onboarding")
        federation.import_bundle("partner.org", partner.bundle).raise_for_rejection()

        document = _issue(partner, subject="spiffe://partner.org/svc/billing")
        assert engine.evaluate(document, "GET", "invoices:1").allowed

    def test_unconfigured_domain_denied(self, engine, clock):
        stranger = KeyAuthority("stranger.org", clock=clock)
        document = _issue(stranger, subject="spiffe://stranger.org/svc/x")
        assert not engine.evaluate(document, "GET", "orders:42").allowed

    @pytest.mark.asyncio
    async def test_evaluate_async_refreshes_peer(self, federated_engine, partner):
        engine, federation = federated_engine
        federation.confirm_bootstrap("partner.org", actor="ops", reason="onboarding")
        federation.import_bundle("partner.org", partner.bundle)
        document = await partner.issue(
            "spiffe://partner.org/svc/billing", "partner.org", 600, workload_public_key()
        )
        decision = await engine.evaluate_async(document, "GET", "invoices:1")
        assert decision.allowed


@settings(max_examples=20, deadline=None)
@given(order=st.permutations(range(len(RULES))), action=st.sampled_from(["GET", "POST", "DELETE"]))
def test_decision_is_independent_of_rule_order(order, action):
    clock = FakeClock()
    authority = KeyAuthority("example.org", clock=clock)
    document = _issue(authority, scopes=["orders:write"])
    verifier = DocumentVerifier("example.org", authority=authority, clock=clock)

    baseline = PolicyDecisionEngine("example.org", RuleStore(RULES), verifier)
    shuffled = PolicyDecisionEngine("example.org", RuleStore([RULES[i] for i in order]), verifier)

    for resource in ("orders:42", "orders:secrets", "billing:1"):
        expected = baseline.evaluate(document, action, resource)
        actual = shuffled.evaluate(document, action, resource)
        assert (actual.allowed, actual.matched_rules) == (expected.allowed, expected.matched_rules)
