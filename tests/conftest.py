"""Shared fixtures for TrustMesh tests."""

import pytest

from helpers import FakeClock
from trustmesh.config import AuthorityConfig
from trustmesh.events import InMemoryEventBus
from trustmesh.identity import KeyAuthority


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def events() -> InMemoryEventBus:
    return InMemoryEventBus()


@pytest.fixture
def recorded(events):
    received = []
    events.subscribe("*", received.append)
    return received


@pytest.fixture
def authority(clock, events) -> KeyAuthority:
    return KeyAuthority(
        "example.org",
        config=AuthorityConfig(max_ttl_seconds=3600, rotation_grace_seconds=60),
        events=events,
        clock=clock,
    )
