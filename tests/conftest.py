"""Shared fixtures for the audit pipeline tests."""

from __future__ import annotations

import pytest

from src.audit.recorder import AuditRecorder
from src.audit.store import MemoryLocalStore
from src.schemas.audit import Actor
from tests.fakes import FakeSink


@pytest.fixture
def admin() -> Actor:
    return Actor(id="u-admin", email="director@sunnyday.org", role="admin", organization_id="org-1")


@pytest.fixture
def educator() -> Actor:
    return Actor(id="u-edu", email="educator@sunnyday.org", role="educator", organization_id="org-1")


@pytest.fixture
def store() -> MemoryLocalStore:
    return MemoryLocalStore()


@pytest.fixture
def sink() -> FakeSink:
    return FakeSink()


@pytest.fixture
def recorder(store: MemoryLocalStore, sink: FakeSink, educator: Actor) -> AuditRecorder:
    """Recorder acting as a regular educator."""
    return AuditRecorder(store, sink, identity=lambda: educator, buffer_size=50)
