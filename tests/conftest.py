"""
Shared fixtures: a controllable clock and a fully wired service.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from carebridge.audit import AuditLog
from carebridge.gateways import (
    RecordingDispatcher,
    StubConferencingBackend,
    StubTelephonyBackend,
)
from carebridge.service import CareBridgeService
from carebridge.storage import InMemoryStore


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def audit_log() -> AuditLog:
    return AuditLog()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def conferencing() -> StubConferencingBackend:
    return StubConferencingBackend()


@pytest.fixture
def telephony() -> StubTelephonyBackend:
    return StubTelephonyBackend()


@pytest.fixture
def service(store, audit_log, dispatcher, conferencing, telephony, clock) -> CareBridgeService:
    return CareBridgeService(
        store=store,
        audit_log=audit_log,
        dispatcher=dispatcher,
        conferencing=conferencing,
        telephony=telephony,
        clock=clock,
    )
