"""
Shared pytest fixtures for the fulfillment engine tests.

Every engine here runs on a controllable clock, an in-memory store and a
recording gateway, so no test touches Twilio or the network. Office time is
UTC unless a test builds its own engine.
"""

import pytest

from helpers import UTC, FakeClock, RecordingGateway, Seeder, make_slot
from slotfill.audit import InMemoryAuditLog
from slotfill.booking import InMemoryAppointmentBook
from slotfill.engine import Engine, build_engine
from slotfill.models import SlotDescriptor


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gateway() -> RecordingGateway:
    return RecordingGateway()


@pytest.fixture
def audit_log() -> InMemoryAuditLog:
    return InMemoryAuditLog()


@pytest.fixture
def book() -> InMemoryAppointmentBook:
    return InMemoryAppointmentBook()


@pytest.fixture
def engine(clock, gateway, audit_log, book) -> Engine:
    return build_engine(gateway=gateway, booker=book, audit_sink=audit_log, clock=clock, tz=UTC)


@pytest.fixture
def seed(engine, clock) -> Seeder:
    return Seeder(engine, clock)


@pytest.fixture
def slot() -> SlotDescriptor:
    return make_slot()
