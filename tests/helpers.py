"""Test doubles and builders shared across the engine tests."""

import asyncio
import zoneinfo
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from slotfill.booking import InMemoryAppointmentBook
from slotfill.engine import Engine
from slotfill.errors import GatewayError
from slotfill.gateway import OutboundMessage
from slotfill.models import (
    Hold,
    NotificationMethod,
    Patient,
    SlotDescriptor,
    WaitlistEntry,
)

TENANT = "clinic-a"
OTHER_TENANT = "clinic-b"

# Monday 2025-03-03 08:00 UTC
T0 = datetime(2025, 3, 3, 8, 0, tzinfo=timezone.utc)

UTC = zoneinfo.ZoneInfo("UTC")


# ============================================================================
# TEST DOUBLES
# ============================================================================


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingGateway:
    """Keeps every message; raises GatewayError for patients in ``failing``.

    ``on_send``, when set, is awaited while the send is still in flight.
    """

    def __init__(self):
        self.sent: list[OutboundMessage] = []
        self.failing: set[str] = set()
        self.on_send: Optional[Callable[[], Awaitable]] = None

    async def send(self, message: OutboundMessage) -> str:
        if self.on_send is not None:
            await self.on_send()
        if message.patient_id in self.failing:
            raise GatewayError("carrier rejected message")
        self.sent.append(message)
        return f"ref-{len(self.sent)}"


class FailingBook(InMemoryAppointmentBook):
    async def create_appointment(self, tenant_id, patient, hold):
        raise RuntimeError("EHR unavailable")


class YieldingBook(InMemoryAppointmentBook):
    """Never refuses a slot, and yields to the event loop before booking.

    Only the engine's own locking can then keep a slot from being booked twice.
    """

    def _is_booked(self, tenant_id, hold):
        return False

    async def create_appointment(self, tenant_id, patient, hold):
        await asyncio.sleep(0)
        return await super().create_appointment(tenant_id, patient, hold)


class Seeder:
    """Writes patients, entries and holds straight into an engine's store."""

    def __init__(self, engine: Engine, clock: FakeClock):
        self.engine = engine
        self.clock = clock
        self._count = 0

    async def patient(
        self,
        patient_id: str,
        phone: str = "",
        email: str = "",
        tenant_id: str = TENANT,
        preferred_method: NotificationMethod = NotificationMethod.SMS,
        name: Optional[str] = None,
    ) -> Patient:
        self._count += 1
        return await self.engine.add_patient(Patient(
            id=patient_id,
            tenant_id=tenant_id,
            name=name or f"Pat {patient_id}",
            phone=phone or f"+1555000{self._count:04d}",
            email=email,
            preferred_method=preferred_method,
        ))

    async def entry(
        self,
        patient_id: str,
        tenant_id: str = TENANT,
        created_at: Optional[datetime] = None,
        **fields,
    ) -> WaitlistEntry:
        self._count += 1
        entry = WaitlistEntry(
            id=fields.pop("id", f"wl-{self._count}"),
            tenant_id=tenant_id,
            patient_id=patient_id,
            created_at=created_at or (T0 - timedelta(days=30) + timedelta(minutes=self._count)),
            **fields,
        )
        return await self.engine.store.insert(entry)

    async def hold(
        self,
        entry: WaitlistEntry,
        slot: SlotDescriptor,
        hold_until: Optional[datetime] = None,
    ) -> Hold:
        self._count += 1
        hold = Hold(
            id=f"hold-{self._count}",
            tenant_id=entry.tenant_id,
            waitlist_id=entry.id,
            provider_id=slot.provider_id,
            location_id=slot.location_id,
            appointment_type_id=slot.appointment_type_id,
            slot_start=slot.start,
            slot_end=slot.end,
            hold_until=hold_until or self.clock() + timedelta(hours=24),
            created_at=self.clock(),
        )
        return await self.engine.store.insert(hold)


def make_slot(
    start: datetime = datetime(2025, 3, 4, 9, 0, tzinfo=timezone.utc),
    provider_id: str = "P1",
    location_id: str = "L1",
    minutes: int = 30,
    **extra,
) -> SlotDescriptor:
    return SlotDescriptor(
        provider_id=provider_id,
        location_id=location_id,
        start=start,
        end=start + timedelta(minutes=minutes),
        provider_name=extra.pop("provider_name", "Dr. Smith"),
        **extra,
    )

