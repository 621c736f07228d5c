"""
Engine store — tenant-scoped in-memory persistence for patients, waitlist
entries, holds and notification records.

In production, replace this module with a database-backed implementation
exposing the same coroutine API. Every read returns a copy, so callers must
write changes back through ``save`` or a unit of work; writes are checked
against the row version and refused if the row moved underneath the caller.

Exclusive scopes are per-key asyncio locks. Callers needing more than one
take them in the global order slot -> patient -> entry -> hold.

HIPAA note: data is held in memory only. A persistent implementation must be
encrypted at rest and access-controlled.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import re
from contextlib import AsyncExitStack, asynccontextmanager
from typing import AsyncIterator, Optional, Union

from slotfill.errors import ConcurrentModificationError, NotFoundError
from slotfill.models import (
    Hold,
    NotificationRecord,
    Patient,
    Priority,
    WaitlistEntry,
    WaitlistStatus,
    as_utc,
)

logger = logging.getLogger(__name__)

Record = Union[Patient, WaitlistEntry, Hold, NotificationRecord]


def normalize_phone(number: str) -> str:
    """Reduce a phone number to E.164; bare 10-digit numbers are taken as US."""
    digits = re.sub(r"\D", "", number or "")
    if len(digits) == 10:
        digits = "1" + digits
    return f"+{digits}" if digits else ""


# ---------------------------------------------------------------------------
# Scope keys
# ---------------------------------------------------------------------------


def slot_scope(tenant_id: str, provider_id: str, location_id: str, start) -> tuple:
    return ("slot", tenant_id, provider_id, location_id, as_utc(start).isoformat())


def patient_scope(tenant_id: str, patient_id: str) -> tuple:
    return ("patient", tenant_id, patient_id)


def entry_scope(tenant_id: str, waitlist_id: str) -> tuple:
    return ("entry", tenant_id, waitlist_id)


def hold_scope(tenant_id: str, hold_id: str) -> tuple:
    return ("hold", tenant_id, hold_id)


class _LockRegistry:
    """Lazily created asyncio locks, dropped once nobody waits on them."""

    def __init__(self):
        self._locks: dict[tuple, asyncio.Lock] = {}
        self._users: dict[tuple, int] = {}

    @asynccontextmanager
    async def hold(self, key: tuple) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class UnitOfWork:
    """Buffered writes applied together on commit, or not at all."""

    def __init__(self, store: "EngineStore"):
        self._store = store
        self._inserts: list[Record] = []
        self._pending: list[Record] = []

    def add(self, record: Record) -> None:
        self._inserts.append(record)

    def save(self, record: Record) -> None:
        self._pending.append(record)

    def commit(self) -> None:
        for record in self._inserts:
            self._store._check_absent(record)
        for record in self._pending:
            self._store._check_version(record)
        for record in self._inserts + self._pending:
            self._store._write(record)
        self._inserts.clear()
        self._pending.clear()


class EngineStore:
    def __init__(self):
        self._tables: dict[type, dict[tuple, Record]] = {
            Patient: {},
            WaitlistEntry: {},
            Hold: {},
            NotificationRecord: {},
        }
        self._locks = _LockRegistry()

    # ------------------------------------------------------------------
    # Scopes and writes
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def exclusive(self, *keys: tuple) -> AsyncIterator[None]:
        """Hold every lock in ``keys`` (in the given order) for the block."""
        seen: list[tuple] = []
        for key in keys:
            if key not in seen:
                seen.append(key)
        async with AsyncExitStack() as stack:
            for key in seen:
                await stack.enter_async_context(self._locks.hold(key))
            yield

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[UnitOfWork]:
        uow = UnitOfWork(self)
        yield uow
        uow.commit()

    async def insert(self, record: Record) -> Record:
        self._check_absent(record)
        self._tables[type(record)][(record.tenant_id, record.id)] = copy.deepcopy(record)
        return copy.deepcopy(record)

    def _check_absent(self, record: Record) -> None:
        if (record.tenant_id, record.id) in self._tables[type(record)]:
            raise ConcurrentModificationError(
                f"{type(record).__name__} {record.id} already exists"
            )

    async def save(self, record: Record) -> Record:
        self._check_version(record)
        self._write(record)
        return copy.deepcopy(record)

    def _check_version(self, record: Record) -> None:
        current = self._tables[type(record)].get((record.tenant_id, record.id))
        if current is None:
            raise NotFoundError(type(record).__name__, record.id)
        if getattr(current, "version", 0) != getattr(record, "version", 0):
            raise ConcurrentModificationError(
                f"{type(record).__name__} {record.id} changed "
                f"(expected v{record.version}, found v{current.version})"
            )

    def _write(self, record: Record) -> None:
        if hasattr(record, "version"):
            record.version += 1
        self._tables[type(record)][(record.tenant_id, record.id)] = copy.deepcopy(record)

    def _get(self, kind: type, tenant_id: str, ident: str):
        record = self._tables[kind].get((tenant_id, ident))
        return copy.deepcopy(record) if record is not None else None

    def _rows(self, kind: type, tenant_id: Optional[str]) -> list:
        return [
            copy.deepcopy(r)
            for (tid, _), r in self._tables[kind].items()
            if tenant_id is None or tid == tenant_id
        ]

    # ------------------------------------------------------------------
    # Patients (read access for the engine)
    # ------------------------------------------------------------------

    async def get_patient(self, tenant_id: str, patient_id: str) -> Optional[Patient]:
        return self._get(Patient, tenant_id, patient_id)

    async def find_patient_by_contact(self, tenant_id: str, address: str) -> Optional[Patient]:
        """Match a phone number (any formatting) or an email address."""
        address = (address or "").strip()
        if not address:
            return None
        if "@" in address:
            wanted = address.lower()
            for patient in self._rows(Patient, tenant_id):
                if patient.email and patient.email.lower() == wanted:
                    return patient
            return None
        wanted = normalize_phone(address)
        for patient in self._rows(Patient, tenant_id):
            if patient.phone and normalize_phone(patient.phone) == wanted:
                return patient
        return None

    # ------------------------------------------------------------------
    # Waitlist entries
    # ------------------------------------------------------------------

    async def get_entry(self, tenant_id: str, waitlist_id: str) -> Optional[WaitlistEntry]:
        return self._get(WaitlistEntry, tenant_id, waitlist_id)

    async def list_entries(
        self,
        tenant_id: str,
        status: Optional[WaitlistStatus] = None,
        priority: Optional[Priority] = None,
        provider_id: Optional[str] = None,
        patient_id: Optional[str] = None,
        appointment_type_id: Optional[str] = None,
    ) -> list[WaitlistEntry]:
        entries = self._rows(WaitlistEntry, tenant_id)
        if status is not None:
            entries = [e for e in entries if e.status == status]
        if priority is not None:
            entries = [e for e in entries if e.priority == priority]
        if provider_id is not None:
            entries = [e for e in entries if e.provider_id == provider_id]
        if patient_id is not None:
            entries = [e for e in entries if e.patient_id == patient_id]
        if appointment_type_id is not None:
            entries = [e for e in entries if e.appointment_type_id == appointment_type_id]
        return entries

    # ------------------------------------------------------------------
    # Holds
    # ------------------------------------------------------------------

    async def get_hold(self, tenant_id: str, hold_id: str) -> Optional[Hold]:
        return self._get(Hold, tenant_id, hold_id)

    async def list_holds(
        self,
        tenant_id: Optional[str],
        waitlist_id: Optional[str] = None,
        slot_key: Optional[tuple] = None,
    ) -> list[Hold]:
        holds = self._rows(Hold, tenant_id)
        if waitlist_id is not None:
            holds = [h for h in holds if h.waitlist_id == waitlist_id]
        if slot_key is not None:
            holds = [h for h in holds if h.slot_key == slot_key]
        return sorted(holds, key=lambda h: h.created_at)

    # ------------------------------------------------------------------
    # Notification records
    # ------------------------------------------------------------------

    async def get_notification(
        self, tenant_id: str, notification_id: str
    ) -> Optional[NotificationRecord]:
        return self._get(NotificationRecord, tenant_id, notification_id)

    async def list_notifications(
        self,
        tenant_id: str,
        patient_id: Optional[str] = None,
        waitlist_id: Optional[str] = None,
    ) -> list[NotificationRecord]:
        records = self._rows(NotificationRecord, tenant_id)
        if patient_id is not None:
            records = [r for r in records if r.patient_id == patient_id]
        if waitlist_id is not None:
            records = [r for r in records if r.waitlist_id == waitlist_id]
        return sorted(records, key=lambda r: r.created_at, reverse=True)
