"""
The fulfillment engine as one object: components wired together plus the
boundary operations the HTTP layer and the cancellation workflow call.
"""

from __future__ import annotations

import logging
import zoneinfo
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable, Optional

from slotfill.audit import AuditSink, InMemoryAuditLog, audit
from slotfill.booking import AppointmentBooker, InMemoryAppointmentBook
from slotfill.config import settings
from slotfill.dispatcher import NotificationDispatcher
from slotfill.errors import NotFoundError, ValidationError
from slotfill.gateway import NotificationGateway, default_gateway
from slotfill.holds import HoldManager
from slotfill.matcher import SlotMatcher, rank_key
from slotfill.models import (
    AcceptResult,
    CancelResult,
    DispatchResult,
    Hold,
    HoldStatus,
    NotificationMethod,
    NotificationRecord,
    Patient,
    Priority,
    ReplyResult,
    SlotDescriptor,
    TimeOfDay,
    WaitlistEntry,
    WaitlistStatus,
    new_id,
    utcnow,
)
from slotfill.rate_limiter import RateLimiter
from slotfill.replies import ReplyResolver
from slotfill.store import EngineStore, entry_scope, hold_scope

logger = logging.getLogger(__name__)

# Entries older than this are left out of the waitlist dashboard.
STATS_WINDOW_DAYS = 90


@dataclass
class Engine:
    store: EngineStore
    rate_limiter: RateLimiter
    matcher: SlotMatcher
    dispatcher: NotificationDispatcher
    holds: HoldManager
    replies: ReplyResolver
    booker: AppointmentBooker
    audit_sink: AuditSink
    clock: Callable[[], datetime] = utcnow

    # ------------------------------------------------------------------
    # Boundary operations
    # ------------------------------------------------------------------

    async def trigger_slot_opening(
        self,
        tenant_id: str,
        slot: SlotDescriptor,
        max_matches: Optional[int] = None,
    ) -> list[Hold]:
        return await self.holds.process_slot_opening(tenant_id, slot, max_matches)

    async def notify_candidate(
        self,
        tenant_id: str,
        waitlist_id: str,
        slot: SlotDescriptor,
        method: Optional[NotificationMethod] = None,
    ) -> DispatchResult:
        return await self.dispatcher.notify_candidate(tenant_id, waitlist_id, slot, method)

    async def accept_hold(self, tenant_id: str, hold_id: str, actor: str = "system") -> AcceptResult:
        return await self.holds.accept_hold(tenant_id, hold_id, actor=actor)

    async def cancel_hold(
        self,
        tenant_id: str,
        hold_id: str,
        reason: Optional[str] = None,
        actor: str = "system",
    ) -> CancelResult:
        return await self.holds.cancel_hold(tenant_id, hold_id, reason=reason, actor=actor)

    async def inbound_reply(self, tenant_id: str, contact_address: str, raw_text: str) -> ReplyResult:
        return await self.replies.process_reply(tenant_id, contact_address, raw_text)

    async def list_holds(
        self,
        tenant_id: str,
        waitlist_id: Optional[str] = None,
        status: Optional[HoldStatus] = None,
    ) -> list[Hold]:
        return await self.holds.list_holds(tenant_id, waitlist_id=waitlist_id, status=status)

    async def notification_history(self, tenant_id: str, waitlist_id: str) -> list[NotificationRecord]:
        return await self.dispatcher.history(tenant_id, waitlist_id)

    async def list_waitlist(
        self,
        tenant_id: str,
        status: Optional[WaitlistStatus] = WaitlistStatus.ACTIVE,
        priority: Optional[Priority] = None,
        provider_id: Optional[str] = None,
        patient_id: Optional[str] = None,
        appointment_type_id: Optional[str] = None,
    ) -> list[WaitlistEntry]:
        """Waitlist entries in serving order (priority, then time on the list)."""
        entries = await self.store.list_entries(
            tenant_id,
            status=status,
            priority=priority,
            provider_id=provider_id,
            patient_id=patient_id,
            appointment_type_id=appointment_type_id,
        )
        return sorted(entries, key=rank_key)

    async def waitlist_stats(self, tenant_id: str) -> dict:
        """Dashboard numbers over entries created in the last 90 days."""
        now = self.clock()
        entries = [
            e for e in await self.store.list_entries(tenant_id)
            if e.created_at >= now - timedelta(days=STATS_WINDOW_DAYS)
        ]
        by_status = {s: [e for e in entries if e.status == s] for s in WaitlistStatus}
        active = by_status[WaitlistStatus.ACTIVE]
        scheduled = by_status[WaitlistStatus.SCHEDULED]

        wait_days = [(now - e.created_at).total_seconds() / 86400 for e in active]

        def filled_within(days: int) -> int:
            cutoff = now - timedelta(days=days)
            return sum(1 for e in scheduled if e.resolved_at and e.resolved_at >= cutoff)

        return {
            "total_active": len(active),
            "total_contacted": len(by_status[WaitlistStatus.CONTACTED]),
            "total_matched": len(by_status[WaitlistStatus.MATCHED]),
            "total_scheduled": len(scheduled),
            "urgent_count": sum(1 for e in entries if e.priority == Priority.URGENT),
            "high_priority_count": sum(1 for e in entries if e.priority == Priority.HIGH),
            "average_wait_days": round(sum(wait_days) / len(wait_days), 1) if wait_days else 0,
            "filled_this_week": filled_within(7),
            "filled_this_month": filled_within(30),
            "conversion_rate": round(len(scheduled) / len(entries) * 100, 1) if entries else 0,
        }

    # ------------------------------------------------------------------
    # Intake (used by staff tools and the patient-intake workflow)
    # ------------------------------------------------------------------

    async def add_patient(self, patient: Patient) -> Patient:
        return await self.store.insert(patient)

    async def add_to_waitlist(
        self,
        tenant_id: str,
        patient_id: str,
        provider_id: Optional[str] = None,
        appointment_type_id: Optional[str] = None,
        location_id: Optional[str] = None,
        priority: Priority = Priority.NORMAL,
        preferred_start_date: Optional[date] = None,
        preferred_end_date: Optional[date] = None,
        preferred_time_of_day: TimeOfDay = TimeOfDay.ANY,
        preferred_days_of_week: Optional[list[str]] = None,
        reason: str = "",
        notes: str = "",
        created_by: str = "system",
    ) -> WaitlistEntry:
        """Add a patient to the waitlist."""
        if await self.store.get_patient(tenant_id, patient_id) is None:
            raise NotFoundError("patient", patient_id)
        if (
            preferred_start_date is not None
            and preferred_end_date is not None
            and preferred_end_date < preferred_start_date
        ):
            raise ValidationError("Preferred end date is before the start date")

        now = self.clock()
        entry = WaitlistEntry(
            id=new_id(),
            tenant_id=tenant_id,
            patient_id=patient_id,
            provider_id=provider_id,
            appointment_type_id=appointment_type_id,
            location_id=location_id,
            priority=priority,
            preferred_start_date=preferred_start_date,
            preferred_end_date=preferred_end_date,
            preferred_time_of_day=preferred_time_of_day,
            preferred_days_of_week=[d.lower() for d in preferred_days_of_week] if preferred_days_of_week else None,
            reason=reason,
            notes=notes,
            created_at=now,
            updated_at=now,
        )
        entry = await self.store.insert(entry)
        await audit(
            self.audit_sink, tenant_id, "waitlist_entry_created", "waitlist_entry", entry.id,
            actor=created_by, patient_id=patient_id, priority=priority.value,
        )
        logger.info("Added to waitlist: patient %s (ID %s, %s)", patient_id, entry.id, priority.value)
        return entry

    async def remove_from_waitlist(self, tenant_id: str, waitlist_id: str, actor: str = "system") -> WaitlistEntry:
        """Cancel an entry and release any holds it still has."""
        entry = await self.holds.get_entry(tenant_id, waitlist_id)
        holds = await self.store.list_holds(tenant_id, waitlist_id=waitlist_id)
        scopes = [entry_scope(tenant_id, waitlist_id)] + [hold_scope(tenant_id, h.id) for h in holds]

        async with self.store.exclusive(*scopes):
            entry = await self.holds.get_entry(tenant_id, waitlist_id)
            if entry.status == WaitlistStatus.SCHEDULED:
                raise ValidationError(f"Waitlist entry {waitlist_id} is already scheduled.")
            if entry.status == WaitlistStatus.CANCELLED:
                return entry
            now = self.clock()
            async with self.store.unit_of_work() as uow:
                entry.status = WaitlistStatus.CANCELLED
                entry.resolved_at = now
                entry.updated_at = now
                uow.save(entry)
                for hold in await self.store.list_holds(tenant_id, waitlist_id=waitlist_id):
                    if hold.status == HoldStatus.ACTIVE:
                        hold.status = HoldStatus.CANCELLED
                        hold.release_reason = "entry_cancelled"
                        hold.updated_at = now
                        uow.save(hold)

        await audit(
            self.audit_sink, tenant_id, "waitlist_entry_cancelled", "waitlist_entry", waitlist_id, actor=actor,
        )
        return entry


def build_engine(
    gateway: Optional[NotificationGateway] = None,
    booker: Optional[AppointmentBooker] = None,
    audit_sink: Optional[AuditSink] = None,
    store: Optional[EngineStore] = None,
    rate_limiter: Optional[RateLimiter] = None,
    clock: Callable[[], datetime] = utcnow,
    tz: Optional[zoneinfo.ZoneInfo] = None,
) -> Engine:
    """Wire up an engine; anything not supplied gets the default implementation."""
    tz = tz or zoneinfo.ZoneInfo(settings.office_timezone)
    store = store or EngineStore()
    gateway = gateway or default_gateway()
    booker = booker or InMemoryAppointmentBook()
    audit_sink = audit_sink or InMemoryAuditLog()
    rate_limiter = rate_limiter or RateLimiter(clock=clock)

    matcher = SlotMatcher(store, clock=clock, tz=tz)
    dispatcher = NotificationDispatcher(store, gateway, rate_limiter, audit_sink, clock=clock, tz=tz)
    holds = HoldManager(store, matcher, dispatcher, booker, audit_sink, clock=clock)
    replies = ReplyResolver(store, audit_sink, clock=clock)
    return Engine(
        store=store,
        rate_limiter=rate_limiter,
        matcher=matcher,
        dispatcher=dispatcher,
        holds=holds,
        replies=replies,
        booker=booker,
        audit_sink=audit_sink,
        clock=clock,
    )
