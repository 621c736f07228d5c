"""
Notification dispatch — tell a waitlisted patient about an open slot.

Each attempt is gated by the rate limiter, recorded as a NotificationRecord
before the gateway is called, and audited whatever the outcome. Nothing here
retries: a failed offer is simply not made, and the next slot opening gets
another chance.
"""

from __future__ import annotations

import logging
import zoneinfo
from datetime import datetime
from typing import Callable, Optional

from slotfill.audit import AuditSink, audit
from slotfill.config import settings
from slotfill.errors import NotFoundError, ValidationError
from slotfill.gateway import NotificationGateway, OutboundMessage
from slotfill.messages import waitlist_offer_email, waitlist_offer_sms
from slotfill.models import (
    DispatchResult,
    Hold,
    NotificationMethod,
    NotificationRecord,
    NotificationStatus,
    Patient,
    SlotDescriptor,
    WaitlistEntry,
    WaitlistStatus,
    new_id,
    utcnow,
)
from slotfill.rate_limiter import RateLimiter
from slotfill.store import EngineStore, entry_scope, patient_scope

logger = logging.getLogger(__name__)

# Entries in these states are finished; nobody should be offered anything.
CLOSED_STATUSES = {WaitlistStatus.SCHEDULED, WaitlistStatus.CANCELLED, WaitlistStatus.EXPIRED}


class NotificationDispatcher:
    def __init__(
        self,
        store: EngineStore,
        gateway: NotificationGateway,
        rate_limiter: RateLimiter,
        audit_sink: AuditSink,
        clock: Callable[[], datetime] = utcnow,
        hold_ttl_hours: Optional[float] = None,
        tz: Optional[zoneinfo.ZoneInfo] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.rate_limiter = rate_limiter
        self.audit_sink = audit_sink
        self.clock = clock
        self.hold_ttl_hours = hold_ttl_hours if hold_ttl_hours is not None else settings.hold_ttl_hours
        self.tz = tz

    def _message(
        self,
        patient: Patient,
        method: NotificationMethod,
        slot: SlotDescriptor,
    ) -> OutboundMessage:
        first_name = patient.first_name or "there"
        if method == NotificationMethod.SMS:
            body = waitlist_offer_sms(first_name, slot.provider_name, slot.start, self.hold_ttl_hours, self.tz)
            return OutboundMessage(method, patient.id, patient.phone, body)
        subject, body = waitlist_offer_email(
            first_name, slot.provider_name, slot.start, self.hold_ttl_hours, self.tz,
        )
        to = patient.email if method == NotificationMethod.EMAIL else patient.id
        return OutboundMessage(method, patient.id, to, body, subject)

    async def send(
        self,
        entry: WaitlistEntry,
        slot: SlotDescriptor,
        hold: Optional[Hold] = None,
        method: Optional[NotificationMethod] = None,
    ) -> DispatchResult:
        tenant_id = entry.tenant_id
        patient = await self.store.get_patient(tenant_id, entry.patient_id)
        if patient is None:
            logger.warning("Waitlist %s: patient %s not found, skipping offer", entry.id, entry.patient_id)
            await audit(
                self.audit_sink, tenant_id, "waitlist_notification_failed", "waitlist", entry.id,
                status="failure", reason="patient_not_found",
            )
            return DispatchResult(False, error="Patient not found")

        method = method or patient.preferred_method or NotificationMethod.SMS

        decision = self.rate_limiter.check_and_record(tenant_id, patient.id)
        if not decision.allowed:
            logger.warning(
                "Rate limit exceeded for waitlist notification: patient %s, waitlist %s: %s",
                patient.id, entry.id, decision.reason,
            )
            await audit(
                self.audit_sink, tenant_id, "waitlist_notification_rate_limited", "waitlist", entry.id,
                status="blocked", patient_id=patient.id, reason=decision.reason,
            )
            return DispatchResult(False, error=decision.reason, rate_limited=True)

        record = NotificationRecord(
            id=new_id(),
            tenant_id=tenant_id,
            waitlist_id=entry.id,
            patient_id=patient.id,
            method=method,
            slot_start=slot.start,
            slot_end=slot.end,
            provider_name=slot.provider_name,
            hold_id=hold.id if hold else None,
            created_at=self.clock(),
        )
        record = await self.store.insert(record)

        try:
            reference = await self.gateway.send(self._message(patient, method, slot))
        except Exception as exc:
            logger.error("Failed to send waitlist offer %s: %s", record.id, exc)
            await self._finish_record(record, status=NotificationStatus.FAILED, error_message=str(exc))
            # Undelivered offers do not count toward the patient's caps.
            self.rate_limiter.release(decision.token)
            await audit(
                self.audit_sink, tenant_id, "waitlist_notification_failed", "waitlist", entry.id,
                status="failure", notification_id=record.id, method=method.value,
            )
            return DispatchResult(False, notification_id=record.id, error=str(exc))

        record = await self._finish_record(record, delivery_reference=reference)
        await self._mark_contacted(tenant_id, entry.id, responded=record.patient_response is not None)

        await audit(
            self.audit_sink, tenant_id, "waitlist_notification_sent", "waitlist", entry.id,
            notification_id=record.id,
            patient_id=patient.id,
            method=method.value,
            slot_start=slot.start.isoformat(),
            hold_id=record.hold_id,
        )
        logger.info(
            "Waitlist notification %s sent to patient %s via %s (ref %s)",
            record.id, patient.id, method.value, reference,
        )
        return DispatchResult(True, notification_id=record.id)

    async def _finish_record(
        self,
        record: NotificationRecord,
        status: Optional[NotificationStatus] = None,
        error_message: Optional[str] = None,
        delivery_reference: Optional[str] = None,
    ) -> NotificationRecord:
        """Write the gateway outcome onto the latest copy of ``record``.

        The patient may already have answered while the gateway call was in
        flight, so the stored row is re-read and a reply is never overwritten.
        """
        async with self.store.exclusive(patient_scope(record.tenant_id, record.patient_id)):
            current = await self.store.get_notification(record.tenant_id, record.id)
            if current is None:
                raise NotFoundError("notification", record.id)
            if delivery_reference is not None:
                current.delivery_reference = delivery_reference
            if status is not None and current.patient_response is None:
                current.status = status
                current.error_message = error_message
            return await self.store.save(current)

    async def _mark_contacted(self, tenant_id: str, waitlist_id: str, responded: bool = False) -> None:
        async with self.store.exclusive(entry_scope(tenant_id, waitlist_id)):
            entry = await self.store.get_entry(tenant_id, waitlist_id)
            if entry is None or entry.status in CLOSED_STATUSES:
                return
            now = self.clock()
            # A reply that arrived mid-send has already set the entry's state.
            if not responded:
                entry.status = WaitlistStatus.CONTACTED
            entry.last_notified_at = now
            entry.updated_at = now
            await self.store.save(entry)

    async def notify_candidate(
        self,
        tenant_id: str,
        waitlist_id: str,
        slot: SlotDescriptor,
        method: Optional[NotificationMethod] = None,
    ) -> DispatchResult:
        """Staff-initiated offer outside the automatic slot-opening flow."""
        slot.validate()
        entry = await self.store.get_entry(tenant_id, waitlist_id)
        if entry is None:
            raise NotFoundError("waitlist entry", waitlist_id)
        if entry.status in CLOSED_STATUSES:
            raise ValidationError(f"Waitlist entry {waitlist_id} is already {entry.status.value}.")
        return await self.send(entry, slot, method=method)

    async def history(self, tenant_id: str, waitlist_id: str) -> list[NotificationRecord]:
        if await self.store.get_entry(tenant_id, waitlist_id) is None:
            raise NotFoundError("waitlist entry", waitlist_id)
        return await self.store.list_notifications(tenant_id, waitlist_id=waitlist_id)
