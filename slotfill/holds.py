"""
Hold management — exclusive, time-bounded offers of a freed slot.

A slot opening produces one hold per ranked candidate, each notified in rank
order. Any number of holds may be outstanding on a slot, but only one can be
accepted: acceptance runs under exclusive scopes on the slot, the waitlist
entry and the hold, and books the appointment, accepts the hold, schedules
the entry and supersedes the entry's other holds as one unit.

Expiry is lazy. A hold past ``hold_until`` is refused at acceptance and
reported as expired whether or not the sweeper (``expire_holds``) has run.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from slotfill.audit import AuditSink, audit
from slotfill.booking import AppointmentBooker
from slotfill.config import settings
from slotfill.dispatcher import CLOSED_STATUSES, NotificationDispatcher
from slotfill.errors import NotFoundError, ValidationError
from slotfill.matcher import SlotMatcher
from slotfill.models import (
    AcceptResult,
    CancelResult,
    Hold,
    HoldStatus,
    Outcome,
    SlotDescriptor,
    WaitlistEntry,
    WaitlistStatus,
    new_id,
    utcnow,
)
from slotfill.store import EngineStore, UnitOfWork, entry_scope, hold_scope, slot_scope

logger = logging.getLogger(__name__)

# Entry states that mean "an offer is out"; releasing the last hold reopens them.
# Contacted is included because a delivered offer moves a matched entry on to it.
REOPENABLE_STATUSES = {WaitlistStatus.MATCHED, WaitlistStatus.CONTACTED}


class HoldManager:
    def __init__(
        self,
        store: EngineStore,
        matcher: SlotMatcher,
        dispatcher: NotificationDispatcher,
        booker: AppointmentBooker,
        audit_sink: AuditSink,
        clock: Callable[[], datetime] = utcnow,
        hold_ttl: Optional[timedelta] = None,
    ):
        self.store = store
        self.matcher = matcher
        self.dispatcher = dispatcher
        self.booker = booker
        self.audit_sink = audit_sink
        self.clock = clock
        self.hold_ttl = hold_ttl or timedelta(hours=settings.hold_ttl_hours)

    # ------------------------------------------------------------------
    # Slot openings
    # ------------------------------------------------------------------

    async def process_slot_opening(
        self,
        tenant_id: str,
        slot: SlotDescriptor,
        max_matches: Optional[int] = None,
    ) -> list[Hold]:
        """Hold the slot for the best candidates and notify each of them."""
        slot.validate()
        if max_matches is None:
            max_matches = settings.default_max_matches
        if max_matches < 1:
            raise ValidationError("max_matches must be at least 1")

        candidates = await self.matcher.find_candidates(tenant_id, slot, max_results=max_matches)
        if not candidates:
            logger.info("No waitlist matches for slot %s at %s", slot.provider_id, slot.start.isoformat())
            return []

        created: list[Hold] = []
        notified = 0
        for entry in candidates:
            try:
                hold = await self.create_hold(tenant_id, entry.id, slot)
            except Exception as exc:
                logger.warning("Could not hold slot for waitlist %s: %s", entry.id, exc)
                continue
            created.append(hold)

            try:
                result = await self.dispatcher.send(entry, slot, hold=hold)
            except Exception as exc:
                logger.error("Offer dispatch crashed for hold %s: %s", hold.id, exc)
                continue
            if result.success:
                notified += 1
            else:
                logger.info("Hold %s created but not notified: %s", hold.id, result.error)

        await audit(
            self.audit_sink, tenant_id, "waitlist_auto_fill_processed", "slot", None,
            provider_id=slot.provider_id,
            location_id=slot.location_id,
            slot_start=slot.start.isoformat(),
            candidates=len(candidates),
            holds_created=len(created),
            notified=notified,
        )
        return created

    async def create_hold(self, tenant_id: str, waitlist_id: str, slot: SlotDescriptor) -> Hold:
        async with self.store.exclusive(entry_scope(tenant_id, waitlist_id)):
            entry = await self.store.get_entry(tenant_id, waitlist_id)
            if entry is None:
                raise NotFoundError("waitlist entry", waitlist_id)
            if entry.status != WaitlistStatus.ACTIVE:
                raise ValidationError(f"Waitlist entry {waitlist_id} is no longer active")

            now = self.clock()
            existing = await self.store.list_holds(tenant_id, waitlist_id=waitlist_id)
            if any(h.is_live(now) for h in existing):
                raise ValidationError(f"Waitlist entry {waitlist_id} already has an active hold")

            hold = Hold(
                id=new_id(),
                tenant_id=tenant_id,
                waitlist_id=waitlist_id,
                provider_id=slot.provider_id,
                location_id=slot.location_id,
                appointment_type_id=slot.appointment_type_id,
                slot_start=slot.start,
                slot_end=slot.end,
                hold_until=now + self.hold_ttl,
                created_at=now,
            )
            taken = await self.store.list_holds(tenant_id, slot_key=hold.slot_key)
            if any(h.status == HoldStatus.ACCEPTED for h in taken):
                raise ValidationError("Slot has already been claimed")

            entry.status = WaitlistStatus.MATCHED
            entry.updated_at = now
            async with self.store.unit_of_work() as uow:
                uow.add(hold)
                uow.save(entry)

        await audit(
            self.audit_sink, tenant_id, "waitlist_hold_created", "waitlist_hold", hold.id,
            waitlist_id=waitlist_id,
            slot_start=slot.start.isoformat(),
            slot_end=slot.end.isoformat(),
            hold_until=hold.hold_until.isoformat(),
            provider_id=slot.provider_id,
            location_id=slot.location_id,
        )
        logger.info("Hold %s created for waitlist %s until %s", hold.id, waitlist_id, hold.hold_until.isoformat())
        return hold

    # ------------------------------------------------------------------
    # Accept / cancel
    # ------------------------------------------------------------------

    async def _require_hold(self, tenant_id: str, hold_id: str) -> Hold:
        hold = await self.store.get_hold(tenant_id, hold_id)
        if hold is None:
            raise NotFoundError("hold", hold_id)
        return hold

    async def accept_hold(self, tenant_id: str, hold_id: str, actor: str = "system") -> AcceptResult:
        """
        Turn an active hold into a booked appointment.

        Returns a conflict result if the hold is no longer active, has passed
        its ``hold_until``, or its slot was already claimed through another
        hold. Only one of any number of concurrent calls can succeed.
        """
        hold = await self._require_hold(tenant_id, hold_id)
        scopes = (
            slot_scope(tenant_id, hold.provider_id, hold.location_id, hold.slot_start),
            entry_scope(tenant_id, hold.waitlist_id),
            hold_scope(tenant_id, hold.id),
        )
        async with self.store.exclusive(*scopes):
            hold = await self._require_hold(tenant_id, hold_id)
            now = self.clock()

            conflict = await self._accept_conflict(hold, now)
            if conflict is None:
                entry = await self.store.get_entry(tenant_id, hold.waitlist_id)
                if entry is None:
                    raise NotFoundError("waitlist entry", hold.waitlist_id)
                if entry.status in CLOSED_STATUSES:
                    conflict = f"entry_{entry.status.value}"
            if conflict is not None:
                logger.info("Hold %s not accepted: %s", hold_id, conflict)
                await audit(
                    self.audit_sink, tenant_id, "waitlist_hold_accept_rejected", "waitlist_hold", hold_id,
                    actor=actor, status="conflict", reason=conflict,
                )
                return AcceptResult(Outcome.CONFLICT, hold_id, reason=conflict)

            patient = await self.store.get_patient(tenant_id, entry.patient_id)
            if patient is None:
                raise NotFoundError("patient", entry.patient_id)

            try:
                appointment_id = await self.booker.create_appointment(tenant_id, patient, hold)
            except Exception as exc:
                logger.error("Booking failed for hold %s: %s", hold_id, exc)
                await audit(
                    self.audit_sink, tenant_id, "waitlist_hold_accept_failed", "waitlist_hold", hold_id,
                    actor=actor, status="failure", error=str(exc),
                )
                return AcceptResult(Outcome.ERROR, hold_id, reason=str(exc))

            superseded = [
                h for h in await self.store.list_holds(tenant_id, waitlist_id=entry.id)
                if h.id != hold.id and h.status == HoldStatus.ACTIVE
            ]
            try:
                async with self.store.unit_of_work() as uow:
                    hold.status = HoldStatus.ACCEPTED
                    hold.appointment_id = appointment_id
                    hold.updated_at = now
                    uow.save(hold)

                    entry.status = WaitlistStatus.SCHEDULED
                    entry.scheduled_appointment_id = appointment_id
                    entry.resolved_at = now
                    entry.updated_at = now
                    uow.save(entry)

                    for other in superseded:
                        other.status = HoldStatus.CANCELLED
                        other.release_reason = "superseded"
                        other.updated_at = now
                        uow.save(other)
            except Exception:
                logger.exception("Commit failed for hold %s; cancelling appointment %s", hold_id, appointment_id)
                try:
                    await self.booker.cancel_appointment(tenant_id, appointment_id, "waitlist acceptance rolled back")
                except Exception as exc:
                    logger.error("Could not cancel orphaned appointment %s: %s", appointment_id, exc)
                raise

        await audit(
            self.audit_sink, tenant_id, "waitlist_hold_accepted", "waitlist_hold", hold_id,
            actor=actor,
            waitlist_id=hold.waitlist_id,
            appointment_id=appointment_id,
            superseded_holds=[h.id for h in superseded],
        )
        logger.info("Hold %s accepted, appointment %s", hold_id, appointment_id)
        return AcceptResult(Outcome.SUCCESS, hold_id, appointment_id=appointment_id)

    async def _accept_conflict(self, hold: Hold, now: datetime) -> Optional[str]:
        if hold.status != HoldStatus.ACTIVE:
            return f"already_{hold.status.value}"
        if now >= hold.hold_until:
            return "expired"
        same_slot = await self.store.list_holds(hold.tenant_id, slot_key=hold.slot_key)
        if any(h.status == HoldStatus.ACCEPTED for h in same_slot):
            return "slot_taken"
        return None

    async def cancel_hold(
        self,
        tenant_id: str,
        hold_id: str,
        reason: Optional[str] = None,
        actor: str = "system",
    ) -> CancelResult:
        hold = await self._require_hold(tenant_id, hold_id)
        async with self.store.exclusive(
            entry_scope(tenant_id, hold.waitlist_id),
            hold_scope(tenant_id, hold.id),
        ):
            hold = await self._require_hold(tenant_id, hold_id)
            if hold.status != HoldStatus.ACTIVE:
                return CancelResult(Outcome.CONFLICT, hold_id, reason=f"already_{hold.status.value}")

            async with self.store.unit_of_work() as uow:
                reverted = await self._release(uow, hold, HoldStatus.CANCELLED, reason or "cancelled")

        await audit(
            self.audit_sink, tenant_id, "waitlist_hold_cancelled", "waitlist_hold", hold_id,
            actor=actor, waitlist_id=hold.waitlist_id, entry_reverted=reverted,
        )
        logger.info("Hold %s cancelled (entry reverted: %s)", hold_id, reverted)
        return CancelResult(Outcome.SUCCESS, hold_id, entry_reverted=reverted)

    async def _release(self, uow: UnitOfWork, hold: Hold, status: HoldStatus, reason: str) -> bool:
        """
        Close ``hold`` and, if it was the entry's last live hold, put a
        matched/contacted entry back on the active waitlist. Caller holds the
        entry and hold scopes. Returns whether the entry was reopened.
        """
        now = self.clock()
        hold.status = status
        hold.release_reason = reason
        hold.updated_at = now
        uow.save(hold)

        others = [
            h for h in await self.store.list_holds(hold.tenant_id, waitlist_id=hold.waitlist_id)
            if h.id != hold.id and h.is_live(now)
        ]
        if others:
            return False
        entry = await self.store.get_entry(hold.tenant_id, hold.waitlist_id)
        if entry is None or entry.status not in REOPENABLE_STATUSES:
            return False
        entry.status = WaitlistStatus.ACTIVE
        entry.updated_at = now
        uow.save(entry)
        return True

    # ------------------------------------------------------------------
    # Expiry sweep
    # ------------------------------------------------------------------

    async def expire_holds(self, tenant_id: Optional[str] = None) -> int:
        """Mark stale active holds expired and reopen their entries."""
        now = self.clock()
        stale = [
            h for h in await self.store.list_holds(tenant_id)
            if h.status == HoldStatus.ACTIVE and now >= h.hold_until
        ]
        expired: list[str] = []
        for candidate in stale:
            try:
                async with self.store.exclusive(
                    entry_scope(candidate.tenant_id, candidate.waitlist_id),
                    hold_scope(candidate.tenant_id, candidate.id),
                ):
                    hold = await self.store.get_hold(candidate.tenant_id, candidate.id)
                    if hold is None or hold.status != HoldStatus.ACTIVE or self.clock() < hold.hold_until:
                        continue
                    async with self.store.unit_of_work() as uow:
                        await self._release(uow, hold, HoldStatus.EXPIRED, "expired")
                expired.append(hold.id)
            except Exception as exc:
                logger.error("Error expiring hold %s: %s", candidate.id, exc)

        if expired:
            await audit(
                self.audit_sink, tenant_id or "system", "waitlist_holds_expired", "waitlist_hold", None,
                expired_count=len(expired), hold_ids=expired,
            )
            logger.info("Expired %d waitlist holds", len(expired))
        return len(expired)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def list_holds(
        self,
        tenant_id: str,
        waitlist_id: Optional[str] = None,
        status: Optional[HoldStatus] = None,
    ) -> list[Hold]:
        """Holds as callers should see them: stale active holds read as expired."""
        if waitlist_id is not None and await self.store.get_entry(tenant_id, waitlist_id) is None:
            raise NotFoundError("waitlist entry", waitlist_id)
        now = self.clock()
        holds = await self.store.list_holds(tenant_id, waitlist_id=waitlist_id)
        for hold in holds:
            hold.status = hold.effective_status(now)
        if status is not None:
            holds = [h for h in holds if h.status == status]
        return holds

    async def get_stats(self, tenant_id: str) -> dict:
        holds = await self.list_holds(tenant_id)
        counts = {s.value: 0 for s in HoldStatus}
        accept_hours = []
        for hold in holds:
            counts[hold.status.value] += 1
            if hold.status == HoldStatus.ACCEPTED and hold.updated_at:
                accept_hours.append((hold.updated_at - hold.created_at).total_seconds() / 3600)
        return {
            "active_holds": counts["active"],
            "accepted_holds": counts["accepted"],
            "expired_holds": counts["expired"],
            "cancelled_holds": counts["cancelled"],
            "total_holds": len(holds),
            "avg_accept_time_hours": (
                round(sum(accept_hours) / len(accept_hours), 2) if accept_hours else None
            ),
        }

    async def get_entry(self, tenant_id: str, waitlist_id: str) -> WaitlistEntry:
        entry = await self.store.get_entry(tenant_id, waitlist_id)
        if entry is None:
            raise NotFoundError("waitlist entry", waitlist_id)
        return entry
