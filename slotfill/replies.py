"""
Inbound reply handling — "YES"/"NO" answers to waitlist offers.

A reply only records intent. YES marks the offer accepted and the waitlist
entry matched (while the offered hold is live) so staff can confirm it; it
never books anything by itself, because the reply channel is
unauthenticated and exclusivity is enforced on holds. Unknown senders are ignored without a trace in the
response so the endpoint cannot be used to discover patients.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from slotfill.audit import AuditSink, audit
from slotfill.config import settings
from slotfill.dispatcher import CLOSED_STATUSES
from slotfill.models import (
    NotificationRecord,
    NotificationStatus,
    PatientResponse,
    ReplyResult,
    WaitlistStatus,
    utcnow,
)
from slotfill.store import EngineStore, entry_scope, patient_scope

logger = logging.getLogger(__name__)


class ReplyIntent(str, Enum):
    AFFIRMATIVE = "affirmative"
    NEGATIVE = "negative"
    UNRECOGNIZED = "unrecognized"


AFFIRMATIVE_TOKENS = frozenset({"YES", "Y", "ACCEPT"})
NEGATIVE_TOKENS = frozenset({"NO", "N", "DECLINE"})


def parse_reply(raw_text: Optional[str]) -> ReplyIntent:
    normalized = (raw_text or "").strip().upper()
    if normalized in AFFIRMATIVE_TOKENS:
        return ReplyIntent.AFFIRMATIVE
    if normalized in NEGATIVE_TOKENS:
        return ReplyIntent.NEGATIVE
    return ReplyIntent.UNRECOGNIZED


class ReplyResolver:
    def __init__(
        self,
        store: EngineStore,
        audit_sink: AuditSink,
        clock: Callable[[], datetime] = utcnow,
        lookback: Optional[timedelta] = None,
    ):
        self.store = store
        self.audit_sink = audit_sink
        self.clock = clock
        self.lookback = lookback or timedelta(hours=settings.reply_lookback_hours)

    async def _pending_offer(self, tenant_id: str, patient_id: str) -> Optional[NotificationRecord]:
        cutoff = self.clock() - self.lookback
        for record in await self.store.list_notifications(tenant_id, patient_id=patient_id):
            if (
                record.status == NotificationStatus.SENT
                and record.patient_response is None
                and record.created_at >= cutoff
            ):
                return record
        return None

    async def _offer_open(self, record: NotificationRecord, now: datetime) -> bool:
        # Offers made without a hold stay open; otherwise the hold must still be live.
        if record.hold_id is None:
            return True
        hold = await self.store.get_hold(record.tenant_id, record.hold_id)
        if hold is not None and hold.is_live(now):
            return True
        logger.info(
            "Patient accepted notification %s but hold %s is no longer live; entry left as is",
            record.id, record.hold_id,
        )
        return False

    async def process_reply(self, tenant_id: str, contact_address: str, raw_text: str) -> ReplyResult:
        patient = await self.store.find_patient_by_contact(tenant_id, contact_address)
        if patient is None:
            logger.debug("Reply from unknown sender ignored")
            return ReplyResult(matched=False)

        intent = parse_reply(raw_text)
        if intent == ReplyIntent.UNRECOGNIZED:
            logger.info("Unrecognized waitlist reply from patient %s", patient.id)
            return ReplyResult(matched=False)

        async with self.store.exclusive(patient_scope(tenant_id, patient.id)):
            record = await self._pending_offer(tenant_id, patient.id)
            if record is None:
                logger.info("No pending waitlist offer for patient %s", patient.id)
                return ReplyResult(matched=False)

            now = self.clock()
            record.responded_at = now
            if intent == ReplyIntent.AFFIRMATIVE:
                record.status = NotificationStatus.ACCEPTED
                record.patient_response = PatientResponse.ACCEPTED
            else:
                record.status = NotificationStatus.DECLINED
                record.patient_response = PatientResponse.DECLINED

            async with self.store.exclusive(entry_scope(tenant_id, record.waitlist_id)):
                async with self.store.unit_of_work() as uow:
                    uow.save(record)
                    if intent == ReplyIntent.AFFIRMATIVE and await self._offer_open(record, now):
                        entry = await self.store.get_entry(tenant_id, record.waitlist_id)
                        if entry is not None and entry.status not in CLOSED_STATUSES:
                            entry.status = WaitlistStatus.MATCHED
                            entry.updated_at = now
                            uow.save(entry)

        action = record.patient_response.value
        await audit(
            self.audit_sink, tenant_id, f"waitlist_notification_{action}", "waitlist", record.waitlist_id,
            actor=patient.id, notification_id=record.id, response=action, hold_id=record.hold_id,
        )
        logger.info(
            "Waitlist notification %s %s by patient %s",
            record.id, action, patient.id,
        )
        return ReplyResult(
            matched=True,
            action=action,
            waitlist_id=record.waitlist_id,
            notification_id=record.id,
            hold_id=record.hold_id,
        )
