"""
Slot matching — find waitlisted patients who could take a newly opened slot.

Unset preferences on an entry are wildcards. Eligible entries are served by
priority first and, within a priority, strictly first come first served.
"""

from __future__ import annotations

import logging
import zoneinfo
from datetime import date, datetime, time
from typing import Callable, Optional

from slotfill.config import settings
from slotfill.models import (
    PRIORITY_RANK,
    SlotDescriptor,
    TimeOfDay,
    WaitlistEntry,
    WaitlistStatus,
    utcnow,
)
from slotfill.store import EngineStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_RESULTS = settings.matcher_max_results

# [start, end) in office-local wall-clock time
TIME_OF_DAY_BUCKETS = (
    (TimeOfDay.MORNING, time(6, 0), time(12, 0)),
    (TimeOfDay.AFTERNOON, time(12, 0), time(17, 0)),
    (TimeOfDay.EVENING, time(17, 0), time(20, 0)),
)


def to_office_time(moment: datetime, tz: Optional[zoneinfo.ZoneInfo] = None) -> datetime:
    """Convert an aware slot time into ``tz``; otherwise keep its own wall clock."""
    if tz is None or moment.tzinfo is None:
        return moment
    return moment.astimezone(tz)


def time_of_day_bucket(start: datetime, tz: Optional[zoneinfo.ZoneInfo] = None) -> Optional[TimeOfDay]:
    """Morning, afternoon or evening for a slot start; None outside 06:00-20:00."""
    local = to_office_time(start, tz).time()
    for bucket, begin, end in TIME_OF_DAY_BUCKETS:
        if begin <= local < end:
            return bucket
    return None


def entry_matches(
    entry: WaitlistEntry,
    slot: SlotDescriptor,
    slot_date: date,
    bucket: Optional[TimeOfDay],
) -> bool:
    if entry.status != WaitlistStatus.ACTIVE:
        return False
    if entry.provider_id is not None and entry.provider_id != slot.provider_id:
        return False
    if entry.preferred_start_date is not None and entry.preferred_start_date > slot_date:
        return False
    if entry.preferred_end_date is not None and entry.preferred_end_date < slot_date:
        return False
    if entry.preferred_time_of_day != TimeOfDay.ANY and entry.preferred_time_of_day != bucket:
        return False
    # A requested visit type has to be the type the slot was booked for.
    if (
        entry.appointment_type_id is not None
        and slot.appointment_type_id is not None
        and entry.appointment_type_id != slot.appointment_type_id
    ):
        return False
    return True


def rank_key(entry: WaitlistEntry) -> tuple:
    return (PRIORITY_RANK[entry.priority], entry.created_at)


class SlotMatcher:
    def __init__(
        self,
        store: EngineStore,
        clock: Callable[[], datetime] = utcnow,
        tz: Optional[zoneinfo.ZoneInfo] = None,
    ):
        self.store = store
        self.clock = clock
        self.tz = tz

    async def find_candidates(
        self,
        tenant_id: str,
        slot: SlotDescriptor,
        max_results: int = DEFAULT_MAX_RESULTS,
    ) -> list[WaitlistEntry]:
        """Eligible active entries for ``slot``, best first, at most ``max_results``."""
        local_start = to_office_time(slot.start, self.tz)
        slot_date = local_start.date()
        bucket = time_of_day_bucket(slot.start, self.tz)

        entries = await self.store.list_entries(tenant_id, status=WaitlistStatus.ACTIVE)
        eligible = [e for e in entries if entry_matches(e, slot, slot_date, bucket)]

        # Skip anyone already holding a live offer.
        now = self.clock()
        holding = {
            h.waitlist_id
            for h in await self.store.list_holds(tenant_id)
            if h.is_live(now)
        }
        eligible = [e for e in eligible if e.id not in holding]

        eligible.sort(key=rank_key)
        candidates = eligible[:max(0, max_results)]
        logger.info(
            "Slot %s/%s at %s: %d eligible, returning %d",
            slot.provider_id,
            slot.location_id,
            slot.start.isoformat(),
            len(eligible),
            len(candidates),
        )
        return candidates
