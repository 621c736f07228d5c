"""
Tests for hold management: slot openings, acceptance exclusivity, expiry,
cancellation and the sweep.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from helpers import OTHER_TENANT, TENANT, UTC, FailingBook, YieldingBook, make_slot
from slotfill.booking import InMemoryAppointmentBook
from slotfill.engine import build_engine
from slotfill.errors import ConcurrentModificationError, NotFoundError, ValidationError
from slotfill.models import Hold, HoldStatus, Outcome, Priority, WaitlistStatus
from slotfill.store import EngineStore


class MeddlingBook(InMemoryAppointmentBook):
    """Books fine, but touches the entry so the acceptance commit loses its race."""

    def __init__(self, store: EngineStore):
        super().__init__()
        self.store = store

    async def create_appointment(self, tenant_id, patient, hold):
        appt_id = await super().create_appointment(tenant_id, patient, hold)
        entry = await self.store.get_entry(tenant_id, hold.waitlist_id)
        entry.notes = "edited by front desk"
        await self.store.save(entry)
        return appt_id


async def seed_candidates(seed, count: int) -> list:
    entries = []
    for i in range(count):
        await seed.patient(f"p{i}")
        entries.append(await seed.entry(f"p{i}", provider_id="P1"))
    return entries


@pytest.fixture
def yielding_book() -> YieldingBook:
    return YieldingBook()


@pytest.fixture
def racing_engine(gateway, audit_log, clock, seed, yielding_book):
    """An engine whose booker suspends mid-acceptance and never refuses a slot."""
    engine = build_engine(gateway=gateway, booker=yielding_book, audit_sink=audit_log, clock=clock, tz=UTC)
    seed.engine = engine
    return engine


# ============================================================================
# SLOT OPENINGS
# ============================================================================


@pytest.mark.asyncio
async def test_slot_opening_holds_and_notifies_in_rank_order(engine, seed, gateway, audit_log, clock):
    await seed.patient("p0")
    await seed.patient("p1")
    normal = await seed.entry("p0", provider_id="P1")
    urgent = await seed.entry("p1", provider_id="P1", priority=Priority.URGENT)

    holds = await engine.trigger_slot_opening(TENANT, make_slot())

    assert [h.waitlist_id for h in holds] == [urgent.id, normal.id]
    assert all(h.status == HoldStatus.ACTIVE for h in holds)
    assert all(h.hold_until == clock() + timedelta(hours=24) for h in holds)
    assert [m.patient_id for m in gateway.sent] == ["p1", "p0"]

    for entry in (urgent, normal):
        stored = await engine.store.get_entry(TENANT, entry.id)
        assert stored.status == WaitlistStatus.CONTACTED

    records = await engine.notification_history(TENANT, urgent.id)
    assert records[0].hold_id == holds[0].id
    assert audit_log.actions().count("waitlist_hold_created") == 2
    assert audit_log.actions()[-1] == "waitlist_auto_fill_processed"


@pytest.mark.asyncio
async def test_slot_opening_respects_max_matches(engine, seed):
    await seed_candidates(seed, 4)

    holds = await engine.trigger_slot_opening(TENANT, make_slot(), max_matches=2)

    assert len(holds) == 2


@pytest.mark.asyncio
async def test_slot_opening_rejects_bad_input(engine):
    with pytest.raises(ValidationError):
        await engine.trigger_slot_opening(TENANT, make_slot(), max_matches=0)
    with pytest.raises(ValidationError):
        await engine.trigger_slot_opening(TENANT, make_slot(provider_id=""))
    with pytest.raises(ValidationError):
        await engine.trigger_slot_opening(TENANT, make_slot(minutes=0))


@pytest.mark.asyncio
async def test_slot_opening_with_no_candidates(engine):
    assert await engine.trigger_slot_opening(TENANT, make_slot()) == []


@pytest.mark.asyncio
async def test_failed_notification_keeps_the_hold(engine, seed, gateway):
    entries = await seed_candidates(seed, 2)
    gateway.failing.add("p0")

    holds = await engine.trigger_slot_opening(TENANT, make_slot())

    assert len(holds) == 2
    first = await engine.store.get_entry(TENANT, entries[0].id)
    second = await engine.store.get_entry(TENANT, entries[1].id)
    assert first.status == WaitlistStatus.MATCHED
    assert second.status == WaitlistStatus.CONTACTED


@pytest.mark.asyncio
async def test_entry_with_live_hold_is_not_offered_a_second_slot(engine, seed, clock):
    await seed_candidates(seed, 1)

    first = await engine.trigger_slot_opening(TENANT, make_slot())
    clock.advance(hours=2)
    second = await engine.trigger_slot_opening(
        TENANT, make_slot(start=datetime(2025, 3, 5, 9, 0, tzinfo=timezone.utc)),
    )

    assert len(first) == 1
    assert second == []


@pytest.mark.asyncio
async def test_claimed_slot_is_not_held_again(engine, seed, clock):
    entries = await seed_candidates(seed, 1)
    holds = await engine.trigger_slot_opening(TENANT, make_slot())
    await engine.accept_hold(TENANT, holds[0].id)

    await seed.patient("late")
    await seed.entry("late", provider_id="P1")
    clock.advance(hours=2)

    assert await engine.trigger_slot_opening(TENANT, make_slot()) == []
    assert (await engine.store.get_entry(TENANT, entries[0].id)).status == WaitlistStatus.SCHEDULED


# ============================================================================
# ACCEPTANCE
# ============================================================================


@pytest.mark.asyncio
async def test_accept_books_and_schedules(engine, seed, book, audit_log):
    await seed_candidates(seed, 1)
    [hold] = await engine.trigger_slot_opening(TENANT, make_slot())

    result = await engine.accept_hold(TENANT, hold.id, actor="staff-7")

    assert result.outcome == Outcome.SUCCESS
    assert result.appointment_id in book.appointments
    stored_hold = await engine.store.get_hold(TENANT, hold.id)
    assert stored_hold.status == HoldStatus.ACCEPTED
    assert stored_hold.appointment_id == result.appointment_id
    entry = await engine.store.get_entry(TENANT, hold.waitlist_id)
    assert entry.status == WaitlistStatus.SCHEDULED
    assert entry.scheduled_appointment_id == result.appointment_id
    assert entry.resolved_at is not None
    accepted = [e for e in audit_log.events if e.action == "waitlist_hold_accepted"]
    assert accepted[0].actor == "staff-7"


@pytest.mark.asyncio
async def test_accepting_one_hold_supersedes_the_entrys_other_holds(engine, seed, book):
    await seed.patient("p1")
    entry = await seed.entry("p1", status=WaitlistStatus.MATCHED)
    tuesday = await seed.hold(entry, make_slot())
    wednesday = await seed.hold(
        entry, make_slot(start=datetime(2025, 3, 5, 14, 0, tzinfo=timezone.utc)),
    )

    first = await engine.accept_hold(TENANT, tuesday.id)
    second = await engine.accept_hold(TENANT, wednesday.id)

    assert first.outcome == Outcome.SUCCESS
    assert second.outcome == Outcome.CONFLICT
    assert second.reason == "already_cancelled"
    assert second.appointment_id is None
    superseded = await engine.store.get_hold(TENANT, wednesday.id)
    assert superseded.status == HoldStatus.CANCELLED
    assert superseded.release_reason == "superseded"
    assert len(book.scheduled()) == 1


@pytest.mark.asyncio
async def test_concurrent_accepts_of_one_hold_book_once(racing_engine, seed, yielding_book):
    engine, book = racing_engine, yielding_book
    await seed_candidates(seed, 1)
    [hold] = await engine.trigger_slot_opening(TENANT, make_slot())

    results = await asyncio.gather(
        engine.accept_hold(TENANT, hold.id),
        engine.accept_hold(TENANT, hold.id),
    )

    outcomes = sorted(r.outcome.value for r in results)
    assert outcomes == ["conflict", "success"]
    assert [r.reason for r in results if r.outcome == Outcome.CONFLICT] == ["already_accepted"]
    assert sum(1 for r in results if r.appointment_id) == 1
    assert len(book.scheduled()) == 1


@pytest.mark.asyncio
async def test_concurrent_accepts_of_one_slot_book_once(racing_engine, seed, yielding_book):
    engine, book = racing_engine, yielding_book
    await seed_candidates(seed, 3)
    holds = await engine.trigger_slot_opening(TENANT, make_slot())

    results = await asyncio.gather(*(engine.accept_hold(TENANT, h.id) for h in holds))

    assert [r.outcome for r in results].count(Outcome.SUCCESS) == 1
    assert {r.reason for r in results if r.outcome == Outcome.CONFLICT} == {"slot_taken"}
    assert len(book.scheduled()) == 1


@pytest.mark.asyncio
async def test_one_instant_written_with_different_offsets_is_one_slot(racing_engine, seed, yielding_book, clock):
    first, second = await seed_candidates(seed, 2)
    utc_slot = make_slot(start=datetime(2025, 3, 4, 14, 0, tzinfo=timezone.utc))
    utc_hold = await seed.hold(first, utc_slot)
    eastern = timezone(timedelta(hours=-5))
    offset_hold = await racing_engine.store.insert(Hold(
        id="hold-eastern",
        tenant_id=TENANT,
        waitlist_id=second.id,
        provider_id="P1",
        location_id="L1",
        slot_start=datetime(2025, 3, 4, 9, 0, tzinfo=eastern),
        slot_end=datetime(2025, 3, 4, 9, 30, tzinfo=eastern),
        hold_until=clock() + timedelta(hours=24),
        created_at=clock(),
    ))
    assert offset_hold.slot_key == utc_hold.slot_key

    results = await asyncio.gather(
        racing_engine.accept_hold(TENANT, utc_hold.id),
        racing_engine.accept_hold(TENANT, offset_hold.id),
    )

    assert [r.outcome for r in results].count(Outcome.SUCCESS) == 1
    assert [r.reason for r in results if r.outcome == Outcome.CONFLICT] == ["slot_taken"]
    assert len(yielding_book.scheduled()) == 1


def test_slot_times_are_kept_in_utc():
    eastern = timezone(timedelta(hours=-5))
    slot = make_slot(start=datetime(2025, 3, 4, 9, 0, tzinfo=eastern))

    assert slot.start == datetime(2025, 3, 4, 14, 0, tzinfo=timezone.utc)
    assert slot.start.utcoffset() == timedelta(0)
    assert slot.end.utcoffset() == timedelta(0)


@pytest.mark.asyncio
async def test_expired_hold_cannot_be_accepted_without_a_sweep(engine, seed, clock, book):
    await seed_candidates(seed, 1)
    [hold] = await engine.trigger_slot_opening(TENANT, make_slot())

    clock.advance(hours=24)
    result = await engine.accept_hold(TENANT, hold.id)

    assert result.outcome == Outcome.CONFLICT
    assert result.reason == "expired"
    assert book.appointments == {}
    # Nothing was written; the hold only reads as expired.
    stored = await engine.store.get_hold(TENANT, hold.id)
    assert stored.status == HoldStatus.ACTIVE
    [listed] = await engine.list_holds(TENANT, waitlist_id=hold.waitlist_id)
    assert listed.status == HoldStatus.EXPIRED


@pytest.mark.asyncio
async def test_accept_unknown_hold_raises(engine):
    with pytest.raises(NotFoundError):
        await engine.accept_hold(TENANT, "missing")


@pytest.mark.asyncio
async def test_accept_is_tenant_scoped(engine, seed):
    await seed_candidates(seed, 1)
    [hold] = await engine.trigger_slot_opening(TENANT, make_slot())

    with pytest.raises(NotFoundError):
        await engine.accept_hold(OTHER_TENANT, hold.id)


@pytest.mark.asyncio
async def test_accept_for_cancelled_entry_conflicts(engine, seed, audit_log):
    await seed.patient("p1")
    entry = await seed.entry("p1", status=WaitlistStatus.CANCELLED)
    hold = await seed.hold(entry, make_slot())

    result = await engine.accept_hold(TENANT, hold.id)

    assert result.outcome == Outcome.CONFLICT
    assert result.reason == "entry_cancelled"
    rejected = audit_log.events[-1]
    assert rejected.action == "waitlist_hold_accept_rejected"
    assert rejected.status == "conflict"
    assert rejected.metadata["reason"] == "entry_cancelled"


@pytest.mark.asyncio
async def test_booking_failure_leaves_no_partial_state(gateway, audit_log, clock, seed):
    engine = build_engine(gateway=gateway, booker=FailingBook(), audit_sink=audit_log, clock=clock, tz=UTC)
    seed.engine = engine
    await seed_candidates(seed, 1)
    [hold] = await engine.trigger_slot_opening(TENANT, make_slot())
    entry_before = await engine.store.get_entry(TENANT, hold.waitlist_id)

    result = await engine.accept_hold(TENANT, hold.id)

    assert result.outcome == Outcome.ERROR
    assert "EHR unavailable" in result.reason
    stored = await engine.store.get_hold(TENANT, hold.id)
    assert stored.status == HoldStatus.ACTIVE
    assert stored.appointment_id is None
    entry_after = await engine.store.get_entry(TENANT, hold.waitlist_id)
    assert entry_after.status == entry_before.status
    assert entry_after.version == entry_before.version
    assert "waitlist_hold_accept_failed" in audit_log.actions()


@pytest.mark.asyncio
async def test_failed_commit_cancels_the_booking(gateway, audit_log, clock, seed):
    store = EngineStore()
    book = MeddlingBook(store)
    engine = build_engine(gateway=gateway, booker=book, audit_sink=audit_log, clock=clock, store=store, tz=UTC)
    seed.engine = engine
    await seed_candidates(seed, 1)
    [hold] = await engine.trigger_slot_opening(TENANT, make_slot())

    with pytest.raises(ConcurrentModificationError):
        await engine.accept_hold(TENANT, hold.id)

    assert book.scheduled() == []
    assert [a["status"] for a in book.appointments.values()] == ["cancelled"]
    stored = await engine.store.get_hold(TENANT, hold.id)
    assert stored.status == HoldStatus.ACTIVE


# ============================================================================
# CANCELLATION AND EXPIRY
# ============================================================================


@pytest.mark.asyncio
async def test_cancel_reopens_the_entry(engine, seed, audit_log):
    await seed_candidates(seed, 1)
    [hold] = await engine.trigger_slot_opening(TENANT, make_slot())
    offered = await engine.store.get_entry(TENANT, hold.waitlist_id)
    assert offered.status == WaitlistStatus.CONTACTED

    result = await engine.cancel_hold(TENANT, hold.id, reason="patient called")

    assert result.outcome == Outcome.SUCCESS
    assert result.entry_reverted
    stored = await engine.store.get_hold(TENANT, hold.id)
    assert stored.status == HoldStatus.CANCELLED
    assert stored.release_reason == "patient called"
    entry = await engine.store.get_entry(TENANT, hold.waitlist_id)
    assert entry.status == WaitlistStatus.ACTIVE
    assert "waitlist_hold_cancelled" in audit_log.actions()


@pytest.mark.asyncio
async def test_cancel_does_not_reopen_a_scheduled_entry(engine, seed):
    await seed.patient("p1")
    entry = await seed.entry("p1", status=WaitlistStatus.SCHEDULED, scheduled_appointment_id="APPT1")
    hold = await seed.hold(entry, make_slot())

    result = await engine.cancel_hold(TENANT, hold.id)

    assert result.outcome == Outcome.SUCCESS
    assert not result.entry_reverted
    assert (await engine.store.get_entry(TENANT, entry.id)).status == WaitlistStatus.SCHEDULED


@pytest.mark.asyncio
async def test_cancel_keeps_entry_matched_while_another_hold_is_live(engine, seed):
    await seed.patient("p1")
    entry = await seed.entry("p1", status=WaitlistStatus.MATCHED)
    first = await seed.hold(entry, make_slot())
    await seed.hold(entry, make_slot(start=datetime(2025, 3, 6, 10, 0, tzinfo=timezone.utc)))

    result = await engine.cancel_hold(TENANT, first.id)

    assert not result.entry_reverted
    assert (await engine.store.get_entry(TENANT, entry.id)).status == WaitlistStatus.MATCHED


@pytest.mark.asyncio
async def test_cancel_inactive_hold_conflicts(engine, seed):
    await seed_candidates(seed, 1)
    [hold] = await engine.trigger_slot_opening(TENANT, make_slot())
    await engine.cancel_hold(TENANT, hold.id)

    again = await engine.cancel_hold(TENANT, hold.id)

    assert again.outcome == Outcome.CONFLICT
    assert again.reason == "already_cancelled"


@pytest.mark.asyncio
async def test_sweep_expires_holds_and_reopens_entries(engine, seed, clock, audit_log):
    entries = await seed_candidates(seed, 2)
    holds = await engine.trigger_slot_opening(TENANT, make_slot())

    assert await engine.holds.expire_holds() == 0
    clock.advance(hours=25)
    assert await engine.holds.expire_holds() == 2
    assert await engine.holds.expire_holds() == 0

    for hold, entry in zip(holds, entries):
        stored = await engine.store.get_hold(TENANT, hold.id)
        assert stored.status == HoldStatus.EXPIRED
        assert stored.release_reason == "expired"
        assert (await engine.store.get_entry(TENANT, entry.id)).status == WaitlistStatus.ACTIVE
    assert "waitlist_holds_expired" in audit_log.actions()


@pytest.mark.asyncio
async def test_sweep_can_be_limited_to_one_tenant(engine, seed, clock):
    mine = await seed_candidates(seed, 1)
    await seed.patient("q1", tenant_id=OTHER_TENANT)
    theirs = await seed.entry("q1", tenant_id=OTHER_TENANT, status=WaitlistStatus.MATCHED)
    await seed.hold(theirs, make_slot())
    await engine.trigger_slot_opening(TENANT, make_slot())

    clock.advance(hours=25)

    assert await engine.holds.expire_holds(TENANT) == 1
    assert (await engine.store.get_entry(TENANT, mine[0].id)).status == WaitlistStatus.ACTIVE
    assert (await engine.store.get_entry(OTHER_TENANT, theirs.id)).status == WaitlistStatus.MATCHED


# ============================================================================
# QUERIES AND INTAKE
# ============================================================================


@pytest.mark.asyncio
async def test_list_holds_filters_by_status_and_tenant(engine, seed, clock):
    await seed_candidates(seed, 2)
    holds = await engine.trigger_slot_opening(TENANT, make_slot())
    await engine.cancel_hold(TENANT, holds[1].id)

    active = await engine.list_holds(TENANT, status=HoldStatus.ACTIVE)
    cancelled = await engine.list_holds(TENANT, status=HoldStatus.CANCELLED)

    assert [h.id for h in active] == [holds[0].id]
    assert [h.id for h in cancelled] == [holds[1].id]
    assert await engine.list_holds(OTHER_TENANT) == []


@pytest.mark.asyncio
async def test_list_holds_for_unknown_entry_raises(engine):
    with pytest.raises(NotFoundError):
        await engine.list_holds(TENANT, waitlist_id="nope")


@pytest.mark.asyncio
async def test_stats(engine, seed, clock):
    await seed_candidates(seed, 3)
    holds = await engine.trigger_slot_opening(TENANT, make_slot())
    clock.advance(hours=3)
    await engine.accept_hold(TENANT, holds[0].id)
    await engine.cancel_hold(TENANT, holds[1].id)

    stats = await engine.holds.get_stats(TENANT)

    assert stats == {
        "active_holds": 1,
        "accepted_holds": 1,
        "expired_holds": 0,
        "cancelled_holds": 1,
        "total_holds": 3,
        "avg_accept_time_hours": 3.0,
    }


@pytest.mark.asyncio
async def test_add_to_waitlist_requires_known_patient(engine):
    with pytest.raises(NotFoundError):
        await engine.add_to_waitlist(TENANT, "nobody")


@pytest.mark.asyncio
async def test_remove_from_waitlist_releases_holds(engine, seed, audit_log):
    await seed_candidates(seed, 1)
    [hold] = await engine.trigger_slot_opening(TENANT, make_slot())

    entry = await engine.remove_from_waitlist(TENANT, hold.waitlist_id)

    assert entry.status == WaitlistStatus.CANCELLED
    stored = await engine.store.get_hold(TENANT, hold.id)
    assert stored.status == HoldStatus.CANCELLED
    assert stored.release_reason == "entry_cancelled"
    assert "waitlist_entry_cancelled" in audit_log.actions()


# ============================================================================
# WAITLIST LISTING AND DASHBOARD
# ============================================================================


@pytest.mark.asyncio
async def test_list_waitlist_filters_and_orders(engine, seed):
    await seed.patient("p1")
    await seed.patient("p2")
    normal = await seed.entry("p1", provider_id="P1", appointment_type_id="checkup")
    urgent = await seed.entry("p2", provider_id="P2", priority=Priority.URGENT)
    high = await seed.entry("p1", provider_id="P1", priority=Priority.HIGH, appointment_type_id="checkup")
    await seed.entry("p2", provider_id="P1", status=WaitlistStatus.SCHEDULED)

    assert [e.id for e in await engine.list_waitlist(TENANT)] == [urgent.id, high.id, normal.id]
    assert [e.id for e in await engine.list_waitlist(TENANT, priority=Priority.HIGH)] == [high.id]
    assert [e.id for e in await engine.list_waitlist(TENANT, provider_id="P1")] == [high.id, normal.id]
    assert [e.id for e in await engine.list_waitlist(TENANT, patient_id="p2")] == [urgent.id]
    assert [e.id for e in await engine.list_waitlist(TENANT, appointment_type_id="checkup")] == [high.id, normal.id]
    assert len(await engine.list_waitlist(TENANT, status=None)) == 4
    assert await engine.list_waitlist(OTHER_TENANT) == []


@pytest.mark.asyncio
async def test_waitlist_stats(engine, seed, clock):
    now = clock()
    await seed.patient("p1")
    await seed.entry("p1", priority=Priority.URGENT, created_at=now - timedelta(days=10))
    await seed.entry("p1", priority=Priority.HIGH, created_at=now - timedelta(days=4))
    await seed.entry("p1", created_at=now - timedelta(days=1))
    await seed.entry("p1", status=WaitlistStatus.CONTACTED, priority=Priority.URGENT)
    await seed.entry("p1", status=WaitlistStatus.MATCHED)
    await seed.entry("p1", status=WaitlistStatus.SCHEDULED, resolved_at=now - timedelta(days=2))
    await seed.entry("p1", status=WaitlistStatus.SCHEDULED, resolved_at=now - timedelta(days=20))
    await seed.entry("p1", status=WaitlistStatus.CANCELLED)
    # Outside the 90-day window.
    await seed.entry("p1", priority=Priority.URGENT, created_at=now - timedelta(days=120))

    stats = await engine.waitlist_stats(TENANT)

    assert stats == {
        "total_active": 3,
        "total_contacted": 1,
        "total_matched": 1,
        "total_scheduled": 2,
        "urgent_count": 2,
        "high_priority_count": 1,
        "average_wait_days": 5.0,
        "filled_this_week": 1,
        "filled_this_month": 2,
        "conversion_rate": 25.0,
    }


@pytest.mark.asyncio
async def test_waitlist_stats_when_empty(engine):
    stats = await engine.waitlist_stats(TENANT)

    assert stats["total_active"] == 0
    assert stats["average_wait_days"] == 0
    assert stats["conversion_rate"] == 0
