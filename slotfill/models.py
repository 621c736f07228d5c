"""
Domain records for the waitlist fulfillment engine.

Everything here is plain data. State transitions live in the services
(holds, dispatcher, replies); the store only persists what they hand it.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from slotfill.errors import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def as_utc(moment: Optional[datetime]) -> Optional[datetime]:
    """Aware datetimes in UTC; naive ones are left alone."""
    if moment is None or moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc)


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


# Lower rank is served first.
PRIORITY_RANK = {
    Priority.URGENT: 0,
    Priority.HIGH: 1,
    Priority.NORMAL: 2,
    Priority.LOW: 3,
}


class TimeOfDay(str, Enum):
    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"
    ANY = "any"


class WaitlistStatus(str, Enum):
    ACTIVE = "active"
    CONTACTED = "contacted"
    MATCHED = "matched"
    SCHEDULED = "scheduled"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class HoldStatus(str, Enum):
    ACTIVE = "active"
    ACCEPTED = "accepted"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class NotificationMethod(str, Enum):
    SMS = "sms"
    EMAIL = "email"
    PORTAL = "portal"


class NotificationStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    ACCEPTED = "accepted"
    DECLINED = "declined"


class PatientResponse(str, Enum):
    ACCEPTED = "accepted"
    DECLINED = "declined"


class Outcome(str, Enum):
    SUCCESS = "success"
    CONFLICT = "conflict"
    RATE_LIMITED = "rate_limited"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------


@dataclass
class Patient:
    """Contact details the engine may read but never writes."""

    id: str
    tenant_id: str
    name: str
    phone: str = ""
    email: str = ""
    preferred_method: NotificationMethod = NotificationMethod.SMS

    @property
    def first_name(self) -> str:
        return self.name.split(" ")[0] if self.name else ""


@dataclass
class WaitlistEntry:
    id: str
    tenant_id: str
    patient_id: str
    provider_id: Optional[str] = None
    appointment_type_id: Optional[str] = None
    location_id: Optional[str] = None
    reason: str = ""
    notes: str = ""
    priority: Priority = Priority.NORMAL
    preferred_start_date: Optional[date] = None
    preferred_end_date: Optional[date] = None
    preferred_time_of_day: TimeOfDay = TimeOfDay.ANY
    preferred_days_of_week: Optional[list[str]] = None
    status: WaitlistStatus = WaitlistStatus.ACTIVE
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    last_notified_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    scheduled_appointment_id: Optional[str] = None
    version: int = 0


@dataclass
class Hold:
    id: str
    tenant_id: str
    waitlist_id: str
    provider_id: str
    location_id: str
    slot_start: datetime
    slot_end: datetime
    hold_until: datetime
    appointment_type_id: Optional[str] = None
    status: HoldStatus = HoldStatus.ACTIVE
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    appointment_id: Optional[str] = None
    release_reason: Optional[str] = None
    version: int = 0

    @property
    def slot_key(self) -> tuple:
        return (self.tenant_id, self.provider_id, self.location_id, as_utc(self.slot_start))

    def is_live(self, now: datetime) -> bool:
        """Active and not yet past its hold window."""
        return self.status == HoldStatus.ACTIVE and now < self.hold_until

    def effective_status(self, now: datetime) -> HoldStatus:
        # Expiry is lazy: a stale active hold reads as expired without a sweep.
        if self.status == HoldStatus.ACTIVE and now >= self.hold_until:
            return HoldStatus.EXPIRED
        return self.status


@dataclass
class NotificationRecord:
    id: str
    tenant_id: str
    waitlist_id: str
    patient_id: str
    method: NotificationMethod
    slot_start: datetime
    slot_end: datetime
    provider_name: str = ""
    hold_id: Optional[str] = None
    delivery_reference: Optional[str] = None
    status: NotificationStatus = NotificationStatus.SENT
    patient_response: Optional[PatientResponse] = None
    created_at: datetime = field(default_factory=utcnow)
    responded_at: Optional[datetime] = None
    error_message: Optional[str] = None
    version: int = 0


# ---------------------------------------------------------------------------
# Ephemeral values
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SlotDescriptor:
    """A freed provider/location/time window handed to the matcher."""

    provider_id: str
    location_id: str
    start: datetime
    end: datetime
    appointment_type_id: Optional[str] = None
    provider_name: str = ""
    location_name: str = ""

    def __post_init__(self):
        # Kept in UTC so one instant always maps to one slot key.
        object.__setattr__(self, "start", as_utc(self.start))
        object.__setattr__(self, "end", as_utc(self.end))

    def validate(self) -> None:
        if not self.provider_id:
            raise ValidationError("Slot is missing provider_id")
        if not self.location_id:
            raise ValidationError("Slot is missing location_id")
        if self.start is None or self.end is None:
            raise ValidationError("Slot needs both start and end")
        if (self.start.tzinfo is None) != (self.end.tzinfo is None):
            raise ValidationError("Slot start and end must both carry a timezone or neither")
        if self.end <= self.start:
            raise ValidationError("Slot end must be after its start")


@dataclass
class DispatchResult:
    success: bool
    notification_id: Optional[str] = None
    error: Optional[str] = None
    rate_limited: bool = False

    @property
    def outcome(self) -> Outcome:
        if self.success:
            return Outcome.SUCCESS
        return Outcome.RATE_LIMITED if self.rate_limited else Outcome.ERROR


@dataclass
class AcceptResult:
    outcome: Outcome
    hold_id: str
    appointment_id: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class CancelResult:
    outcome: Outcome
    hold_id: str
    entry_reverted: bool = False
    reason: Optional[str] = None


@dataclass
class ReplyResult:
    matched: bool
    action: Optional[str] = None
    waitlist_id: Optional[str] = None
    notification_id: Optional[str] = None
    hold_id: Optional[str] = None
