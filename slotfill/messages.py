"""Patient-facing copy for waitlist offers."""

from __future__ import annotations

import zoneinfo
from datetime import datetime
from typing import Optional

from slotfill.config import settings
from slotfill.matcher import to_office_time


def format_date(moment: datetime) -> str:
    # e.g. "Tuesday, March 4, 2025"
    return f"{moment:%A}, {moment:%B} {moment.day}, {moment.year}"


def format_time(moment: datetime) -> str:
    hour = moment.hour % 12 or 12
    return f"{hour}:{moment:%M} {'AM' if moment.hour < 12 else 'PM'}"


def _hold_window(hold_hours: float) -> str:
    hours = int(hold_hours) if float(hold_hours).is_integer() else hold_hours
    return f"{hours} hour" if hours == 1 else f"{hours} hours"


def waitlist_offer_sms(
    first_name: str,
    provider_name: str,
    start: datetime,
    hold_hours: float,
    tz: Optional[zoneinfo.ZoneInfo] = None,
) -> str:
    """Offer a newly opened slot to a waitlisted patient, in office-local time."""
    start = to_office_time(start, tz)
    provider = provider_name or "your provider"
    return (
        f"{settings.business_name}\n"
        f"Good news, {first_name}! An appointment has opened up:\n"
        f"  {provider}\n"
        f"  {format_date(start)} at {format_time(start)}\n\n"
        f"Reply YES to book or NO to pass. "
        f"It will be offered to others if not claimed within {_hold_window(hold_hours)}."
    )


def waitlist_offer_email(
    first_name: str,
    provider_name: str,
    start: datetime,
    hold_hours: float,
    tz: Optional[zoneinfo.ZoneInfo] = None,
) -> tuple[str, str]:
    """Subject and body for the email version of the offer."""
    start = to_office_time(start, tz)
    subject = "Appointment Slot Available"
    provider = provider_name or "your provider"
    body = (
        f"Dear {first_name},\n\n"
        f"Good news! An appointment slot has opened up that matches your waitlist preferences.\n\n"
        f"Appointment Details:\n"
        f"- Provider: {provider}\n"
        f"- Date: {format_date(start)}\n"
        f"- Time: {format_time(start)}\n\n"
        f"Reply YES to this message or contact our office to confirm. The slot will be "
        f"offered to other patients if not claimed within {_hold_window(hold_hours)}.\n\n"
        f"Thank you,\n{settings.business_name}"
    )
    return subject, body
