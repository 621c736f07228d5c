"""
Appointment booking — the engine's view of the practice's appointment book.

The engine never owns appointment records; it asks an ``AppointmentBooker``
to create one when a hold is accepted, and to cancel it again if the rest of
the acceptance cannot be committed. ``InMemoryAppointmentBook`` stands in for
the EHR/scheduling system (Epic, Athena Health, Kareo, ...).
"""

from __future__ import annotations

import logging
import uuid
from typing import Optional, Protocol

from slotfill.errors import BookingError
from slotfill.models import Hold, Patient, utcnow

logger = logging.getLogger(__name__)


class AppointmentBooker(Protocol):
    async def create_appointment(self, tenant_id: str, patient: Patient, hold: Hold) -> str:
        """Book the hold's slot for the patient and return the appointment id."""

    async def cancel_appointment(self, tenant_id: str, appointment_id: str, reason: str = "") -> None:
        ...


class InMemoryAppointmentBook:
    def __init__(self):
        self.appointments: dict[str, dict] = {}

    def _is_booked(self, tenant_id: str, hold: Hold) -> bool:
        return any(
            a["tenant_id"] == tenant_id
            and a["provider_id"] == hold.provider_id
            and a["location_id"] == hold.location_id
            and a["start"] == hold.slot_start
            and a["status"] == "scheduled"
            for a in self.appointments.values()
        )

    async def create_appointment(self, tenant_id: str, patient: Patient, hold: Hold) -> str:
        if self._is_booked(tenant_id, hold):
            raise BookingError(
                f"{hold.slot_start.isoformat()} is no longer available for {hold.provider_id}."
            )

        appt_id = str(uuid.uuid4())[:8].upper()
        self.appointments[appt_id] = {
            "id": appt_id,
            "tenant_id": tenant_id,
            "patient_id": patient.id,
            "provider_id": hold.provider_id,
            "location_id": hold.location_id,
            "appointment_type_id": hold.appointment_type_id,
            "start": hold.slot_start,
            "end": hold.slot_end,
            "source": "waitlist",
            "hold_id": hold.id,
            "status": "scheduled",
            "notes": "",
            "created_at": utcnow().isoformat(),
        }
        logger.info("Appointment %s booked from hold %s", appt_id, hold.id)
        return appt_id

    async def cancel_appointment(self, tenant_id: str, appointment_id: str, reason: str = "") -> None:
        appt = self.appointments.get(appointment_id)
        if not appt or appt["tenant_id"] != tenant_id:
            raise BookingError(f"No appointment found with ID {appointment_id}.")
        appt["status"] = "cancelled"
        appt["notes"] += f" | Cancelled: {reason}" if reason else " | Cancelled"

    def get(self, appointment_id: str) -> Optional[dict]:
        return self.appointments.get(appointment_id)

    def scheduled(self) -> list[dict]:
        return [a for a in self.appointments.values() if a["status"] == "scheduled"]
