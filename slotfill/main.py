"""
Waitlist fulfillment engine — FastAPI server

Handles:
  - Slot openings from the cancellation workflow (rank, hold, notify)
  - Staff actions on holds (accept, cancel, manual offers, listings)
  - Inbound patient replies (JSON webhook and Twilio SMS webhook)
  - Waitlist and patient intake used by staff tooling

The tenant is taken from the X-Tenant-ID header; Twilio callbacks use the
configured default tenant.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Optional

from fastapi import Depends, FastAPI, Form, Header, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from twilio.twiml.messaging_response import MessagingResponse

from slotfill.config import settings
from slotfill.engine import Engine, build_engine
from slotfill.errors import EngineError, NotFoundError, ValidationError
from slotfill.models import (
    HoldStatus,
    NotificationMethod,
    Outcome,
    Patient,
    Priority,
    SlotDescriptor,
    TimeOfDay,
    WaitlistStatus,
    new_id,
)
from slotfill.scheduler import get_scheduler

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

_engine: Engine | None = None


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = build_engine()
    return _engine


def get_tenant(x_tenant_id: Optional[str] = Header(default=None)) -> str:
    return x_tenant_id or settings.default_tenant_id


# ---------------------------------------------------------------------------
# App lifespan: start and stop APScheduler
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    scheduler = get_scheduler(get_engine())
    scheduler.start()
    logger.info("Scheduler started with %d jobs", len(scheduler.get_jobs()))
    yield
    scheduler.shutdown(wait=False)


app = FastAPI(
    title="Waitlist Fulfillment Engine",
    version="1.0.0",
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class SlotIn(BaseModel):
    provider_id: str
    location_id: str
    start: datetime
    end: datetime
    appointment_type_id: Optional[str] = None
    provider_name: str = ""
    location_name: str = ""

    def to_slot(self) -> SlotDescriptor:
        return SlotDescriptor(
            provider_id=self.provider_id,
            location_id=self.location_id,
            start=self.start,
            end=self.end,
            appointment_type_id=self.appointment_type_id,
            provider_name=self.provider_name,
            location_name=self.location_name,
        )


class SlotOpeningIn(SlotIn):
    max_matches: Optional[int] = Field(default=None, ge=1, le=50)


class NotifyIn(BaseModel):
    slot: SlotIn
    method: Optional[NotificationMethod] = None


class CancelIn(BaseModel):
    reason: Optional[str] = None


class ReplyIn(BaseModel):
    contact_address: str
    text: str


class PatientIn(BaseModel):
    id: Optional[str] = None
    name: str
    phone: str = ""
    email: str = ""
    preferred_method: NotificationMethod = NotificationMethod.SMS


class WaitlistIn(BaseModel):
    patient_id: str
    provider_id: Optional[str] = None
    appointment_type_id: Optional[str] = None
    location_id: Optional[str] = None
    priority: Priority = Priority.NORMAL
    preferred_start_date: Optional[date] = None
    preferred_end_date: Optional[date] = None
    preferred_time_of_day: TimeOfDay = TimeOfDay.ANY
    preferred_days_of_week: Optional[list[str]] = None
    reason: str = ""
    notes: str = ""


# ---------------------------------------------------------------------------
# Utilities
# ---------------------------------------------------------------------------

def _json(content, status_code: int = 200) -> JSONResponse:
    return JSONResponse(jsonable_encoder(content), status_code=status_code)


_OUTCOME_STATUS = {
    Outcome.SUCCESS: 200,
    Outcome.CONFLICT: 409,
    Outcome.RATE_LIMITED: 429,
    Outcome.ERROR: 502,
}


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse({"detail": str(exc)}, status_code=404)


@app.exception_handler(ValidationError)
async def validation_handler(request: Request, exc: ValidationError):
    return JSONResponse({"detail": str(exc)}, status_code=400)


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    logger.error("Engine error on %s: %s", request.url.path, exc)
    return JSONResponse({"detail": "Internal engine error"}, status_code=500)


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@app.get("/health")
async def health(engine: Engine = Depends(get_engine), tenant_id: str = Depends(get_tenant)):
    return {
        "status": "ok",
        "practice": settings.business_name,
        "waitlist_active": len(await engine.store.list_entries(tenant_id, WaitlistStatus.ACTIVE)),
        "holds_active": len(await engine.list_holds(tenant_id, status=HoldStatus.ACTIVE)),
    }


# ---------------------------------------------------------------------------
# Slot openings (cancellation workflow)
# ---------------------------------------------------------------------------

@app.post("/slots/openings")
async def trigger_slot_opening(
    body: SlotOpeningIn,
    engine: Engine = Depends(get_engine),
    tenant_id: str = Depends(get_tenant),
):
    holds = await engine.trigger_slot_opening(tenant_id, body.to_slot(), body.max_matches)
    return _json({
        "matches": [
            {"hold_id": h.id, "waitlist_id": h.waitlist_id, "hold_until": h.hold_until}
            for h in holds
        ]
    })


# ---------------------------------------------------------------------------
# Holds
# ---------------------------------------------------------------------------

@app.get("/holds")
async def list_holds(
    status: Optional[HoldStatus] = None,
    waitlist_id: Optional[str] = None,
    engine: Engine = Depends(get_engine),
    tenant_id: str = Depends(get_tenant),
):
    return _json(await engine.list_holds(tenant_id, waitlist_id=waitlist_id, status=status))


@app.get("/holds/stats")
async def hold_stats(engine: Engine = Depends(get_engine), tenant_id: str = Depends(get_tenant)):
    return _json(await engine.holds.get_stats(tenant_id))


@app.post("/holds/expire")
async def expire_holds(engine: Engine = Depends(get_engine), tenant_id: str = Depends(get_tenant)):
    """Run the expiry sweep now instead of waiting for the scheduler."""
    return _json({"expired": await engine.holds.expire_holds(tenant_id)})


@app.post("/holds/{hold_id}/accept")
async def accept_hold(
    hold_id: str,
    engine: Engine = Depends(get_engine),
    tenant_id: str = Depends(get_tenant),
    x_actor_id: Optional[str] = Header(default=None),
):
    result = await engine.accept_hold(tenant_id, hold_id, actor=x_actor_id or "system")
    return _json(result, status_code=_OUTCOME_STATUS[result.outcome])


@app.post("/holds/{hold_id}/cancel")
async def cancel_hold(
    hold_id: str,
    body: Optional[CancelIn] = None,
    engine: Engine = Depends(get_engine),
    tenant_id: str = Depends(get_tenant),
    x_actor_id: Optional[str] = Header(default=None),
):
    reason = body.reason if body else None
    result = await engine.cancel_hold(tenant_id, hold_id, reason=reason, actor=x_actor_id or "system")
    return _json(
        {"ok": result.outcome == Outcome.SUCCESS, **jsonable_encoder(result)},
        status_code=_OUTCOME_STATUS[result.outcome],
    )


# ---------------------------------------------------------------------------
# Waitlist
# ---------------------------------------------------------------------------

@app.post("/patients", status_code=201)
async def add_patient(body: PatientIn, engine: Engine = Depends(get_engine), tenant_id: str = Depends(get_tenant)):
    patient = Patient(
        id=body.id or new_id(),
        tenant_id=tenant_id,
        name=body.name,
        phone=body.phone,
        email=body.email,
        preferred_method=body.preferred_method,
    )
    return _json(await engine.add_patient(patient), status_code=201)


@app.get("/waitlist")
async def get_waitlist(
    status: WaitlistStatus = WaitlistStatus.ACTIVE,
    priority: Optional[Priority] = None,
    provider_id: Optional[str] = None,
    patient_id: Optional[str] = None,
    appointment_type_id: Optional[str] = None,
    engine: Engine = Depends(get_engine),
    tenant_id: str = Depends(get_tenant),
):
    return _json(await engine.list_waitlist(
        tenant_id,
        status=status,
        priority=priority,
        provider_id=provider_id,
        patient_id=patient_id,
        appointment_type_id=appointment_type_id,
    ))


@app.get("/waitlist/stats")
async def waitlist_stats(engine: Engine = Depends(get_engine), tenant_id: str = Depends(get_tenant)):
    return _json(await engine.waitlist_stats(tenant_id))


@app.post("/waitlist", status_code=201)
async def add_to_waitlist(
    body: WaitlistIn,
    engine: Engine = Depends(get_engine),
    tenant_id: str = Depends(get_tenant),
    x_actor_id: Optional[str] = Header(default=None),
):
    entry = await engine.add_to_waitlist(tenant_id, created_by=x_actor_id or "system", **body.model_dump())
    return _json(entry, status_code=201)


@app.delete("/waitlist/{waitlist_id}")
async def remove_from_waitlist(
    waitlist_id: str,
    engine: Engine = Depends(get_engine),
    tenant_id: str = Depends(get_tenant),
    x_actor_id: Optional[str] = Header(default=None),
):
    entry = await engine.remove_from_waitlist(tenant_id, waitlist_id, actor=x_actor_id or "system")
    return _json({"removed": entry.id, "status": entry.status})


@app.get("/waitlist/{waitlist_id}/holds")
async def waitlist_holds(
    waitlist_id: str,
    status: Optional[HoldStatus] = None,
    engine: Engine = Depends(get_engine),
    tenant_id: str = Depends(get_tenant),
):
    return _json(await engine.list_holds(tenant_id, waitlist_id=waitlist_id, status=status))


@app.get("/waitlist/{waitlist_id}/notifications")
async def waitlist_notifications(
    waitlist_id: str,
    engine: Engine = Depends(get_engine),
    tenant_id: str = Depends(get_tenant),
):
    return _json(await engine.notification_history(tenant_id, waitlist_id))


@app.post("/waitlist/{waitlist_id}/notify")
async def notify_candidate(
    waitlist_id: str,
    body: NotifyIn,
    engine: Engine = Depends(get_engine),
    tenant_id: str = Depends(get_tenant),
):
    result = await engine.notify_candidate(tenant_id, waitlist_id, body.slot.to_slot(), body.method)
    return _json(
        {"outcome": result.outcome, "notification_id": result.notification_id, "error": result.error},
        status_code=_OUTCOME_STATUS[result.outcome],
    )


# ---------------------------------------------------------------------------
# Inbound replies
# ---------------------------------------------------------------------------

@app.post("/replies")
async def inbound_reply(body: ReplyIn, engine: Engine = Depends(get_engine), tenant_id: str = Depends(get_tenant)):
    return _json(await engine.inbound_reply(tenant_id, body.contact_address, body.text))


_SMS_ACKS = {
    "accepted": (
        "Thanks! We've noted that you'd like this appointment. "
        "Our staff will confirm your booking shortly."
    ),
    "declined": "No problem. You'll stay on our waitlist for the next opening.",
}


@app.post("/twilio/sms")
async def twilio_sms(
    From: str = Form(default=""),
    Body: str = Form(default=""),
    engine: Engine = Depends(get_engine),
):
    result = await engine.inbound_reply(settings.default_tenant_id, From, Body)
    response = MessagingResponse()
    if result.matched and result.action in _SMS_ACKS:
        response.message(f"{settings.business_name}: {_SMS_ACKS[result.action]}")
    return Response(content=str(response), media_type="text/xml")
