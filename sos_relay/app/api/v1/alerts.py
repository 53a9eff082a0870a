"""
FastAPI route: SOS alert submission and dispatcher feed.

Provides endpoints to:
    POST  /api/v1/alerts                 — citizen submits an SOS
    POST  /api/v1/alerts/sms-handoff     — compose the offline SMS fallback
    GET   /api/v1/alerts/feed            — dispatcher feed projection
    GET   /api/v1/alerts/stats           — 24 h rolling counts
    GET   /api/v1/alerts/escalation      — alarm / re-notify engine state
    GET   /api/v1/alerts/{id}            — single alert
    PATCH /api/v1/alerts/{id}/status     — lifecycle transition
    POST  /api/v1/alerts/{id}/advice     — generate + attach advisory text

Everything except the two citizen endpoints sits behind the dispatcher
gate (X-Badge-Id / X-Badge-Secret headers).
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from sos_relay.app.alerts.channels.sms_handoff import build_sms_handoff
from sos_relay.app.alerts.citizen import SosForm, submit_sos, validate_phone
from sos_relay.app.alerts.console import change_status
from sos_relay.app.alerts.feed import PAGE_SIZE, FeedStats, FeedTab, FeedView
from sos_relay.app.alerts.lifecycle import allowed_targets
from sos_relay.app.alerts.models import AlertStatus, EmergencyType, GeoLocation, now_ms
from sos_relay.app.core.config import settings
from sos_relay.app.core.security import require_dispatcher
from sos_relay.app.services import RelayServices, get_services

router = APIRouter(prefix="/api/v1/alerts", tags=["alerts"])


# ---------------------------------------------------------------------------
# Request / Response Schemas
# ---------------------------------------------------------------------------

class LocationInput(BaseModel):
    """Device geolocation; all fields optional."""
    lat: Optional[float] = Field(None, ge=-90, le=90, examples=[-25.9692])
    lng: Optional[float] = Field(None, ge=-180, le=180, examples=[32.5732])
    accuracy: Optional[float] = Field(None, ge=0, description="Metres", examples=[12.0])

    def to_location(self) -> GeoLocation:
        return GeoLocation(lat=self.lat, lng=self.lng, accuracy_m=self.accuracy)


class SosRequest(BaseModel):
    """A citizen SOS report."""
    type: EmergencyType = Field(EmergencyType.GENERAL, examples=["civil_police"])
    phone: str = Field(
        ..., description="Local mobile number (9 digits, prefix 82-87)",
        examples=["841234567"],
    )
    manual_address: str = Field(
        ..., description="Province, city, neighbourhood",
        examples=["Maputo, Polana Cimento, Av. Julius Nyerere"],
    )
    description: str = Field("", max_length=1000, examples=["Break-in in progress"])
    user_name: Optional[str] = Field(None, examples=["Ana"])
    location: LocationInput = Field(default_factory=LocationInput)

    def to_form(self) -> SosForm:
        return SosForm(
            type=self.type,
            phone=self.phone,
            manual_address=self.manual_address,
            description=self.description,
            location=self.location.to_location(),
            user_name=self.user_name,
        )


class StatusRequest(BaseModel):
    status: AlertStatus = Field(..., examples=["in_progress"])


class SubmitResponse(BaseModel):
    alert_id: str
    status: str = AlertStatus.NEW.value


class FeedResponse(BaseModel):
    tab: str
    visible_count: int
    has_more: bool
    alerts: List[Dict[str, Any]]
    tab_counts: Dict[str, int]
    stats_24h: Dict[str, int]


# ---------------------------------------------------------------------------
# Citizen endpoints
# ---------------------------------------------------------------------------

@router.post(
    "",
    response_model=SubmitResponse,
    status_code=201,
    summary="Submit an SOS alert",
    description=(
        "Validates the report and persists it with status 'new'. Registered "
        "dispatchers receive a push notification. 503 means the store is "
        "unreachable (retry or send by SMS); 403 means the store's access "
        "rules rejected the write."
    ),
)
async def submit_alert(
    request: SosRequest,
    services: RelayServices = Depends(get_services),
):
    result = await submit_sos(services.store, request.to_form())
    return SubmitResponse(alert_id=result.alert_id)


@router.post(
    "/sms-handoff",
    summary="Compose the offline SMS fallback",
    description="Returns the SMS body and an sms: URI for the emergency number.",
)
async def sms_handoff(request: SosRequest):
    form = request.to_form()
    handoff = build_sms_handoff(
        form.type,
        validate_phone(form.phone),
        form.description.strip(),
        form.manual_address.strip(),
        form.location,
        recipient=settings.EMERGENCY_SMS_NUMBER,
    )
    return handoff.to_dict()


# ---------------------------------------------------------------------------
# Dispatcher endpoints
# ---------------------------------------------------------------------------

@router.get(
    "/feed",
    response_model=FeedResponse,
    summary="Dispatcher feed",
    description=(
        "Valid alerts of one tab, newest first, cut to `visible_count`. "
        "Grow `visible_count` by 20 for each 'load more'."
    ),
)
async def get_feed(
    tab: FeedTab = Query(FeedTab.PENDING),
    visible_count: int = Query(PAGE_SIZE, ge=1, le=1000),
    float_new: bool = Query(False, description="Float status=new to the top"),
    services: RelayServices = Depends(get_services),
    _badge: str = Depends(require_dispatcher),
):
    view = FeedView(tab, float_new=float_new)
    view.apply_snapshot(services.live.alerts, now_ms())
    view.visible_count = visible_count
    return view.to_dict()


@router.get("/stats", summary="24 h rolling alert counts")
async def get_stats(
    services: RelayServices = Depends(get_services),
    _badge: str = Depends(require_dispatcher),
):
    return FeedStats.compute(services.live.alerts, now_ms()).to_dict()


@router.get(
    "/escalation",
    summary="Alarm escalation state",
    description=(
        "Re-evaluates the running escalation engine against the live "
        "snapshot and returns its decision and state. Re-notification is "
        "debounced to once per 5 minutes across all evaluations."
    ),
)
async def get_escalation(
    services: RelayServices = Depends(get_services),
    _badge: str = Depends(require_dispatcher),
):
    engine = services.engine
    decision = engine.evaluate()
    return {
        "evaluated_at": now_ms(),
        "armed": engine.authenticated,
        "state": engine.state.to_dict(),
        **decision.to_dict(),
    }


@router.get("/{alert_id}", summary="Get a single alert")
async def get_alert(
    alert_id: str,
    services: RelayServices = Depends(get_services),
    _badge: str = Depends(require_dispatcher),
):
    alert = await services.store.get(alert_id)
    return {
        **alert.to_dict(),
        "allowed_transitions": sorted(s.value for s in allowed_targets(alert.status)),
    }


@router.patch(
    "/{alert_id}/status",
    summary="Change alert status",
    description="new → in_progress → resolved (new → resolved allowed). Resolved is final.",
)
async def patch_status(
    alert_id: str,
    request: StatusRequest,
    services: RelayServices = Depends(get_services),
    badge_id: str = Depends(require_dispatcher),
):
    alert = await change_status(services.store, alert_id, request.status)
    return {**alert.to_dict(), "updated_by": badge_id}


@router.post(
    "/{alert_id}/advice",
    summary="Generate advisory text",
    description=(
        "Asks the generative model for an immediate action protocol and "
        "attaches it to the alert. Falls back to a fixed text on failure."
    ),
)
async def request_advice(
    alert_id: str,
    services: RelayServices = Depends(get_services),
    _badge: str = Depends(require_dispatcher),
):
    alert = await services.store.get(alert_id)
    text = await services.advisory.request_advice(
        alert.type, alert.location, alert.manual_address,
    )
    attached = await services.store.attach_advice(alert_id, text)
    return {"alert_id": alert_id, "ai_advice": text, "attached": attached}
