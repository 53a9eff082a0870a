"""
citizen.py — Citizen SOS submission.

Canonical flow (profile-based registration, single free-text address):

    1. Validate the local phone number: 9 digits, mobile prefix 82–87
    2. Require a manual address (≥ 5 characters after trimming)
    3. Online  → AlertStore.create()         (store errors propagate)
       Offline → compose an SMS hand-off     (counts as success)

Store errors keep their type so the client can tell a connectivity
problem (StoreUnavailable: retry or use SMS) from an access-rule problem
(PermissionDenied: the operator must fix the store rules).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from sos_relay.app.alerts.channels.sms_handoff import SmsHandoff, build_sms_handoff
from sos_relay.app.alerts.models import AlertInput, EmergencyType, GeoLocation
from sos_relay.app.alerts.store import AlertStore
from sos_relay.app.core.config import settings
from sos_relay.app.core.errors import ValidationError

logger = logging.getLogger(__name__)

PHONE_DIGITS = 9
VALID_PREFIXES = ("82", "83", "84", "85", "86", "87")
MIN_ADDRESS_LENGTH = 5


def validate_phone(local_number: str, *, dial_code: Optional[str] = None) -> str:
    """
    Validate a local mobile number and return it in international form.

    Non-digit characters are stripped first, so "84 123 4567" is accepted.
    """
    digits = "".join(ch for ch in local_number if ch.isdigit())
    if len(digits) != PHONE_DIGITS:
        raise ValidationError(
            f"The number must have exactly {PHONE_DIGITS} digits", field="phone",
        )
    if not digits.startswith(VALID_PREFIXES):
        raise ValidationError(
            "Invalid number (use prefixes 82-87)", field="phone",
        )
    return f"{dial_code or settings.COUNTRY_DIAL_CODE} {digits}"


def validate_address(manual_address: str) -> str:
    address = (manual_address or "").strip()
    if len(address) < MIN_ADDRESS_LENGTH:
        raise ValidationError(
            "Write your location (province, city, neighbourhood)",
            field="manual_address",
        )
    return address


@dataclass(frozen=True)
class SosForm:
    """What the citizen filled in."""
    phone: str
    manual_address: str
    type: EmergencyType = EmergencyType.GENERAL
    description: str = ""
    location: GeoLocation = field(default_factory=GeoLocation)
    user_name: Optional[str] = None

    def to_alert_input(self) -> AlertInput:
        return AlertInput(
            type=self.type,
            contact_number=validate_phone(self.phone),
            manual_address=validate_address(self.manual_address),
            description=self.description.strip(),
            location=self.location,
            user_name=self.user_name,
        )


@dataclass(frozen=True)
class SubmissionResult:
    channel: str  # "store" | "sms"
    alert_id: Optional[str] = None
    sms: Optional[SmsHandoff] = None

    def to_dict(self) -> dict:
        return {
            "channel": self.channel,
            "alert_id": self.alert_id,
            "sms": self.sms.to_dict() if self.sms else None,
        }


async def submit_sos(
    store: AlertStore,
    form: SosForm,
    *,
    online: bool = True,
) -> SubmissionResult:
    """
    Submit a citizen report.

    Raises
    ------
    ValidationError
        Phone or address rejected (both paths).
    StoreUnavailable, PermissionDenied
        Online path only.
    """
    alert_input = form.to_alert_input()

    if not online:
        handoff = build_sms_handoff(
            alert_input.type,
            alert_input.contact_number,
            alert_input.description,
            alert_input.manual_address,
            alert_input.location,
            recipient=settings.EMERGENCY_SMS_NUMBER,
        )
        return SubmissionResult(channel="sms", sms=handoff)

    alert_id = await store.create(alert_input)
    return SubmissionResult(channel="store", alert_id=alert_id)
