"""
sms_handoff.py — Offline SMS fallback for citizen reports.

When the citizen device has no data connection the report cannot reach
the realtime store. Instead of queueing, the client hands a pre-filled
SMS to the phone's messaging app, addressed to the emergency short
number. Once handed off, the submission counts as successful.

Message template:

    "SOS! Type: {type}. Tel: {contact}. Desc: {description}. Location: {address}."
    + " GPS: https://maps.google.com/?q={lat},{lng}"   (only with coordinates)

Unlike a carrier gateway message this body is not truncated: the user's
own messaging app splits it into segments.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote

from sos_relay.app.alerts.models import EmergencyType, GeoLocation

logger = logging.getLogger(__name__)

MAP_LINK = "https://maps.google.com/?q={lat},{lng}"


@dataclass(frozen=True)
class SmsHandoff:
    """A composed SMS ready to open in the device's messaging app."""
    recipient: str
    body: str

    @property
    def uri(self) -> str:
        return f"sms:{self.recipient}?body={quote(self.body, safe='')}"

    def to_dict(self) -> dict:
        return {"recipient": self.recipient, "body": self.body, "uri": self.uri}


def compose_sms_body(
    alert_type: EmergencyType,
    contact_number: str,
    description: str,
    manual_address: str,
    location: Optional[GeoLocation] = None,
) -> str:
    """Build the SMS text; the map link is appended only with coordinates."""
    body = (
        f"SOS! Type: {alert_type.label}. Tel: {contact_number}. "
        f"Desc: {description or '-'}. Location: {manual_address}."
    )
    if location is not None and location.has_coordinates:
        body += " GPS: " + MAP_LINK.format(lat=location.lat, lng=location.lng)
    return body


def build_sms_handoff(
    alert_type: EmergencyType,
    contact_number: str,
    description: str,
    manual_address: str,
    location: Optional[GeoLocation] = None,
    *,
    recipient: str = "112",
) -> SmsHandoff:
    handoff = SmsHandoff(
        recipient=recipient,
        body=compose_sms_body(
            alert_type, contact_number, description, manual_address, location,
        ),
    )
    logger.info(
        "[SMS_HANDOFF] %s report composed for %s (%d chars)",
        alert_type.value, recipient, len(handoff.body),
        extra={"channel": "sms", "alert_type": alert_type.value},
    )
    return handoff
