"""
models.py — Shared data structures for the SOS relay.

Defines:
    • EmergencyType — closed set of report categories
    • AlertStatus   — lifecycle states (see lifecycle.py)
    • GeoLocation   — optional lat/lng pair + accuracy radius
    • AlertInput    — what a citizen submits
    • Alert         — a stored report, as delivered in snapshots
    • UserProfile   — citizen identity keyed by phone number

═══════════════════════════════════════════════════════════════════════════
STORE DOCUMENT SHAPE
═══════════════════════════════════════════════════════════════════════════

Alerts live in the realtime store as JSON documents keyed by an opaque
push id. Field names are camelCase because web and mobile clients read
the same tree:

    alerts/
      -Nx1aB.../
        type:           "civil_police"
        contactNumber:  "+258 841234567"
        manualAddress:  "Maputo, Hulene, Q.15"
        description:    "..."
        location:       {lat: -25.9, lng: 32.5, accuracy: 12.0}
        status:         "new" | "in_progress" | "resolved"
        timestamp:      1718000000000      (epoch ms, creation)
        aiAdvice:       "..."              (optional)

Parsing is lenient: the store is shared with other clients and may hold
partial or legacy records. Status and type values written by the first
console build ("NOVO", "EM TRÂNSITO", "RESOLVIDO", "Polícia Civil", ...)
are read as their current equivalents; writes always use the values
above. Anything that cannot be parsed is skipped by parse_snapshot()
rather than failing the whole feed.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class EmergencyType(str, Enum):
    """Category of a citizen report."""
    CIVIL_POLICE   = "civil_police"
    TRAFFIC_POLICE = "traffic_police"
    DISASTER       = "disaster"      # weather / natural disaster
    GENERAL        = "general"

    @property
    def label(self) -> str:
        return _TYPE_LABELS[self]

    @classmethod
    def _missing_(cls, value: Any) -> Optional["EmergencyType"]:
        return _LEGACY_TYPES.get(value) if isinstance(value, str) else None


_TYPE_LABELS = {
    EmergencyType.CIVIL_POLICE: "Civil Police",
    EmergencyType.TRAFFIC_POLICE: "Traffic Police",
    EmergencyType.DISASTER: "Weather/Disaster",
    EmergencyType.GENERAL: "General Emergency",
}

# Values written by the first (Portuguese) console build
_LEGACY_TYPES = {
    "Polícia Civil": EmergencyType.CIVIL_POLICE,
    "Polícia Trânsito": EmergencyType.TRAFFIC_POLICE,
    "Clima/Desastre": EmergencyType.DISASTER,
    "Emergência Geral": EmergencyType.GENERAL,
}


class AlertStatus(str, Enum):
    """Lifecycle state of an alert."""
    NEW         = "new"
    IN_PROGRESS = "in_progress"
    RESOLVED    = "resolved"

    @classmethod
    def _missing_(cls, value: Any) -> Optional["AlertStatus"]:
        return _LEGACY_STATUSES.get(value) if isinstance(value, str) else None


_LEGACY_STATUSES = {
    "NOVO": AlertStatus.NEW,
    "EM TRÂNSITO": AlertStatus.IN_PROGRESS,
    "RESOLVIDO": AlertStatus.RESOLVED,
}


def now_ms() -> int:
    """Wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


# ═══════════════════════════════════════════════════════════════════════════
# Data Structures
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class GeoLocation:
    """Device position; either coordinate may be unknown."""
    lat: Optional[float] = None
    lng: Optional[float] = None
    accuracy_m: Optional[float] = None

    @property
    def has_coordinates(self) -> bool:
        return self.lat is not None and self.lng is not None

    def to_record(self) -> Dict[str, Any]:
        record: Dict[str, Any] = {"lat": self.lat, "lng": self.lng}
        if self.accuracy_m is not None:
            record["accuracy"] = self.accuracy_m
        return record

    @classmethod
    def from_record(cls, doc: Any) -> "GeoLocation":
        if not isinstance(doc, Mapping):
            return cls()
        return cls(
            lat=_optional_float(doc.get("lat")),
            lng=_optional_float(doc.get("lng")),
            accuracy_m=_optional_float(doc.get("accuracy")),
        )


@dataclass(frozen=True)
class AlertInput:
    """
    A citizen report before the store has accepted it.

    id, status and timestamp are assigned by AlertStore.create().
    """
    type: EmergencyType
    contact_number: str
    manual_address: str = ""
    description: str = ""
    location: GeoLocation = field(default_factory=GeoLocation)
    user_name: Optional[str] = None


@dataclass(frozen=True)
class Alert:
    """
    A stored citizen report.

    Only `status` (dispatcher actions) and `ai_advice` (advisory adapter)
    ever change after creation.
    """
    id: str
    type: EmergencyType
    contact_number: str
    timestamp: int
    status: AlertStatus = AlertStatus.NEW
    location: GeoLocation = field(default_factory=GeoLocation)
    manual_address: str = ""
    description: str = ""
    ai_advice: Optional[str] = None
    user_name: Optional[str] = None

    def age_ms(self, now: int) -> int:
        return now - self.timestamp

    @property
    def is_resolved(self) -> bool:
        return self.status == AlertStatus.RESOLVED

    def to_record(self) -> Dict[str, Any]:
        """Store document (without the id, which is the document key)."""
        record: Dict[str, Any] = {
            "type": self.type.value,
            "contactNumber": self.contact_number,
            "manualAddress": self.manual_address,
            "description": self.description,
            "location": self.location.to_record(),
            "status": self.status.value,
            "timestamp": self.timestamp,
        }
        if self.ai_advice is not None:
            record["aiAdvice"] = self.ai_advice
        if self.user_name:
            record["userName"] = self.user_name
        return record

    def to_dict(self) -> Dict[str, Any]:
        """API representation."""
        return {
            "id": self.id,
            "type": self.type.value,
            "type_label": self.type.label,
            "contact_number": self.contact_number,
            "manual_address": self.manual_address,
            "description": self.description,
            "location": {
                "lat": self.location.lat,
                "lng": self.location.lng,
                "accuracy_m": self.location.accuracy_m,
            },
            "status": self.status.value,
            "timestamp": self.timestamp,
            "ai_advice": self.ai_advice,
            "user_name": self.user_name,
        }

    @classmethod
    def from_record(cls, alert_id: str, doc: Any) -> "Alert":
        """
        Parse a store document.

        Raises
        ------
        ValueError
            If the document is not a mapping or carries an unknown status.
        """
        if not isinstance(doc, Mapping):
            raise ValueError(f"alert {alert_id!r} is not a document")

        status = AlertStatus(doc.get("status", AlertStatus.NEW.value))

        try:
            alert_type = EmergencyType(doc.get("type"))
        except ValueError:
            alert_type = EmergencyType.GENERAL

        timestamp = doc.get("timestamp")
        if not isinstance(timestamp, (int, float)) or isinstance(timestamp, bool):
            timestamp = 0

        advice = doc.get("aiAdvice")

        return cls(
            id=str(alert_id),
            type=alert_type,
            contact_number=str(doc.get("contactNumber") or ""),
            timestamp=int(timestamp),
            status=status,
            location=GeoLocation.from_record(doc.get("location")),
            manual_address=str(doc.get("manualAddress") or ""),
            description=str(doc.get("description") or ""),
            ai_advice=str(advice) if advice is not None else None,
            user_name=doc.get("userName"),
        )


@dataclass(frozen=True)
class UserProfile:
    """Citizen identity; phone_number is the natural key."""
    name: str
    phone_number: str
    city: str
    neighborhood: str

    def to_record(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "phoneNumber": self.phone_number,
            "city": self.city,
            "neighborhood": self.neighborhood,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "phone_number": self.phone_number,
            "city": self.city,
            "neighborhood": self.neighborhood,
        }

    @classmethod
    def from_record(cls, doc: Mapping[str, Any]) -> "UserProfile":
        return cls(
            name=str(doc.get("name", "")),
            phone_number=str(doc.get("phoneNumber", "")),
            city=str(doc.get("city", "")),
            neighborhood=str(doc.get("neighborhood", "")),
        )


# ═══════════════════════════════════════════════════════════════════════════
# Snapshot parsing
# ═══════════════════════════════════════════════════════════════════════════

def parse_snapshot(collection: Any) -> List[Alert]:
    """
    Convert the raw alert collection into Alert objects.

    An empty or missing collection yields []. Records that cannot be
    parsed are dropped individually.
    """
    if not isinstance(collection, Mapping):
        return []

    alerts: List[Alert] = []
    for key, doc in collection.items():
        try:
            alerts.append(Alert.from_record(key, doc))
        except (TypeError, ValueError) as exc:
            logger.debug("Skipping unparsable alert record %s: %s", key, exc)
    return alerts


def _optional_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
