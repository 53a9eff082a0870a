"""
test_citizen.py — Citizen submission and the offline SMS hand-off.

Covers:
    • Phone validation (9 digits, prefixes 82-87, international form)
    • Manual address requirement
    • Online submission through the store, with distinct store errors
    • Offline SMS composition (map link only with coordinates)

Run with:
    pytest tests/test_citizen.py -v
"""

from __future__ import annotations

import asyncio
from urllib.parse import unquote

import pytest

from sos_relay.app.alerts.backends import InMemoryDocumentStore
from sos_relay.app.alerts.channels.fcm_push import RecordingNotifier
from sos_relay.app.alerts.channels.sms_handoff import build_sms_handoff, compose_sms_body
from sos_relay.app.alerts.citizen import (
    SosForm,
    submit_sos,
    validate_address,
    validate_phone,
)
from sos_relay.app.alerts.models import AlertStatus, EmergencyType, GeoLocation
from sos_relay.app.alerts.store import AlertStore
from sos_relay.app.core.errors import PermissionDenied, StoreUnavailable, ValidationError


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

def _make_form(**overrides) -> SosForm:
    fields = dict(
        type=EmergencyType.CIVIL_POLICE,
        phone="841234567",
        manual_address="Maputo, Polana Cimento",
        description="Robbery",
        location=GeoLocation(lat=-25.9692, lng=32.5732),
    )
    fields.update(overrides)
    return SosForm(**fields)


def _make_store():
    backend = InMemoryDocumentStore()
    notifier = RecordingNotifier()
    return backend, notifier, AlertStore(backend, notifier=notifier)


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Validation
# ═══════════════════════════════════════════════════════════════════════════

class TestPhoneValidation:

    @pytest.mark.parametrize("raw", ["821234567", "871234567", "84 123 4567", "84-123-4567"])
    def test_accepts_mobile_prefixes(self, raw):
        assert validate_phone(raw).startswith("+258 8")

    def test_international_form(self):
        assert validate_phone("841234567") == "+258 841234567"

    @pytest.mark.parametrize("raw", ["", "84123456", "8412345678", "811234567", "881234567", "211234567"])
    def test_rejects(self, raw):
        with pytest.raises(ValidationError) as exc_info:
            validate_phone(raw)
        assert exc_info.value.details["field"] == "phone"


class TestAddressValidation:

    def test_trimmed_length(self):
        assert validate_address("  Beira  ") == "Beira"
        with pytest.raises(ValidationError):
            validate_address("  Bei  ")
        with pytest.raises(ValidationError):
            validate_address("")


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Online submission
# ═══════════════════════════════════════════════════════════════════════════

class TestOnlineSubmission:

    def test_creates_alert(self):
        async def scenario():
            _, notifier, store = _make_store()
            result = await submit_sos(store, _make_form(description="  Robbery  "))
            await store.drain()
            return result, await store.get(result.alert_id), notifier

        result, alert, notifier = asyncio.run(scenario())
        assert result.channel == "store"
        assert result.sms is None
        assert alert.status == AlertStatus.NEW
        assert alert.contact_number == "+258 841234567"
        assert alert.description == "Robbery"
        assert notifier.count("new_sos") == 1

    def test_invalid_form_writes_nothing(self):
        async def scenario():
            backend, _, store = _make_store()
            with pytest.raises(ValidationError):
                await submit_sos(store, _make_form(manual_address="abc"))
            return await backend.get("alerts")

        assert asyncio.run(scenario()) is None

    def test_connectivity_error_propagates(self):
        backend, _, store = _make_store()
        backend.offline = True
        with pytest.raises(StoreUnavailable) as exc_info:
            asyncio.run(submit_sos(store, _make_form()))
        assert "SMS" in exc_info.value.message

    def test_rules_error_is_distinct(self):
        backend, _, store = _make_store()
        backend.denied_paths.add("alerts")
        with pytest.raises(PermissionDenied) as exc_info:
            asyncio.run(submit_sos(store, _make_form()))
        assert "access rules" in exc_info.value.message
        assert exc_info.value.status_code == 403


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Offline SMS hand-off
# ═══════════════════════════════════════════════════════════════════════════

class TestOfflineSubmission:

    def test_offline_composes_sms_and_succeeds(self):
        async def scenario():
            backend, _, store = _make_store()
            backend.offline = True  # never touched
            return await submit_sos(store, _make_form(), online=False)

        result = asyncio.run(scenario())
        assert result.channel == "sms"
        assert result.alert_id is None
        assert result.sms.recipient == "112"
        assert result.to_dict()["sms"]["uri"].startswith("sms:112?body=")

    def test_offline_still_validates(self):
        _, _, store = _make_store()
        with pytest.raises(ValidationError):
            asyncio.run(submit_sos(store, _make_form(phone="123"), online=False))


class TestSmsBody:

    def test_with_coordinates(self):
        body = compose_sms_body(
            EmergencyType.CIVIL_POLICE, "+258 841234567", "Robbery",
            "Maputo, Polana", GeoLocation(lat=-25.9692, lng=32.5732),
        )
        assert body == (
            "SOS! Type: Civil Police. Tel: +258 841234567. Desc: Robbery. "
            "Location: Maputo, Polana. GPS: https://maps.google.com/?q=-25.9692,32.5732"
        )

    def test_without_coordinates(self):
        body = compose_sms_body(
            EmergencyType.DISASTER, "+258 841234567", "", "Beira", GeoLocation(lat=-19.8),
        )
        assert "maps.google.com" not in body
        assert "Desc: -." in body

    def test_uri_is_url_encoded(self):
        handoff = build_sms_handoff(
            EmergencyType.GENERAL, "+258 841234567", "Help & hurry", "Beira",
            recipient="119",
        )
        prefix = "sms:119?body="
        assert handoff.uri.startswith(prefix)
        encoded = handoff.uri[len(prefix):]
        assert " " not in encoded and "&" not in encoded
        assert unquote(encoded) == handoff.body
