"""
test_api.py — HTTP surface through FastAPI's TestClient.

The lifespan runs for real; build_services is patched to return an
in-memory container so every test starts from an empty store.

Run with:
    pytest tests/test_api.py -v
"""

from __future__ import annotations

import asyncio
import logging

import pytest
from fastapi.testclient import TestClient

from sos_relay.app import main
from sos_relay.app.advisory.gemini import FALLBACK_ADVICE, AdvisoryClient
from sos_relay.app.alerts.backends import InMemoryDocumentStore
from sos_relay.app.alerts.channels.fcm_push import RecordingNotifier
from sos_relay.app.alerts.models import now_ms
from sos_relay.app.core.config import settings
from sos_relay.app.services import build_services


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

DISPATCHER = {
    "X-Badge-Id": settings.DISPATCHER_BADGE_ID,
    "X-Badge-Secret": settings.DISPATCHER_PASSWORD,
}


def _sos(**overrides) -> dict:
    body = {
        "type": "civil_police",
        "phone": "841234567",
        "manual_address": "Maputo, Polana Cimento",
        "description": "Robbery in progress",
        "location": {"lat": -25.9692, "lng": 32.5732, "accuracy": 20},
    }
    body.update(overrides)
    return body


@pytest.fixture
def services(monkeypatch):
    svc = build_services(
        settings,
        backend=InMemoryDocumentStore(),
        notifier=RecordingNotifier(),
        advisory=AdvisoryClient(api_key=None),
    )
    monkeypatch.setattr(main, "build_services", lambda cfg: svc)
    return svc


@pytest.fixture
def client(services):
    with TestClient(main.app) as c:
        yield c


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Citizen endpoints
# ═══════════════════════════════════════════════════════════════════════════

class TestSubmit:

    def test_submit_creates_alert(self, client, services):
        resp = client.post("/api/v1/alerts", json=_sos())
        assert resp.status_code == 201
        alert_id = resp.json()["alert_id"]
        alert = asyncio.run(services.store.get(alert_id))
        assert alert.contact_number == "+258 841234567"
        assert alert.location.accuracy_m == 20
        assert services.live.alerts[0].id == alert_id

    def test_invalid_phone(self, client):
        resp = client.post("/api/v1/alerts", json=_sos(phone="811234567"))
        assert resp.status_code == 422
        assert resp.json()["error"]["details"]["field"] == "phone"

    def test_missing_address(self, client):
        resp = client.post("/api/v1/alerts", json=_sos(manual_address=" "))
        assert resp.status_code == 422

    def test_unknown_type_rejected_by_schema(self, client):
        resp = client.post("/api/v1/alerts", json=_sos(type="fire"))
        assert resp.status_code == 422

    def test_store_offline_is_503(self, client, services):
        services.backend.offline = True
        resp = client.post("/api/v1/alerts", json=_sos())
        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "STORE_UNAVAILABLE"

    def test_rules_rejection_is_403(self, client, services):
        services.backend.denied_paths.add("alerts")
        resp = client.post("/api/v1/alerts", json=_sos())
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "PERMISSION_DENIED"

    def test_sms_handoff(self, client):
        resp = client.post("/api/v1/alerts/sms-handoff", json=_sos())
        assert resp.status_code == 200
        data = resp.json()
        assert data["recipient"] == settings.EMERGENCY_SMS_NUMBER
        assert "GPS: https://maps.google.com/?q=-25.9692,32.5732" in data["body"]
        assert data["uri"].startswith(f"sms:{settings.EMERGENCY_SMS_NUMBER}?body=")


class TestProfiles:

    def test_register_and_lookup(self, client):
        resp = client.post("/api/v1/profiles", json={
            "name": "Ana", "phone_number": "841234567",
            "city": "Maputo", "neighborhood": "Polana",
        })
        assert resp.status_code == 201
        assert resp.json()["phone_number"] == "+258 841234567"

        resp = client.get("/api/v1/profiles/841234567")
        assert resp.status_code == 200
        assert resp.json()["name"] == "Ana"

    def test_duplicate_is_409(self, client):
        body = {"name": "Ana", "phone_number": "841234567"}
        client.post("/api/v1/profiles", json=body)
        assert client.post("/api/v1/profiles", json=body).status_code == 409

    def test_unknown_is_404(self, client):
        assert client.get("/api/v1/profiles/849999999").status_code == 404


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Dispatcher endpoints
# ═══════════════════════════════════════════════════════════════════════════

class TestDispatcherGate:

    @pytest.mark.parametrize("path", [
        "/api/v1/alerts/feed",
        "/api/v1/alerts/stats",
        "/api/v1/alerts/escalation",
        "/api/v1/alerts/abc",
    ])
    def test_requires_headers(self, client, path):
        resp = client.get(path)
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "AUTHENTICATION_FAILED"

    def test_wrong_secret(self, client):
        headers = {**DISPATCHER, "X-Badge-Secret": "nope"}
        assert client.get("/api/v1/alerts/feed", headers=headers).status_code == 401

    def test_login_registers_token(self, client, services):
        resp = client.post("/api/v1/dispatch/login", json={
            "badge_id": settings.DISPATCHER_BADGE_ID,
            "password": settings.DISPATCHER_PASSWORD,
            "push_token": "device-1",
        })
        assert resp.status_code == 200
        assert resp.json()["push_registered"] is True
        assert asyncio.run(services.registry.list_tokens()) == ["device-1"]

    def test_login_rejected(self, client):
        resp = client.post("/api/v1/dispatch/login", json={"badge_id": "x", "password": "y"})
        assert resp.status_code == 401

    def test_non_ascii_password_rejected(self, client):
        resp = client.post("/api/v1/dispatch/login", json={
            "badge_id": settings.DISPATCHER_BADGE_ID, "password": "senhaé",
        })
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "AUTHENTICATION_FAILED"

    def test_non_ascii_header_secret_rejected(self, client):
        headers = {**DISPATCHER, "X-Badge-Secret": "senhaé".encode("utf-8")}
        assert client.get("/api/v1/alerts/feed", headers=headers).status_code == 401


class TestFeedEndpoints:

    def test_feed_paginates(self, client):
        for _ in range(25):
            client.post("/api/v1/alerts", json=_sos())
        resp = client.get("/api/v1/alerts/feed", headers=DISPATCHER)
        data = resp.json()
        assert len(data["alerts"]) == 20
        assert data["has_more"] is True
        assert data["tab_counts"] == {"pending": 25, "resolved": 0}

        resp = client.get("/api/v1/alerts/feed?visible_count=40", headers=DISPATCHER)
        assert len(resp.json()["alerts"]) == 25

    def test_feed_resolved_tab(self, client):
        alert_id = client.post("/api/v1/alerts", json=_sos()).json()["alert_id"]
        client.patch(f"/api/v1/alerts/{alert_id}/status", json={"status": "resolved"}, headers=DISPATCHER)
        data = client.get("/api/v1/alerts/feed?tab=resolved", headers=DISPATCHER).json()
        assert [a["id"] for a in data["alerts"]] == [alert_id]

    def test_stats(self, client):
        client.post("/api/v1/alerts", json=_sos())
        resp = client.get("/api/v1/alerts/stats", headers=DISPATCHER)
        assert resp.json() == {"total": 1, "pending": 1, "resolved": 0}


class TestEscalationRuntime:

    def _seed_overdue(self, services, alert_id="-old"):
        overdue = {
            "type": "general", "contactNumber": "+258 841234567",
            "status": "in_progress", "timestamp": now_ms() - 2 * 3_600_000,
        }
        asyncio.run(services.backend.set(f"alerts/{alert_id}", overdue))

    def test_disarmed_until_login(self, services):
        self._seed_overdue(services)
        with TestClient(main.app) as c:
            data = c.get("/api/v1/alerts/escalation", headers=DISPATCHER).json()
        assert data["armed"] is False
        assert data["should_ring"] is False
        assert services.notifier.count("pending_critical") == 0

    def test_overdue_alert_renotifies_once(self, services):
        self._seed_overdue(services)
        with TestClient(main.app) as c:
            c.post("/api/v1/dispatch/login", json={
                "badge_id": settings.DISPATCHER_BADGE_ID,
                "password": settings.DISPATCHER_PASSWORD,
                "push_token": "device-1",
            })
            first = c.get("/api/v1/alerts/escalation", headers=DISPATCHER).json()
            c.post("/api/v1/alerts", json=_sos())
            second = c.get("/api/v1/alerts/escalation", headers=DISPATCHER).json()
        assert services.notifier.count("pending_critical") == 1
        assert first["armed"] is True
        assert first["should_ring"] is True
        assert first["long_unresolved"] == ["-old"]
        assert first["state"]["last_broadcast_ms"] > 0
        assert (first["broadcast"], second["broadcast"]) == (False, False)
        assert second["state"]["last_broadcast_ms"] == first["state"]["last_broadcast_ms"]

    def test_registered_device_arms_at_startup(self, services):
        asyncio.run(services.registry.register(settings.DISPATCHER_BADGE_ID, "device-1"))
        self._seed_overdue(services)
        with TestClient(main.app) as c:
            data = c.get("/api/v1/alerts/escalation", headers=DISPATCHER).json()
        assert data["armed"] is True
        assert services.notifier.count("pending_critical") == 1
        assert not services.engine.has_pending_timers


class TestAlertActions:

    def test_get_alert(self, client):
        alert_id = client.post("/api/v1/alerts", json=_sos()).json()["alert_id"]
        data = client.get(f"/api/v1/alerts/{alert_id}", headers=DISPATCHER).json()
        assert data["status"] == "new"
        assert data["allowed_transitions"] == ["in_progress", "resolved"]

    def test_get_missing_is_404(self, client):
        assert client.get("/api/v1/alerts/ghost", headers=DISPATCHER).status_code == 404

    def test_status_flow(self, client):
        alert_id = client.post("/api/v1/alerts", json=_sos()).json()["alert_id"]
        url = f"/api/v1/alerts/{alert_id}/status"

        resp = client.patch(url, json={"status": "in_progress"}, headers=DISPATCHER)
        assert resp.status_code == 200
        assert resp.json()["status"] == "in_progress"

        resp = client.patch(url, json={"status": "new"}, headers=DISPATCHER)
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "INVALID_TRANSITION"

        resp = client.patch(url, json={"status": "resolved"}, headers=DISPATCHER)
        assert resp.json()["status"] == "resolved"

    def test_status_missing_is_404(self, client):
        resp = client.patch("/api/v1/alerts/ghost/status", json={"status": "resolved"}, headers=DISPATCHER)
        assert resp.status_code == 404

    def test_advice_falls_back_and_attaches(self, client, services):
        alert_id = client.post("/api/v1/alerts", json=_sos()).json()["alert_id"]
        data = client.post(f"/api/v1/alerts/{alert_id}/advice", headers=DISPATCHER).json()
        assert data == {"alert_id": alert_id, "ai_advice": FALLBACK_ADVICE, "attached": True}
        assert asyncio.run(services.store.get(alert_id)).ai_advice == FALLBACK_ADVICE


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Root & health
# ═══════════════════════════════════════════════════════════════════════════

class TestHealth:

    def test_liveness(self, client):
        assert client.get("/health/live").json() == {"status": "alive"}

    def test_deep_health_degraded_without_keys(self, client):
        data = client.get("/health").json()
        names = {c["name"]: c["status"] for c in data["components"]}
        assert names["realtime_store"] == "healthy"
        assert data["status"] in ("healthy", "degraded")

    def test_store_down_is_503(self, client, services):
        services.backend.offline = True
        assert client.get("/health").status_code == 503

    def test_request_id_header(self, client):
        resp = client.get("/", headers={"X-Request-ID": "abc123"})
        assert resp.headers["X-Request-ID"] == "abc123"

    def test_malformed_request_id_replaced(self, client):
        resp = client.get("/", headers={"X-Request-ID": "bad id with spaces"})
        assert resp.headers["X-Request-ID"] != "bad id with spaces"
        assert len(resp.headers["X-Request-ID"]) == 16

    def test_health_checks_are_not_logged(self, client, caplog):
        caplog.set_level(logging.INFO, logger="sos_relay.app.core.middleware")
        client.get("/health/live")
        client.get("/", headers=DISPATCHER)
        logged = [r for r in caplog.records if r.name == "sos_relay.app.core.middleware"]
        assert len(logged) == 1
        assert logged[0].getMessage().startswith("GET / → 200")
        assert logged[0].status_code == 200
