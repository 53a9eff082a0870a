"""
test_core.py — Cross-cutting infrastructure: gate, errors, logging, services.

Run with:
    pytest tests/test_core.py -v
"""

from __future__ import annotations

import asyncio
import json
import logging

import pytest

from sos_relay.app.alerts.backends import FirebaseRealtimeStore, InMemoryDocumentStore
from sos_relay.app.alerts.channels.fcm_push import FcmPushNotifier, RecordingNotifier
from sos_relay.app.alerts.models import AlertStatus, now_ms
from sos_relay.app.core.config import Settings, settings
from sos_relay.app.core.errors import (
    AdvisoryServiceFailure,
    ExternalServiceError,
    PermissionDenied,
    RelayError,
    StoreUnavailable,
)
from sos_relay.app.core.health import check_live_feed
from sos_relay.app.core.logging_config import (
    JSONFormatter,
    PrettyFormatter,
    get_request_context,
    set_request_context,
)
from sos_relay.app.core.middleware import alert_id_for
from sos_relay.app.core.security import check_dispatcher_credentials
from sos_relay.app.services import build_backend, build_services


def _record(msg: str = "Alert created", **extra) -> logging.LogRecord:
    record = logging.LogRecord("sos_relay.test", logging.INFO, __file__, 1, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestDispatcherGate:

    def test_configured_pair_accepted(self):
        assert check_dispatcher_credentials(settings.DISPATCHER_BADGE_ID, settings.DISPATCHER_PASSWORD)

    @pytest.mark.parametrize("badge,password", [
        (None, None),
        ("", ""),
        ("DISPATCH_99", settings.DISPATCHER_PASSWORD),
        (settings.DISPATCHER_BADGE_ID, "guess"),
        (settings.DISPATCHER_BADGE_ID, "senhaé"),
        ("Crachá_01", settings.DISPATCHER_PASSWORD),
    ])
    def test_others_rejected(self, badge, password):
        assert not check_dispatcher_credentials(badge, password)


class TestErrors:

    def test_store_errors_are_distinguishable(self):
        unavailable, denied = StoreUnavailable("timeout"), PermissionDenied("alerts")
        assert (unavailable.status_code, denied.status_code) == (503, 403)
        assert unavailable.details["retryable"] is True
        assert denied.details["retryable"] is False
        assert "SMS" in unavailable.message
        assert "access rules" in denied.message

    def test_advisory_failure_is_external(self):
        exc = AdvisoryServiceFailure("HTTP 429")
        assert isinstance(exc, ExternalServiceError)
        assert isinstance(exc, RelayError)
        assert exc.details["service"] == "advisory"


class TestLogging:

    def test_json_formatter_copies_extra_fields(self):
        entry = json.loads(JSONFormatter().format(_record(alert_id="-N1", status="new")))
        assert entry["message"] == "Alert created"
        assert entry["alert_id"] == "-N1"
        assert entry["status"] == "new"
        assert "recipient_count" not in entry

    def test_json_formatter_includes_request_context(self):
        set_request_context(request_id="req-1", endpoint="/api/v1/alerts")
        try:
            entry = json.loads(JSONFormatter().format(_record()))
        finally:
            set_request_context()
        assert entry["context"]["request_id"] == "req-1"

    def test_context_drops_unknown_and_empty_keys(self):
        set_request_context(request_id="req-1", client_ip="10.0.0.1", badge_id=None)
        try:
            ctx = get_request_context()
        finally:
            set_request_context()
        assert ctx == {"request_id": "req-1"}

    def test_json_formatter_takes_alert_id_from_context(self):
        set_request_context(request_id="req-2", alert_id="-N9")
        try:
            entry = json.loads(JSONFormatter().format(_record()))
        finally:
            set_request_context()
        assert entry["alert_id"] == "-N9"

    def test_json_formatter_unwraps_enums(self):
        entry = json.loads(JSONFormatter().format(_record(status=AlertStatus.RESOLVED)))
        assert entry["status"] == "resolved"

    def test_pretty_formatter_shows_badge_and_alert(self):
        set_request_context(request_id="abcdef123456", badge_id="DISPATCH_01", alert_id="-N1")
        try:
            line = PrettyFormatter().format(_record())
        finally:
            set_request_context()
        assert "[abcdef12] @DISPATCH_01 <-N1>" in line

    def test_pretty_formatter_shows_alert_id(self):
        line = PrettyFormatter().format(_record(alert_id="-N1"))
        assert "<-N1>" in line
        assert "sos_relay.test: Alert created" in line


class TestServices:

    def test_memory_backend_by_default(self):
        assert isinstance(build_backend(Settings(STORE_BACKEND="memory")), InMemoryDocumentStore)

    def test_firebase_backend(self):
        cfg = Settings(STORE_BACKEND="firebase", FIREBASE_DATABASE_URL="https://x.firebaseio.com/")
        backend = build_backend(cfg)
        assert isinstance(backend, FirebaseRealtimeStore)
        assert backend.database_url == "https://x.firebaseio.com"

    def test_firebase_requires_url(self):
        with pytest.raises(ValueError):
            build_backend(Settings(STORE_BACKEND="firebase", FIREBASE_DATABASE_URL=None))

    def test_notifier_follows_push_config(self):
        with_key = build_services(Settings(FCM_SERVER_KEY="k"), backend=InMemoryDocumentStore())
        without = build_services(Settings(FCM_SERVER_KEY=None), backend=InMemoryDocumentStore())
        assert isinstance(with_key.notifier, FcmPushNotifier)
        assert isinstance(without.notifier, RecordingNotifier)

    def test_live_snapshot_tracks_store(self):
        async def scenario():
            services = build_services(settings, backend=InMemoryDocumentStore(), notifier=RecordingNotifier())
            services.start()
            await services.backend.set("alerts/a1", {"status": "new", "contactNumber": "+258 841234567"})
            alerts = [a.id for a in services.live.alerts]
            await services.close()
            return alerts, services.backend.listener_count

        assert asyncio.run(scenario()) == (["a1"], 0)

    def test_registered_dispatcher_arms_escalation(self):
        async def scenario():
            services = build_services(settings, backend=InMemoryDocumentStore(), notifier=RecordingNotifier())
            services.start()
            before = await services.arm_from_registry()
            await services.registry.register("DISPATCH_01", "device-1")
            after = await services.arm_from_registry()
            await services.close()
            return before, after

        assert asyncio.run(scenario()) == (False, True)

    def test_snapshots_drive_escalation(self):
        async def scenario():
            services = build_services(settings, backend=InMemoryDocumentStore(), notifier=RecordingNotifier())
            services.start()
            services.arm()
            await services.backend.set("alerts/a1", {
                "status": "new", "contactNumber": "+258 841234567", "timestamp": now_ms(),
            })
            ringing = services.engine.ringing
            await services.close()
            return ringing, services.engine.has_pending_timers

        assert asyncio.run(scenario()) == (True, False)

    def test_live_feed_health_reports_last_update(self):
        async def scenario():
            services = build_services(settings, backend=InMemoryDocumentStore(), notifier=RecordingNotifier())
            services.start()
            component = await check_live_feed(services)
            await services.close()
            return component

        component = asyncio.run(scenario())
        assert component.details["updates"] == 1
        assert component.details["updated_at"] > 0


class TestRequestTagging:

    @pytest.mark.parametrize("path,expected", [
        ("/api/v1/alerts/-Nx1", "-Nx1"),
        ("/api/v1/alerts/-Nx1/status", "-Nx1"),
        ("/api/v1/alerts/feed", None),
        ("/api/v1/alerts/sms-handoff", None),
        ("/api/v1/alerts", None),
        ("/api/v1/profiles/841234567", None),
    ])
    def test_alert_id_from_path(self, path, expected):
        assert alert_id_for(path) == expected
