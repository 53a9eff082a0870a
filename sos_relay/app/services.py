"""
Service container — builds the relay's long-lived objects from settings.

    ┌────────────────────┐
    │  DocumentStore     │  memory (default) | firebase
    └─────────┬──────────┘
              ├──▶ PushTokenRegistry ──▶ FcmPushNotifier | RecordingNotifier
              ├──▶ AlertStore (notifier attached for "new SOS")
              ├──▶ ProfileDirectory
              └──▶ store.subscribe ─┬─▶ LiveSnapshot (last full alert list)
                                    └─▶ EscalationEngine ──▶ notifier
    AdvisoryClient (Gemini REST)

The FastAPI lifespan owns one instance: start() on startup, close() on
shutdown. Routes reach it through the get_services() dependency.

The server has no interactive console session, so escalation is armed
once a dispatcher logs in, or at startup when the registry already holds
a dispatcher push token. Armed, it rings (logs) and re-notifies every
registered device about alerts left unresolved for over an hour.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sos_relay.app.advisory.gemini import AdvisoryClient
from sos_relay.app.alerts.backends import (
    DocumentStore,
    FirebaseRealtimeStore,
    InMemoryDocumentStore,
    Unsubscribe,
)
from sos_relay.app.alerts.channels.fcm_push import (
    FcmPushNotifier,
    PushNotifier,
    RecordingNotifier,
)
from sos_relay.app.alerts.alarm import LoggingAlarmOutput
from sos_relay.app.alerts.escalation import EscalationEngine
from sos_relay.app.alerts.models import Alert, now_ms
from sos_relay.app.alerts.profiles import ProfileDirectory
from sos_relay.app.alerts.recipients import PushTokenRegistry
from sos_relay.app.alerts.store import AlertStore
from sos_relay.app.core.config import Settings, settings as default_settings
from sos_relay.app.core.errors import RelayError

logger = logging.getLogger(__name__)


class LiveSnapshot:
    """Keeps the most recent full alert snapshot delivered by the store."""

    def __init__(self) -> None:
        self.alerts: List[Alert] = []
        self.updated_at: int = 0
        self.updates: int = 0

    def __call__(self, alerts: List[Alert]) -> None:
        self.alerts = alerts
        self.updated_at = now_ms()
        self.updates += 1


@dataclass
class RelayServices:
    backend: DocumentStore
    store: AlertStore
    registry: PushTokenRegistry
    profiles: ProfileDirectory
    notifier: PushNotifier
    advisory: AdvisoryClient
    engine: EscalationEngine
    live: LiveSnapshot = field(default_factory=LiveSnapshot)
    _unsubscribe: Optional[Unsubscribe] = None

    def start(self) -> None:
        """Subscribe the live snapshot and the escalation engine (needs a running loop)."""
        if self._unsubscribe is None:
            self._unsubscribe = self.store.subscribe(self._on_snapshot)

    def _on_snapshot(self, alerts: List[Alert]) -> None:
        self.live(alerts)
        self.engine.on_snapshot(alerts)

    def arm(self) -> None:
        if not self.engine.authenticated:
            self.engine.set_authenticated(True)
            logger.info("Escalation armed; alerts now ring and re-notify dispatchers")

    async def arm_from_registry(self) -> bool:
        """Arm escalation if a dispatcher device is already registered."""
        try:
            tokens = await self.registry.list_tokens()
        except RelayError as exc:
            logger.warning("Could not read dispatcher tokens: %s", exc.message)
            return self.engine.authenticated
        if tokens:
            self.arm()
        return self.engine.authenticated

    async def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        await self.engine.shutdown()
        await self.store.drain()
        await self.notifier.close()
        await self.advisory.close()
        await self.backend.close()


def build_backend(cfg: Settings) -> DocumentStore:
    if cfg.STORE_BACKEND == "firebase":
        if not cfg.FIREBASE_DATABASE_URL:
            raise ValueError("STORE_BACKEND=firebase requires FIREBASE_DATABASE_URL")
        return FirebaseRealtimeStore(
            cfg.FIREBASE_DATABASE_URL,
            auth_token=cfg.FIREBASE_AUTH_TOKEN,
            timeout_seconds=cfg.STORE_TIMEOUT_SECONDS,
            reconnect_seconds=cfg.STORE_RECONNECT_SECONDS,
        )
    if cfg.STORE_BACKEND != "memory":
        raise ValueError(f"Unknown STORE_BACKEND '{cfg.STORE_BACKEND}'")
    logger.warning("Using the in-memory store; alerts are lost on restart")
    return InMemoryDocumentStore()


def build_services(
    cfg: Optional[Settings] = None,
    *,
    backend: Optional[DocumentStore] = None,
    notifier: Optional[PushNotifier] = None,
    advisory: Optional[AdvisoryClient] = None,
) -> RelayServices:
    """Wire every service from settings; any piece can be injected."""
    cfg = cfg or default_settings
    backend = backend or build_backend(cfg)
    registry = PushTokenRegistry(backend)

    if notifier is None:
        if cfg.push_configured:
            notifier = FcmPushNotifier(
                registry.list_tokens,
                server_key=cfg.FCM_SERVER_KEY,
                endpoint=cfg.FCM_ENDPOINT,
                click_action=cfg.FCM_CLICK_ACTION,
                timeout_seconds=cfg.PUSH_TIMEOUT_SECONDS,
            )
        else:
            logger.warning("FCM_SERVER_KEY not set; push broadcasts are only recorded")
            notifier = RecordingNotifier()

    advisory = advisory or AdvisoryClient(
        api_key=cfg.GEMINI_API_KEY,
        model=cfg.GEMINI_MODEL,
        base_url=cfg.GEMINI_BASE_URL,
        timeout_seconds=cfg.ADVISORY_TIMEOUT_SECONDS,
    )

    return RelayServices(
        backend=backend,
        store=AlertStore(backend, notifier=notifier),
        registry=registry,
        profiles=ProfileDirectory(backend),
        notifier=notifier,
        advisory=advisory,
        engine=EscalationEngine(notifier, LoggingAlarmOutput()),
    )


# ── Process-wide instance ──

_services: Optional[RelayServices] = None


def set_services(services: Optional[RelayServices]) -> None:
    global _services
    _services = services


def get_services() -> RelayServices:
    """FastAPI dependency returning the running service container."""
    if _services is None:
        raise RuntimeError("Services are not initialised (application not started)")
    return _services
