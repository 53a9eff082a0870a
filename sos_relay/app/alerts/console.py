"""
console.py — One dispatcher session, wired end to end.

    store.subscribe ──snapshot──▶ FeedView.apply_snapshot
                          └─────▶ EscalationEngine.on_snapshot
    dispatcher action ──▶ lifecycle.transition ──▶ AlertStore.patch_status
    "advice" button   ──▶ AdvisoryClient ──▶ AlertStore.attach_advice

The session owns no alert state; the store is the single owner and every
change comes back through the subscription. stop() unsubscribes and
shuts the engine down so no timer outlives the session.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from sos_relay.app.advisory.gemini import AdvisoryClient
from sos_relay.app.alerts.backends import Unsubscribe
from sos_relay.app.alerts.escalation import EscalationEngine
from sos_relay.app.alerts.feed import FeedTab, FeedView
from sos_relay.app.alerts.lifecycle import transition
from sos_relay.app.alerts.models import Alert, AlertStatus, now_ms
from sos_relay.app.alerts.recipients import PushTokenRegistry
from sos_relay.app.alerts.store import AlertStore
from sos_relay.app.core.errors import AuthenticationError, NotFoundError
from sos_relay.app.core.security import check_dispatcher_credentials

logger = logging.getLogger(__name__)


async def change_status(store: AlertStore, alert_id: str, target: AlertStatus) -> Alert:
    """
    Read the current alert, validate the move and patch it.

    Re-selecting the current status writes nothing. Raises NotFoundError,
    InvalidTransitionError or the backend's store errors.
    """
    current = await store.get(alert_id)
    updated = transition(current, target)
    if updated is not current:
        await store.patch_status(alert_id, target)
    return updated


class DispatcherConsole:
    """Feed, alarm and actions for a single dispatcher session."""

    def __init__(
        self,
        store: AlertStore,
        engine: EscalationEngine,
        *,
        advisory: Optional[AdvisoryClient] = None,
        registry: Optional[PushTokenRegistry] = None,
        feed: Optional[FeedView] = None,
        clock=now_ms,
    ):
        self.store = store
        self.engine = engine
        self.advisory = advisory
        self.registry = registry
        self.feed = feed or FeedView()
        self._clock = clock
        self._unsubscribe: Optional[Unsubscribe] = None
        self.badge_id: Optional[str] = None

    # ── Session ──

    @property
    def authenticated(self) -> bool:
        return self.engine.authenticated

    def start(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self.store.subscribe(self._on_snapshot)

    def _on_snapshot(self, alerts: List[Alert]) -> None:
        self.feed.apply_snapshot(alerts, self._clock())
        self.engine.on_snapshot(alerts)

    async def login(
        self,
        badge_id: str,
        password: str,
        *,
        push_token: Optional[str] = None,
    ) -> None:
        if not check_dispatcher_credentials(badge_id, password):
            raise AuthenticationError()
        self.badge_id = badge_id
        self.engine.set_authenticated(True)
        logger.info("Dispatcher %s logged in", badge_id, extra={"badge_id": badge_id})

        if push_token and self.registry is not None:
            await self.registry.register(badge_id, push_token)

    def logout(self) -> None:
        self.engine.set_authenticated(False)
        logger.info("Dispatcher %s logged out", self.badge_id)
        self.badge_id = None

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        await self.engine.shutdown()

    # ── Feed ──

    def select(self, alert_id: str) -> Optional[Alert]:
        return self.feed.find(alert_id)

    def switch_tab(self, tab: FeedTab) -> None:
        self.feed.switch_tab(tab)

    def load_more(self) -> int:
        return self.feed.load_more()

    # ── Actions ──

    def _require_login(self) -> None:
        if not self.authenticated:
            raise AuthenticationError("Dispatcher session is not authenticated")

    async def set_status(self, alert_id: str, status: AlertStatus) -> Optional[Alert]:
        """
        Move an alert through the lifecycle.

        A missing alert is logged and ignored. Invalid transitions and store
        failures propagate to the caller.
        """
        self._require_login()
        try:
            return await change_status(self.store, alert_id, status)
        except NotFoundError:
            logger.warning(
                "Status change for missing alert %s ignored", alert_id,
                extra={"alert_id": alert_id},
            )
            return None

    async def request_advice(self, alert_id: str) -> str:
        """Generate advisory text and attach it best-effort."""
        self._require_login()
        if self.advisory is None:
            raise RuntimeError("No advisory client configured")
        alert = self.select(alert_id) or await self.store.get(alert_id)
        text = await self.advisory.request_advice(
            alert.type, alert.location, alert.manual_address,
        )
        await self.store.attach_advice(alert_id, text)
        return text
