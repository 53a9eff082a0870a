"""
store.py — Alert Store Adapter.

Wraps the realtime document store behind the four operations the rest
of the relay needs:

    create(alert_input)         → alert id       (+ one "new SOS" push)
    subscribe(on_update)        → unsubscribe    (full snapshot per change)
    patch_status(id, status)    → None           (NotFoundError if missing)
    attach_advice(id, text)     → bool           (best-effort, never raises)

The subscription contract is "complete snapshot on every change":
consumers (feed projection, escalation engine) receive the whole
collection as List[Alert] and hold no merge state of their own.

No transition validation happens here; lifecycle.py owns that. Two
dispatchers patching the same alert is last-write-wins.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Callable, List, Optional, Set

from sos_relay.app.alerts.backends import DocumentStore, Unsubscribe
from sos_relay.app.alerts.channels.fcm_push import NEW_SOS, PushMessage, PushNotifier
from sos_relay.app.alerts.models import (
    Alert,
    AlertInput,
    AlertStatus,
    now_ms,
    parse_snapshot,
)
from sos_relay.app.core.errors import NotFoundError, RelayError, ValidationError

logger = logging.getLogger(__name__)

ALERTS_PATH = "alerts"

# Characters the realtime database forbids in keys
_INVALID_KEY = re.compile(r"[.$#\[\]/]")

SnapshotCallback = Callable[[List[Alert]], None]


class AlertStore:
    """
    Alert persistence over an injected DocumentStore.

    Parameters
    ----------
    backend : DocumentStore
        In-memory store (dev/tests) or FirebaseRealtimeStore.
    notifier : PushNotifier | None
        Receives the "new SOS" broadcast after each create.
    clock : callable
        Returns epoch milliseconds; injectable for tests.
    """

    def __init__(
        self,
        backend: DocumentStore,
        *,
        notifier: Optional[PushNotifier] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self._backend = backend
        self._notifier = notifier
        self._clock = clock
        self._side_effects: Set[asyncio.Task] = set()

    @property
    def backend(self) -> DocumentStore:
        return self._backend

    # ── Paths ──

    @staticmethod
    def _alert_path(alert_id: str) -> str:
        if not alert_id or _INVALID_KEY.search(alert_id):
            raise ValidationError("Invalid alert id", field="alert_id", alert_id=alert_id)
        return f"{ALERTS_PATH}/{alert_id}"

    # ── Create ──

    async def create(self, alert_input: AlertInput) -> str:
        """
        Persist a new alert with status=new and timestamp=now.

        Raises
        ------
        StoreUnavailable, PermissionDenied
            Propagated from the backend; the caller surfaces them.
        """
        alert = Alert(
            id="",
            type=alert_input.type,
            contact_number=alert_input.contact_number,
            timestamp=self._clock(),
            status=AlertStatus.NEW,
            location=alert_input.location,
            manual_address=alert_input.manual_address,
            description=alert_input.description,
            user_name=alert_input.user_name,
        )
        alert_id = await self._backend.push(ALERTS_PATH, alert.to_record())

        logger.info(
            "SOS alert %s created [%s]", alert_id, alert.type.value,
            extra={"alert_id": alert_id, "alert_type": alert.type.value},
        )
        self._schedule_broadcast(NEW_SOS)
        return alert_id

    def _schedule_broadcast(self, message: PushMessage) -> None:
        if self._notifier is None:
            return
        task = asyncio.get_running_loop().create_task(self._broadcast(message))
        self._side_effects.add(task)
        task.add_done_callback(self._side_effects.discard)

    async def _broadcast(self, message: PushMessage) -> None:
        try:
            await self._notifier.broadcast(message)
        except Exception as exc:
            logger.warning("Broadcast '%s' failed: %s", message.title, exc)

    async def drain(self) -> None:
        """Wait for in-flight side-effect broadcasts to settle."""
        if self._side_effects:
            await asyncio.gather(*list(self._side_effects), return_exceptions=True)

    # ── Read ──

    def subscribe(self, on_update: SnapshotCallback) -> Unsubscribe:
        """Deliver the complete alert list on every change in the collection."""
        return self._backend.listen(
            ALERTS_PATH, lambda doc: on_update(parse_snapshot(doc)),
        )

    async def snapshot(self) -> List[Alert]:
        """One-off read of the whole collection."""
        return parse_snapshot(await self._backend.get(ALERTS_PATH))

    async def get(self, alert_id: str) -> Alert:
        doc = await self._backend.get(self._alert_path(alert_id))
        if doc is None:
            raise NotFoundError("Alert", alert_id=alert_id)
        try:
            return Alert.from_record(alert_id, doc)
        except ValueError as exc:
            raise ValidationError(str(exc), alert_id=alert_id) from exc

    # ── Mutations ──

    async def patch_status(self, alert_id: str, status: AlertStatus) -> None:
        """Overwrite the status field; raises NotFoundError if absent."""
        path = self._alert_path(alert_id)
        if await self._backend.get(path) is None:
            raise NotFoundError("Alert", alert_id=alert_id)
        await self._backend.update(path, {"status": status.value})
        logger.info(
            "Alert %s → %s", alert_id, status.value,
            extra={"alert_id": alert_id, "status": status.value},
        )

    async def attach_advice(self, alert_id: str, text: str) -> bool:
        """Store advisory text on the alert. Failures are logged, not raised."""
        try:
            path = self._alert_path(alert_id)
            # PATCH on a missing key would create a stub alert
            if await self._backend.get(path) is None:
                raise NotFoundError("Alert", alert_id=alert_id)
            await self._backend.update(path, {"aiAdvice": text})
        except RelayError as exc:
            logger.warning(
                "Could not attach advice to %s: %s", alert_id, exc.message,
                extra={"alert_id": alert_id},
            )
            return False
        return True
