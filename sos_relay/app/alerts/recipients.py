"""
recipients.py — Registry of dispatcher devices that receive push broadcasts.

Each dispatcher login may register the device's push token:

    dispatchers/
      {badge_id}/
        token:       "<fcm device token>"
        last_login:  1718000000000

The push channel reads every non-empty token at broadcast time.
"""

from __future__ import annotations

import logging
from typing import Callable, List, Mapping

from sos_relay.app.alerts.backends import DocumentStore
from sos_relay.app.alerts.models import now_ms
from sos_relay.app.core.errors import ValidationError

logger = logging.getLogger(__name__)

DISPATCHERS_PATH = "dispatchers"


class PushTokenRegistry:
    """Stores and lists dispatcher push tokens."""

    def __init__(self, backend: DocumentStore, *, clock: Callable[[], int] = now_ms):
        self._backend = backend
        self._clock = clock

    async def register(self, badge_id: str, token: str) -> None:
        if not badge_id or "/" in badge_id or not token:
            raise ValidationError("Badge id and token are required", field="token")
        await self._backend.update(
            f"{DISPATCHERS_PATH}/{badge_id}",
            {"token": token, "last_login": self._clock()},
        )
        logger.info("Push token registered for %s", badge_id, extra={"badge_id": badge_id})

    async def list_tokens(self) -> List[str]:
        entries = await self._backend.get(DISPATCHERS_PATH)
        if not isinstance(entries, Mapping):
            return []
        return [
            entry["token"]
            for entry in entries.values()
            if isinstance(entry, Mapping) and entry.get("token")
        ]
