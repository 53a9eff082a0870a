"""
fcm_push.py — Push broadcast channel for dispatcher devices.

Delivery mechanism:
    • Firebase Cloud Messaging HTTP endpoint, one POST per device token
    • Payload: notification {title, body, icon, click_action}, priority high
    • Tokens come from the dispatcher recipient registry (recipients.py)

═══════════════════════════════════════════════════════════════════════════
FAN-OUT POLICY
═══════════════════════════════════════════════════════════════════════════

    1. Read all registered tokens
    2. Issue one request per token CONCURRENTLY (asyncio.gather)
    3. Wait for every request to settle; one failing device never
       aborts the batch
    4. Log only the aggregate (sent / failed); per-device errors are
       debug-level

A broadcast never raises. Missing server key, an unreadable registry or
a dead network all come back as a BroadcastResult describing what
happened, so the operation that triggered the broadcast (creating an
alert, an escalation tick) is never affected.

Messages:

    NEW_SOS            → sent once per created alert
    pending_critical() → sent by the escalation engine, debounced 5 min
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from sos_relay.app.core.errors import BroadcastFailure

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Awaitable[List[str]]]


@dataclass(frozen=True)
class PushMessage:
    """Title + body of one broadcast."""
    title: str
    body: str
    kind: str = "generic"


NEW_SOS = PushMessage(
    title="🚨 New SOS request",
    body="A citizen asked for help. Tap to open.",
    kind="new_sos",
)


def pending_critical(count: int) -> PushMessage:
    """Re-notification for alerts left unresolved for over an hour."""
    noun = "alert" if count == 1 else "alerts"
    return PushMessage(
        title="⚠️ Pending critical alert",
        body=f"{count} {noun} unresolved for over an hour.",
        kind="pending_critical",
    )


@dataclass
class BroadcastResult:
    """Aggregate outcome of one broadcast."""
    message: PushMessage
    recipients: int = 0
    sent: int = 0
    failed: int = 0
    skipped: bool = False
    reason: str = ""
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.skipped and self.failed == 0 and self.sent > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.message.kind,
            "title": self.message.title,
            "recipients": self.recipients,
            "sent": self.sent,
            "failed": self.failed,
            "skipped": self.skipped,
            "reason": self.reason,
            "errors": list(self.errors),
        }


class PushNotifier(ABC):
    """Fire-and-forget "notify all registered dispatchers"."""

    @abstractmethod
    async def broadcast(self, message: PushMessage) -> BroadcastResult:
        ...

    async def close(self) -> None:
        """Release network resources (no-op by default)."""


class RecordingNotifier(PushNotifier):
    """
    In-process notifier that only records what would have been sent.

    Used in development (no FCM key) and in tests.
    """

    def __init__(self) -> None:
        self.sent: List[PushMessage] = []

    async def broadcast(self, message: PushMessage) -> BroadcastResult:
        self.sent.append(message)
        logger.info("[PUSH] (recorded) %s — %s", message.title, message.body)
        return BroadcastResult(message=message, recipients=1, sent=1)

    def count(self, kind: str) -> int:
        return sum(1 for m in self.sent if m.kind == kind)


class FcmPushNotifier(PushNotifier):
    """
    Firebase Cloud Messaging fan-out.

    Usage:
        notifier = FcmPushNotifier(registry.list_tokens, server_key="...")
        result = await notifier.broadcast(NEW_SOS)
    """

    def __init__(
        self,
        token_provider: TokenProvider,
        *,
        server_key: Optional[str],
        endpoint: str = "https://fcm.googleapis.com/fcm/send",
        click_action: str = "/",
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._token_provider = token_provider
        self._server_key = server_key
        self._endpoint = endpoint
        self._click_action = click_action
        self._timeout = timeout_seconds
        self._http_client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    async def close(self) -> None:
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    def _build_request(self, token: str, message: PushMessage) -> Dict[str, Any]:
        return {
            "to": token,
            "notification": {
                "title": message.title,
                "body": message.body,
                "icon": "/icon.png",
                "click_action": self._click_action,
            },
            "data": {"kind": message.kind},
            "priority": "high",
        }

    async def _send_one(
        self,
        client: httpx.AsyncClient,
        token: str,
        message: PushMessage,
    ) -> None:
        try:
            response = await client.post(
                self._endpoint,
                json=self._build_request(token, message),
                headers={"Authorization": f"key={self._server_key}"},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise BroadcastFailure(
                f"HTTP {exc.response.status_code}", token=token[:12],
            ) from exc
        except httpx.HTTPError as exc:
            raise BroadcastFailure(type(exc).__name__, token=token[:12]) from exc

    async def _read_tokens(self) -> List[str]:
        try:
            return [t for t in await self._token_provider() if t]
        except Exception as exc:
            raise BroadcastFailure(
                f"could not read recipient tokens: {exc}", stage="token_lookup",
            ) from exc

    async def broadcast(self, message: PushMessage) -> BroadcastResult:
        result = BroadcastResult(message=message)

        if not self._server_key:
            logger.warning(
                "[PUSH] Server key not configured — broadcast '%s' skipped",
                message.title,
            )
            result.skipped = True
            result.reason = "not_configured"
            return result

        try:
            tokens = await self._read_tokens()
        except BroadcastFailure as exc:
            logger.error("[PUSH] %s", exc.message)
            result.skipped = True
            result.reason = "token_lookup_failed"
            result.errors.append(exc.message)
            return result

        if not tokens:
            logger.info("[PUSH] No registered recipients for '%s'", message.title)
            result.skipped = True
            result.reason = "no_recipients"
            return result

        result.recipients = len(tokens)
        client = await self._get_client()
        outcomes = await asyncio.gather(
            *(self._send_one(client, token, message) for token in tokens),
            return_exceptions=True,
        )

        for token, outcome in zip(tokens, outcomes):
            if isinstance(outcome, Exception):
                error = outcome.message if isinstance(outcome, BroadcastFailure) else str(outcome)
                result.failed += 1
                result.errors.append(error)
                logger.debug("[PUSH] Token %s… failed: %s", token[:12], error)
            else:
                result.sent += 1

        log = logger.info if result.failed == 0 else logger.warning
        log(
            "[PUSH] '%s' → %d/%d delivered",
            message.title, result.sent, result.recipients,
            extra={
                "recipient_count": result.recipients,
                "sent": result.sent,
                "failed": result.failed,
                "channel": "fcm",
            },
        )
        return result
