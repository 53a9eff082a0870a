"""
gemini.py — Advisory text for dispatchers via Google Gemini.

Given an alert's type and location, asks a generative model for a short
"immediate action protocol" the dispatcher can read while assigning the
alert. The text is advisory only: it never changes alert status.

Contract:
    request_advice(type, location) → str

Failure policy — the call must never block the dispatcher:

    Failure                              Result
    ──────────────────────────────────   ─────────────────
    no API key configured                FALLBACK_ADVICE
    timeout / connection error           FALLBACK_ADVICE
    HTTP 4xx / 5xx (quota, bad key)      FALLBACK_ADVICE
    malformed or empty response body     FALLBACK_ADVICE

Model output is untrusted free text; it is stored verbatim.

REST endpoint:
    POST {base}/{model}:generateContent?key={api_key}
    {"contents": [{"role": "user", "parts": [{"text": prompt}]}]}
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

import httpx

from sos_relay.app.alerts.models import EmergencyType, GeoLocation
from sos_relay.app.core.errors import AdvisoryServiceFailure

logger = logging.getLogger(__name__)

FALLBACK_ADVICE = "AI advisory unavailable. Follow standard procedure."

PROMPT_TEMPLATE = """\
You are a tactical assistant for a police emergency dispatch centre.
An alert was received: {type_label}.
Approximate location (lat/lng): {lat}, {lng}.
Reported address: {address}.

Write a short, direct "Immediate Action Protocol" (at most 4 points) for
the dispatching officer. Focus on safety, verification and the resources
needed.
Format: plain text with bullet points. No preamble."""


def build_prompt(
    alert_type: EmergencyType,
    location: Optional[GeoLocation],
    manual_address: str = "",
) -> str:
    location = location or GeoLocation()
    return PROMPT_TEMPLATE.format(
        type_label=alert_type.label,
        lat=location.lat if location.lat is not None else "unknown",
        lng=location.lng if location.lng is not None else "unknown",
        address=manual_address.strip() or "not provided",
    )


def extract_text(body: Dict[str, Any]) -> str:
    """Pull the first candidate's text out of a generateContent response."""
    try:
        parts = body["candidates"][0]["content"]["parts"]
        text = "".join(part.get("text", "") for part in parts).strip()
    except (KeyError, IndexError, TypeError, AttributeError) as exc:
        raise AdvisoryServiceFailure("malformed response") from exc
    if not text:
        raise AdvisoryServiceFailure("empty response")
    return text


class AdvisoryClient:
    """
    Stateless advisory requests against the Gemini REST API.

    Usage:
        client = AdvisoryClient(api_key="...", model="gemini-2.0-flash")
        text = await client.request_advice(EmergencyType.DISASTER, location)
    """

    def __init__(
        self,
        *,
        api_key: Optional[str],
        model: str = "gemini-2.0-flash",
        base_url: str = "https://generativelanguage.googleapis.com/v1beta/models",
        timeout_seconds: float = 20.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._api_key = api_key
        self.model = model
        self._base_url = base_url.rstrip("/")
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

    async def _generate(self, prompt: str) -> str:
        if not self._api_key:
            raise AdvisoryServiceFailure("GEMINI_API_KEY not set")

        client = await self._get_client()
        try:
            response = await client.post(
                f"{self._base_url}/{self.model}:generateContent",
                params={"key": self._api_key},
                json={"contents": [{"role": "user", "parts": [{"text": prompt}]}]},
            )
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as exc:
            raise AdvisoryServiceFailure(
                f"HTTP {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise AdvisoryServiceFailure(type(exc).__name__) from exc

        return extract_text(body)

    async def request_advice(
        self,
        alert_type: EmergencyType,
        location: Optional[GeoLocation],
        manual_address: str = "",
    ) -> str:
        """Advisory text, or FALLBACK_ADVICE on any failure."""
        start = time.perf_counter()
        try:
            text = await self._generate(build_prompt(alert_type, location, manual_address))
        except AdvisoryServiceFailure as exc:
            logger.warning("Advisory request failed: %s", exc.message)
            return FALLBACK_ADVICE

        logger.info(
            "Advisory generated for %s (%d chars)", alert_type.value, len(text),
            extra={
                "alert_type": alert_type.value,
                "duration_ms": (time.perf_counter() - start) * 1000,
            },
        )
        return text
