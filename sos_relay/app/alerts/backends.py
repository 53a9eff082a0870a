"""
backends.py — Realtime document store backends.

The relay never owns alert state: a managed realtime database does.
This module consumes it as a path-addressed JSON tree:

    push(path, value)      → generated child key
    update(path, fields)   → shallow merge (None deletes a child)
    set(path, value)       → replace
    get(path)              → current value or None
    listen(path, callback) → callback(full value at path) on every change

═══════════════════════════════════════════════════════════════════════════
BACKENDS
═══════════════════════════════════════════════════════════════════════════

    Backend                  Transport                     Use
    ──────────────────────   ───────────────────────────   ───────────────
    InMemoryDocumentStore    dict tree, sync listeners     dev / tests
    FirebaseRealtimeStore    REST + Server-Sent Events     production

Firebase REST mapping:

    push   → POST   {db}/{path}.json        → {"name": "<key>"}
    update → PATCH  {db}/{path}.json
    set    → PUT    {db}/{path}.json
    get    → GET    {db}/{path}.json
    listen → GET    {db}/{path}.json  (Accept: text/event-stream)

The stream sends `put` / `patch` events relative to the listened path;
the listener keeps its own copy of the subtree so the callback always
receives the full current value, never a diff.

Error mapping (both backends):

    HTTP 401 / 403                      → PermissionDenied
    timeout, connection error, 5xx      → StoreUnavailable
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Set, Tuple

import httpx

from sos_relay.app.alerts.models import now_ms
from sos_relay.app.core.errors import (
    ExternalServiceError,
    PermissionDenied,
    StoreUnavailable,
)

logger = logging.getLogger(__name__)

Listener = Callable[[Any], None]
Unsubscribe = Callable[[], None]


def _split(path: str) -> List[str]:
    return [part for part in path.strip("/").split("/") if part]


def _is_related(a: str, b: str) -> bool:
    """True if one path is an ancestor of (or equal to) the other."""
    pa, pb = _split(a), _split(b)
    n = min(len(pa), len(pb))
    return pa[:n] == pb[:n]


class DocumentStore(ABC):
    """Path-addressed JSON document store with live listeners."""

    @abstractmethod
    async def push(self, path: str, value: Any) -> str:
        ...

    @abstractmethod
    async def update(self, path: str, fields: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def set(self, path: str, value: Any) -> None:
        ...

    @abstractmethod
    async def get(self, path: str) -> Any:
        ...

    @abstractmethod
    def listen(self, path: str, callback: Listener) -> Unsubscribe:
        ...

    async def close(self) -> None:
        """Release network resources (no-op by default)."""


# ═══════════════════════════════════════════════════════════════════════════
# In-memory backend
# ═══════════════════════════════════════════════════════════════════════════

class InMemoryDocumentStore(DocumentStore):
    """
    Dict-backed store with synchronous listener fan-out.

    Listeners receive the current value immediately on registration and
    again after every write that touches their path. `offline` and
    `denied_paths` simulate connectivity loss and access-rule rejection.
    """

    def __init__(self) -> None:
        self._tree: Dict[str, Any] = {}
        self._listeners: Dict[int, Tuple[str, Listener]] = {}
        self._next_listener_id = 0
        self._push_counter = 0
        self.offline = False
        self.denied_paths: Set[str] = set()

    # ── Guards ──

    def _check(self, path: str, *, write: bool) -> None:
        if self.offline:
            raise StoreUnavailable("store offline", path=path)
        if write:
            parts = _split(path)
            for denied in self.denied_paths:
                dp = _split(denied)
                if parts[: len(dp)] == dp:
                    raise PermissionDenied(path, "write denied by rules")

    # ── Tree helpers ──

    def _lookup(self, path: str) -> Any:
        node: Any = self._tree
        for part in _split(path):
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return node

    def _parent(self, path: str) -> Tuple[Dict[str, Any], str]:
        parts = _split(path)
        if not parts:
            raise ValueError("cannot address the store root")
        node = self._tree
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        return node, parts[-1]

    def _write(self, path: str, value: Any) -> None:
        parent, leaf = self._parent(path)
        if value is None:
            parent.pop(leaf, None)
        else:
            parent[leaf] = copy.deepcopy(value)

    def _generate_key(self) -> str:
        self._push_counter += 1
        return f"-{now_ms():011x}{self._push_counter:04x}{uuid.uuid4().hex[:5]}"

    def _notify(self, path: str) -> None:
        for listen_path, callback in list(self._listeners.values()):
            if not _is_related(listen_path, path):
                continue
            try:
                callback(copy.deepcopy(self._lookup(listen_path)))
            except Exception:
                logger.exception("Listener on %s failed", listen_path)

    # ── DocumentStore API ──

    async def push(self, path: str, value: Any) -> str:
        self._check(path, write=True)
        key = self._generate_key()
        child = f"{path.strip('/')}/{key}"
        self._write(child, value)
        self._notify(child)
        return key

    async def update(self, path: str, fields: Dict[str, Any]) -> None:
        self._check(path, write=True)
        base = path.strip("/")
        for name, value in fields.items():
            self._write(f"{base}/{name}", value)
        self._notify(base)

    async def set(self, path: str, value: Any) -> None:
        self._check(path, write=True)
        self._write(path, value)
        self._notify(path)

    async def get(self, path: str) -> Any:
        self._check(path, write=False)
        return copy.deepcopy(self._lookup(path))

    def listen(self, path: str, callback: Listener) -> Unsubscribe:
        listener_id = self._next_listener_id
        self._next_listener_id += 1
        self._listeners[listener_id] = (path, callback)
        callback(copy.deepcopy(self._lookup(path)))

        def unsubscribe() -> None:
            self._listeners.pop(listener_id, None)

        return unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._listeners)


# ═══════════════════════════════════════════════════════════════════════════
# Firebase Realtime Database (REST + SSE)
# ═══════════════════════════════════════════════════════════════════════════

def apply_stream_event(tree: Any, event: str, payload: Dict[str, Any]) -> Any:
    """
    Apply one `put` / `patch` stream event to a local copy of the subtree.

    `payload` is the decoded `data:` line: {"path": "/a/b", "data": ...}.
    Returns the new tree (the input may be mutated).
    """
    parts = _split(payload.get("path", "/"))
    data = payload.get("data")

    if event == "put" and not parts:
        return copy.deepcopy(data)

    if not isinstance(tree, dict):
        tree = {}
    node = tree
    for part in parts[:-1] if event == "put" else parts:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child

    if event == "put":
        if data is None:
            node.pop(parts[-1], None)
        else:
            node[parts[-1]] = copy.deepcopy(data)
    elif event == "patch" and isinstance(data, dict):
        for key, value in data.items():
            if value is None:
                node.pop(key, None)
            else:
                node[key] = copy.deepcopy(value)
    return tree


class FirebaseRealtimeStore(DocumentStore):
    """
    Firebase Realtime Database over its REST API.

    Usage:
        store = FirebaseRealtimeStore("https://my-db.firebaseio.com", auth_token=...)
        key = await store.push("alerts", {...})
        unsubscribe = store.listen("alerts", on_value)
    """

    def __init__(
        self,
        database_url: str,
        *,
        auth_token: Optional[str] = None,
        timeout_seconds: float = 15.0,
        reconnect_seconds: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.database_url = database_url.rstrip("/")
        self._auth_token = auth_token
        self._timeout = timeout_seconds
        self._reconnect_seconds = reconnect_seconds
        self._http_client = client
        self._streams: Set[asyncio.Task] = set()

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    async def close(self) -> None:
        for task in list(self._streams):
            task.cancel()
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    def _url(self, path: str) -> str:
        return f"{self.database_url}/{path.strip('/')}.json"

    def _params(self) -> Dict[str, str]:
        return {"auth": self._auth_token} if self._auth_token else {}

    async def _request(self, method: str, path: str, *, body: Any = None) -> Any:
        client = await self._get_client()
        try:
            response = await client.request(
                method, self._url(path), params=self._params(), json=body,
            )
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise StoreUnavailable(type(exc).__name__, path=path) from exc

        if response.status_code in (401, 403):
            raise PermissionDenied(path, response.text[:200])
        if response.status_code >= 500:
            raise StoreUnavailable(f"HTTP {response.status_code}", path=path)
        if response.status_code >= 400:
            raise ExternalServiceError(
                "realtime-store", f"HTTP {response.status_code}", path=path,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ExternalServiceError(
                "realtime-store", "response is not JSON", path=path,
            ) from exc

    async def push(self, path: str, value: Any) -> str:
        data = await self._request("POST", path, body=value)
        if not isinstance(data, dict) or not isinstance(data.get("name"), str):
            raise ExternalServiceError(
                "realtime-store", "push reply carries no key", path=path,
            )
        return data["name"]

    async def update(self, path: str, fields: Dict[str, Any]) -> None:
        await self._request("PATCH", path, body=fields)

    async def set(self, path: str, value: Any) -> None:
        await self._request("PUT", path, body=value)

    async def get(self, path: str) -> Any:
        return await self._request("GET", path)

    def listen(self, path: str, callback: Listener) -> Unsubscribe:
        task = asyncio.get_running_loop().create_task(self._stream(path, callback))
        self._streams.add(task)
        task.add_done_callback(self._streams.discard)

        def unsubscribe() -> None:
            task.cancel()

        return unsubscribe

    async def _stream(self, path: str, callback: Listener) -> None:
        """Hold an SSE connection open, reconnecting after transport failures."""
        headers = {"Accept": "text/event-stream"}
        timeout = httpx.Timeout(self._timeout, read=None)

        while True:
            tree: Any = None
            try:
                client = await self._get_client()
                async with client.stream(
                    "GET", self._url(path), params=self._params(),
                    headers=headers, timeout=timeout,
                ) as response:
                    if response.status_code in (401, 403):
                        logger.error("Stream on %s rejected by access rules", path)
                        return
                    response.raise_for_status()
                    logger.info("Listening on %s", path)

                    async for event, data in aiter_sse_events(response.aiter_lines()):
                        if event in ("put", "patch"):
                            tree = apply_stream_event(tree, event, json.loads(data))
                            try:
                                callback(copy.deepcopy(tree))
                            except Exception:
                                logger.exception("Listener on %s failed", path)
                        elif event in ("cancel", "auth_revoked"):
                            logger.error("Stream on %s closed by server: %s", path, event)
                            return
            except asyncio.CancelledError:
                raise
            except (httpx.TransportError, httpx.HTTPStatusError, ValueError) as exc:
                logger.warning(
                    "Stream on %s dropped (%s); reconnecting in %.0fs",
                    path, exc, self._reconnect_seconds,
                )
            await asyncio.sleep(self._reconnect_seconds)


async def aiter_sse_events(
    lines: AsyncIterator[str],
) -> AsyncIterator[Tuple[str, str]]:
    """Group raw SSE lines into (event, data) pairs."""
    event: Optional[str] = None
    data: List[str] = []
    async for line in lines:
        if not line:
            if event is not None:
                yield event, "\n".join(data)
            event, data = None, []
        elif line.startswith("event:"):
            event = line[len("event:"):].strip()
        elif line.startswith("data:"):
            data.append(line[len("data:"):].strip())
