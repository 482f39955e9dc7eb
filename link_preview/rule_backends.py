"""Rule backends: how an interception rule reaches the browser.

Two backends share one interface (`installed_rules` / `update_rules`, rule
dicts in the declarative session-rule format):

- DeclarativeRuleBackend: the browser host (extension) owns the rule table and
  applies it itself; we talk to it over RPC.
- ImperativeRuleBackend: the rule table lives here and every paused response is
  rewritten on the fly (`CdpFetchInterceptor` feeds it CDP `Fetch` events).
"""

from __future__ import annotations

import json
import logging
import socket
import threading
import time
from collections.abc import Iterable
from contextlib import suppress
from typing import Any, Protocol

from .errors import RuleBackendError
from .redaction import redact_headers, redact_url_brief
from .rules import SUB_FRAME, InterceptionRule

logger = logging.getLogger("link_preview.backends")


class RuleBackend(Protocol):
    name: str

    async def installed_rules(self) -> list[dict[str, Any]]: ...

    async def update_rules(
        self,
        *,
        add: Iterable[dict[str, Any]] = (),
        remove_ids: Iterable[int] = (),
    ) -> None: ...


class RuleHost(Protocol):
    """Anything that can forward an RPC to the browser host (see gateway.PreviewGateway)."""

    async def rpc_call_async(self, method: str, params: dict[str, Any] | None = None, *, timeout: float = 10.0) -> Any: ...


# ─────────────────────────────────────────────────────────────────────────────
# Declarative
# ─────────────────────────────────────────────────────────────────────────────


class DeclarativeRuleBackend:
    """Session rules installed through the connected browser host."""

    name = "declarative"

    def __init__(self, host: RuleHost, *, timeout: float = 5.0) -> None:
        self.host = host
        self.timeout = float(timeout)

    async def _call(self, method: str, params: dict[str, Any]) -> Any:
        try:
            return await self.host.rpc_call_async(method, params, timeout=self.timeout)
        except RuleBackendError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise RuleBackendError(f"{method} failed: {exc}") from exc

    async def installed_rules(self) -> list[dict[str, Any]]:
        res = await self._call("declarativeNetRequest.getSessionRules", {})
        if not isinstance(res, list):
            raise RuleBackendError("declarativeNetRequest.getSessionRules returned a non-list result")
        return [r for r in res if isinstance(r, dict)]

    async def update_rules(
        self,
        *,
        add: Iterable[dict[str, Any]] = (),
        remove_ids: Iterable[int] = (),
    ) -> None:
        payload = {"addRules": list(add), "removeRuleIds": [int(r) for r in remove_ids]}
        await self._call("declarativeNetRequest.updateSessionRules", payload)


# ─────────────────────────────────────────────────────────────────────────────
# Imperative
# ─────────────────────────────────────────────────────────────────────────────


class ImperativeRuleBackend:
    """In-process rule table evaluated per response."""

    name = "imperative"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rules: dict[int, InterceptionRule] = {}

    async def installed_rules(self) -> list[dict[str, Any]]:
        with self._lock:
            return [r.to_dnr() for r in self._rules.values()]

    async def update_rules(
        self,
        *,
        add: Iterable[dict[str, Any]] = (),
        remove_ids: Iterable[int] = (),
    ) -> None:
        # Same contract as the declarative facility: removals then additions, all or nothing.
        with self._lock:
            staged = dict(self._rules)
            for rule_id in remove_ids:
                staged.pop(int(rule_id), None)
            for raw in add:
                try:
                    rule = InterceptionRule.from_dnr(raw)
                except Exception as exc:  # noqa: BLE001
                    raise RuleBackendError(f"invalid rule: {exc}") from exc
                if rule.rule_id in staged:
                    raise RuleBackendError(f"rule id {rule.rule_id} already installed")
                staged[rule.rule_id] = rule
            self._rules = staged

    def _matching(self, tab_id: int | None, url: str, resource_type: str) -> list[InterceptionRule]:
        with self._lock:
            rules = list(self._rules.values())
        return [r for r in rules if r.matches(tab_id, url, resource_type)]

    def rewrite_response_headers(
        self,
        tab_id: int | None,
        url: str,
        resource_type: str,
        headers: list[dict[str, Any]],
    ) -> list[dict[str, Any]] | None:
        """Return the filtered header list, or None when no rule applies (leave untouched)."""
        rules = self._matching(tab_id, url, resource_type)
        if not rules:
            return None
        removed: set[str] = set()
        for rule in rules:
            removed |= rule.removed_headers()
        return [h for h in headers if str(h.get("name") or "").lower() not in removed]

    def rewrite_request_headers(
        self,
        tab_id: int | None,
        url: str,
        resource_type: str,
        headers: dict[str, str],
    ) -> dict[str, str] | None:
        rules = [r for r in self._matching(tab_id, url, resource_type) if r.request_headers]
        if not rules:
            return None
        out = {k: v for k, v in headers.items()}
        for rule in rules:
            for op in rule.request_headers:
                for existing in [k for k in out if k.lower() == op.header]:
                    del out[existing]
                if op.operation == "set" and op.value is not None:
                    out[op.header.title()] = op.value
        return out


# ─────────────────────────────────────────────────────────────────────────────
# CDP Fetch bridge (imperative backend)
# ─────────────────────────────────────────────────────────────────────────────


def _import_websocket():
    try:
        import websocket  # type: ignore[import-not-found]

        return websocket
    except Exception as exc:  # noqa: BLE001
        raise RuntimeError(
            "The imperative backend requires the 'websocket-client' Python package. "
            "Install it (pip install websocket-client) or use LINK_PREVIEW_BACKEND=declarative."
        ) from exc


class CdpConnection:
    """Low-level CDP WebSocket connection for one tab target."""

    def __init__(self, ws_url: str, timeout: float = 5.0):
        websocket = _import_websocket()
        self.ws = websocket.create_connection(ws_url, timeout=timeout)
        self.ws_url = ws_url
        self.timeout = timeout
        self._next_id = 1
        # Events received while waiting for a command response; consumed by wait_for_event.
        self._event_queue: list[dict[str, Any]] = []
        self._max_event_queue = 2000

    def _push_event(self, event: dict[str, Any]) -> None:
        self._event_queue.append(event)
        if len(self._event_queue) > self._max_event_queue:
            del self._event_queue[: len(self._event_queue) - self._max_event_queue]

    def pop_event(self, event_name: str) -> dict[str, Any] | None:
        for i, ev in enumerate(self._event_queue):
            if ev.get("method") == event_name:
                self._event_queue.pop(i)
                params = ev.get("params")
                return params if isinstance(params, dict) else {}
        return None

    def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Send CDP command and wait for response."""
        msg_id = self._next_id
        self._next_id += 1

        msg: dict[str, Any] = {"id": msg_id, "method": method}
        if params:
            msg["params"] = params
        try:
            self.ws.settimeout(min(2.0, max(0.5, float(self.timeout))))
            self.ws.send(json.dumps(msg))
        except Exception as exc:  # noqa: BLE001
            raise RuleBackendError(f"CDP send failed: {exc}") from exc
        return self._recv_until(msg_id)

    def _recv(self, remaining: float) -> dict[str, Any] | None:
        try:
            self.ws.settimeout(min(0.5, remaining))
            raw = self.ws.recv()
        except Exception as exc:  # noqa: BLE001
            text = str(exc).lower()
            if isinstance(exc, TimeoutError) or "timed out" in text:
                return None
            raise RuleBackendError(f"CDP receive failed: {exc}") from exc
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None

    def _recv_until(self, expected_id: int) -> dict[str, Any]:
        deadline = time.time() + self.timeout
        while True:
            remaining = deadline - time.time()
            if remaining <= 0:
                raise RuleBackendError("CDP response timed out")
            data = self._recv(remaining)
            if data is None:
                continue
            if isinstance(data.get("method"), str) and "id" not in data:
                self._push_event(data)
                continue
            if data.get("id") == expected_id:
                if "error" in data:
                    raise RuleBackendError(str(data["error"]))
                result = data.get("result")
                return result if isinstance(result, dict) else {}

    def wait_for_event(self, event_name: str, timeout: float = 10.0) -> dict[str, Any] | None:
        queued = self.pop_event(event_name)
        if queued is not None:
            return queued

        deadline = time.time() + timeout
        while True:
            remaining = deadline - time.time()
            if remaining <= 0:
                return None
            data = self._recv(remaining)
            if data is None or not isinstance(data.get("method"), str) or "id" in data:
                continue
            if data.get("method") == event_name:
                params = data.get("params")
                return params if isinstance(params, dict) else {}
            self._push_event(data)

    def close(self) -> None:
        # Prefer a raw-socket shutdown; websocket-client close() can block on its internal locks.
        sock = getattr(self.ws, "sock", None)
        if sock is not None:
            with suppress(Exception):
                sock.shutdown(socket.SHUT_RDWR)
            with suppress(Exception):
                sock.close()


_CDP_RESOURCE_TYPES = {
    "Stylesheet": "stylesheet",
    "Script": "script",
    "Image": "image",
    "Font": "font",
    "XHR": "xmlhttprequest",
    "Fetch": "xmlhttprequest",
    "Media": "media",
    "WebSocket": "websocket",
}


class CdpFetchInterceptor:
    """Feeds one tab's `Fetch.requestPaused` events through the imperative backend."""

    def __init__(self, connection: Any, backend: ImperativeRuleBackend, *, tab_id: int) -> None:
        self.connection = connection
        self.backend = backend
        self.tab_id = int(tab_id)
        self.main_frame_id: str | None = None
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def enable(self, *, request_stage: bool = False) -> None:
        tree = self.connection.send("Page.getFrameTree")
        frame = (tree.get("frameTree") or {}).get("frame") or {}
        self.main_frame_id = str(frame.get("id") or "") or None
        patterns = [{"urlPattern": "*", "resourceType": "Document", "requestStage": "Response"}]
        if request_stage:
            patterns.append({"urlPattern": "*", "resourceType": "Document", "requestStage": "Request"})
        self.connection.send("Fetch.enable", {"patterns": patterns})
        logger.info("fetch interception enabled tab=%s", self.tab_id)

    def resource_type_for(self, params: dict[str, Any]) -> str:
        raw = str(params.get("resourceType") or "")
        if raw == "Document":
            frame_id = str(params.get("frameId") or "")
            if self.main_frame_id is not None and frame_id == self.main_frame_id:
                return "main_frame"
            return SUB_FRAME
        return _CDP_RESOURCE_TYPES.get(raw, "other")

    def handle_paused(self, params: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        """Decide how to continue one paused request; returns (CDP method, params)."""
        request_id = params.get("requestId")
        request = params.get("request") if isinstance(params.get("request"), dict) else {}
        url = str(request.get("url") or "")
        resource_type = self.resource_type_for(params)

        if "responseStatusCode" not in params and "responseErrorReason" not in params:
            raw_headers = request.get("headers") if isinstance(request.get("headers"), dict) else {}
            new_headers = self.backend.rewrite_request_headers(self.tab_id, url, resource_type, raw_headers)
            if new_headers is None:
                return "Fetch.continueRequest", {"requestId": request_id}
            return "Fetch.continueRequest", {
                "requestId": request_id,
                "headers": [{"name": k, "value": v} for k, v in new_headers.items()],
            }

        headers = params.get("responseHeaders") if isinstance(params.get("responseHeaders"), list) else []
        filtered = self.backend.rewrite_response_headers(self.tab_id, url, resource_type, headers)
        if filtered is None:
            return "Fetch.continueResponse", {"requestId": request_id}
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "stripped %d header(s) tab=%s url=%s kept=%s",
                len(headers) - len(filtered),
                self.tab_id,
                redact_url_brief(url),
                redact_headers(filtered),
            )
        out: dict[str, Any] = {"requestId": request_id, "responseHeaders": filtered}
        if isinstance(params.get("responseStatusCode"), int):
            out["responseCode"] = params["responseStatusCode"]
        return "Fetch.continueResponse", out

    def pump_once(self, *, timeout: float = 0.5) -> bool:
        params = self.connection.wait_for_event("Fetch.requestPaused", timeout=timeout)
        if params is None:
            return False
        method, payload = self.handle_paused(params)
        try:
            self.connection.send(method, payload)
        except RuleBackendError as exc:
            logger.warning("fetch continue failed tab=%s: %s", self.tab_id, exc)
        return True

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()

        def _run() -> None:
            while not self._stop.is_set():
                try:
                    self.pump_once()
                except RuleBackendError as exc:
                    logger.error("fetch interceptor stopped tab=%s: %s", self.tab_id, exc)
                    return

        t = threading.Thread(target=_run, name=f"link-preview-fetch-{self.tab_id}", daemon=True)
        self._thread = t
        t.start()

    def stop(self, *, timeout: float = 2.0) -> None:
        self._stop.set()
        t = self._thread
        if t is not None:
            t.join(timeout=timeout)
        with suppress(Exception):
            self.connection.send("Fetch.disable")
