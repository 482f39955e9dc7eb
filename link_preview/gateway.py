from __future__ import annotations

import asyncio
import contextlib
import errno
import json
import logging
import os
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Any

from .errors import ChannelError
from .protocol import PREPARE_TO_PREVIEW

GATEWAY_PROTOCOL_VERSION = "2026-10-01"
GATEWAY_WELL_KNOWN_PATH = "/.well-known/link-preview-gateway"

logger = logging.getLogger("link_preview.gateway")

_HOST_ORIGIN_RE = re.compile(r"^(chrome|moz)-extension://[A-Za-z0-9_.@{}-]+/?$")


def _now_ms() -> int:
    return int(time.time() * 1000)


def _import_websockets():
    try:
        import websockets  # type: ignore[import-not-found]

        return websockets
    except Exception as exc:  # noqa: BLE001
        raise RuntimeError(
            "The preview gateway requires the 'websockets' Python package. Install it (pip install websockets)."
        ) from exc


@dataclass
class PageConnection:
    tab_id: int
    ws: Any
    connected_at_ms: int = field(default_factory=_now_ms)
    # Sessions this page opened; released on disconnect.
    session_ids: set[str] = field(default_factory=set)


class PreviewGateway:
    """Local WebSocket gateway between page clients, the browser host and the coordinator.

    - The asyncio server runs in a dedicated daemon thread; the coordinator lives on that loop.
    - Page clients (`role: page`) send protocol messages for their tab.
    - The host client (`role: host`, the browser extension) reports tab events and
      executes rule RPCs (`rpc` / `rpcResult`).
    - Fail-closed: RPCs are refused while no host is connected.
    """

    def __init__(
        self,
        coordinator: Any = None,
        *,
        host: str = "127.0.0.1",
        port: int = 8766,
        port_span: int | None = None,
    ) -> None:
        self.coordinator = coordinator
        self.host = (host or "127.0.0.1").strip() or "127.0.0.1"
        self.port = int(port)
        self._configured_port = int(port)
        if port_span is None:
            try:
                port_span = int(os.environ.get("LINK_PREVIEW_PORT_SPAN") or 10)
            except Exception:
                port_span = 10
        self.port_span = max(0, min(int(port_span), 250))
        self._started_at_ms = _now_ms()

        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()
        self._server: Any | None = None
        self._bind_error: str | None = None

        self._host_ws: Any | None = None
        self._host_connected = threading.Event()
        self._host_synced = False
        self._pages: dict[int, PageConnection] = {}
        self._next_id = 1
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def start(self, *, wait_timeout: float = 5.0) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        with self._lock:
            self._bind_error = None

        t = threading.Thread(target=self._run_thread, name="link-preview-gateway", daemon=True)
        self._thread = t
        t.start()

        deadline = time.time() + max(0.05, float(wait_timeout))
        while time.time() < deadline:
            with self._lock:
                if self._server is not None:
                    return
            if not t.is_alive():
                break
            time.sleep(0.05)

        with self._lock:
            bind_error = self._bind_error
        if bind_error:
            raise RuntimeError(f"Preview gateway bind failed on {self.host}:{self.port}: {bind_error}")
        raise RuntimeError(f"Preview gateway failed to start on {self.host}:{self.port}")

    def stop(self, *, timeout: float = 2.0) -> None:
        self._stop.set()
        loop = self._loop
        if loop is not None and loop.is_running():
            with contextlib.suppress(Exception):
                asyncio.run_coroutine_threadsafe(self._shutdown_async(), loop).result(timeout=timeout)
        t = self._thread
        if t is not None:
            t.join(timeout=timeout)

    def run_coroutine(self, coro: Any, *, timeout: float = 10.0) -> Any:
        """Run a coroutine on the gateway loop from another thread and wait for its result."""
        loop = self._loop
        if loop is None or not loop.is_running():
            coro.close()
            raise ChannelError("Preview gateway is not running")
        return asyncio.run_coroutine_threadsafe(coro, loop).result(timeout=timeout)

    def is_host_connected(self) -> bool:
        with self._lock:
            return self._host_ws is not None

    def wait_for_host(self, *, timeout: float = 5.0) -> bool:
        return bool(self._host_connected.wait(timeout=max(0.0, float(timeout))))

    def status(self) -> dict[str, Any]:
        with self._lock:
            return {
                "listening": self._server is not None,
                "host": self.host,
                "port": self.port,
                "configuredPort": self._configured_port,
                "hostConnected": self._host_ws is not None,
                "pageTabs": sorted(self._pages),
                **({"bindError": self._bind_error} if self._bind_error else {}),
                "serverStartedAtMs": self._started_at_ms,
            }

    # ─────────────────────────────────────────────────────────────────────────
    # Host RPC
    # ─────────────────────────────────────────────────────────────────────────

    async def rpc_call_async(self, method: str, params: dict[str, Any] | None = None, *, timeout: float = 10.0) -> Any:
        """Call the connected host from inside the gateway loop."""
        if not isinstance(method, str) or not method.strip():
            raise ChannelError("Host RPC method is required")

        with self._lock:
            ws = self._host_ws
            if ws is None:
                raise ChannelError("Browser host is not connected")
            req_id = self._next_id
            self._next_id += 1
            fut: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
            self._pending[req_id] = fut

        msg: dict[str, Any] = {"type": "rpc", "id": req_id, "method": method}
        if isinstance(params, dict) and params:
            msg["params"] = params

        try:
            try:
                await self._ws_send_json(ws, msg)
            except Exception as exc:  # noqa: BLE001
                raise ChannelError(f"Host RPC send failed: {exc}") from exc
            try:
                return await asyncio.wait_for(fut, timeout=max(0.1, float(timeout)))
            except asyncio.TimeoutError as exc:
                raise ChannelError(f"Host RPC timed out: method={method}") from exc
        finally:
            with self._lock:
                self._pending.pop(req_id, None)

    # ─────────────────────────────────────────────────────────────────────────
    # Internals (async)
    # ─────────────────────────────────────────────────────────────────────────

    def _port_candidates(self) -> list[int]:
        base = int(self.port or 8766)
        return [p for p in range(base, base + self.port_span + 1) if 1 <= p <= 65535]

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _run_thread(self) -> None:
        asyncio.run(self._run_async())

    async def _run_async(self) -> None:
        websockets = _import_websockets()
        from websockets.datastructures import Headers as WsHeaders  # type: ignore[import-not-found]
        from websockets.http11 import Response as WsResponse  # type: ignore[import-not-found]

        def _json_response(status: int, reason: str, payload: Any) -> WsResponse:  # type: ignore[name-defined]
            headers = WsHeaders()
            headers["Content-Type"] = "application/json"
            headers["Cache-Control"] = "no-store"
            headers["Access-Control-Allow-Origin"] = "*"
            body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
            return WsResponse(status, reason, headers, body)

        async def _process_request(_conn, request):  # type: ignore[no-untyped-def]
            try:
                upgrade = str(request.headers.get("Upgrade") or "").lower()
            except Exception:
                upgrade = ""
            if upgrade == "websocket":
                return None
            path = str(getattr(request, "path", "") or "")
            if path != GATEWAY_WELL_KNOWN_PATH:
                return _json_response(404, "Not Found", {"error": "not found"})
            with self._lock:
                host_connected = self._host_ws is not None
                page_count = len(self._pages)
            return _json_response(
                200,
                "OK",
                {
                    "type": "linkPreviewGateway",
                    "protocolVersion": GATEWAY_PROTOCOL_VERSION,
                    "gatewayPort": int(self.port),
                    "serverStartedAtMs": self._started_at_ms,
                    "pid": os.getpid(),
                    "hostConnected": host_connected,
                    "pageCount": page_count,
                },
            )

        self._loop = asyncio.get_running_loop()
        backoff_s = 0.25
        try:
            while not self._stop.is_set():
                with self._lock:
                    has_server = self._server is not None
                if has_server:
                    await asyncio.sleep(0.25)
                    continue

                server = None
                bind_error: str | None = None
                for port in self._port_candidates():
                    try:
                        server = await websockets.serve(
                            self._handler,
                            self.host,
                            int(port),
                            process_request=_process_request,
                            max_size=4_000_000,
                            ping_interval=None,
                        )
                    except OSError as exc:
                        bind_error = str(exc)
                        if getattr(exc, "errno", None) in {errno.EADDRINUSE, errno.EACCES}:
                            continue
                        break
                    with self._lock:
                        self._server = server
                        self.port = int(port)
                        self._bind_error = None
                    logger.info("gateway listening on %s:%s", self.host, self.port)
                    backoff_s = 0.25
                    break

                if server is None:
                    with self._lock:
                        self._bind_error = bind_error or "unknown bind error"
                    logger.error("gateway bind failed: %s", bind_error)
                    await asyncio.sleep(backoff_s)
                    backoff_s = min(backoff_s * 1.6, 5.0)
        finally:
            await self._shutdown_async()

    async def _shutdown_async(self) -> None:
        srv = self._server
        self._server = None
        if srv is not None:
            with contextlib.suppress(Exception):
                srv.close()
                await srv.wait_closed()
        for task in list(self._tasks):
            task.cancel()
        coordinator = self.coordinator
        if coordinator is not None:
            with contextlib.suppress(Exception):
                await coordinator.aclose()
        self._host_disconnected(None)

    async def _handler(self, ws) -> None:  # type: ignore[no-untyped-def]
        try:
            raw = await asyncio.wait_for(ws.recv(), timeout=2.5)
        except Exception:
            logger.debug("client hello timeout")
            return
        try:
            hello = json.loads(raw)
        except Exception:
            hello = None
        if not isinstance(hello, dict) or hello.get("type") != "hello":
            with contextlib.suppress(Exception):
                await ws.close(code=1002, reason="expected hello")
            return

        role = str(hello.get("role") or "").strip()
        if role == "host":
            await self._serve_host(ws, hello)
            return
        if role == "page":
            tab_id = hello.get("tabId")
            if isinstance(tab_id, bool) or not isinstance(tab_id, int):
                with contextlib.suppress(Exception):
                    await ws.close(code=1002, reason="missing tabId")
                return
            await self._serve_page(ws, tab_id)
            return
        with contextlib.suppress(Exception):
            await ws.close(code=1002, reason="unknown role")

    # ─────────────────────────────────────────────────────────────────────────
    # Host connection
    # ─────────────────────────────────────────────────────────────────────────

    @staticmethod
    def _origin_of(ws) -> str | None:  # type: ignore[no-untyped-def]
        with contextlib.suppress(Exception):
            return ws.request.headers.get("Origin")
        return None

    async def _serve_host(self, ws, hello: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        origin = self._origin_of(ws)
        if origin is not None and origin != "null" and not _HOST_ORIGIN_RE.match(origin):
            with contextlib.suppress(Exception):
                await ws.close(code=1008, reason="host must be an extension")
            return

        with self._lock:
            self._host_ws = ws
            first = not self._host_synced
            self._host_synced = True
        try:
            await self._ws_send_json(
                ws,
                {
                    "type": "helloAck",
                    "role": "host",
                    "protocolVersion": GATEWAY_PROTOCOL_VERSION,
                    "gatewayPort": int(self.port),
                    "serverStartedAtMs": self._started_at_ms,
                },
            )
        except Exception:
            self._host_disconnected(ws)
            return
        self._host_connected.set()
        logger.info("browser host connected (%s)", str(hello.get("userAgent") or "unknown agent")[:120])

        if first and self.coordinator is not None:
            # Drop any rule left over from a previous run.
            self._spawn(self.coordinator.reset())

        try:
            async for raw_msg in ws:
                try:
                    msg = json.loads(raw_msg)
                except Exception:
                    continue
                await self._on_host_message(ws, msg)
        except Exception:
            pass
        finally:
            self._host_disconnected(ws)

    def _host_disconnected(self, ws: Any) -> None:
        with self._lock:
            if ws is not None and self._host_ws is not ws:
                return
            was_connected = self._host_ws is not None
            self._host_ws = None
            self._host_connected.clear()
            pending = list(self._pending.values())
            self._pending.clear()
        for fut in pending:
            if not fut.done():
                fut.set_exception(ChannelError("Browser host disconnected"))
        if was_connected:
            logger.info("browser host disconnected")

    async def _on_host_message(self, ws, msg: Any) -> None:  # type: ignore[no-untyped-def]
        if not isinstance(msg, dict):
            return
        mtype = msg.get("type")

        if mtype == "rpcResult":
            raw_id = msg.get("id")
            try:
                req_id = int(raw_id)  # type: ignore[arg-type]
            except Exception:
                return
            with self._lock:
                fut = self._pending.get(req_id)
            if fut is None or fut.done():
                return
            if msg.get("ok"):
                fut.set_result(msg.get("result"))
                return
            err = msg.get("error")
            err_msg = err.get("message") if isinstance(err, dict) else None
            fut.set_exception(ChannelError(str(err_msg or "Host RPC failed")))
            return

        if mtype == "tabEvent":
            tab_id = msg.get("tabId")
            event = msg.get("event")
            if isinstance(tab_id, bool) or not isinstance(tab_id, int) or self.coordinator is None:
                return
            # Tab hooks reconcile through this very connection; never await them inline.
            if event == "activated":
                self._spawn(self.coordinator.on_tab_activated(tab_id))
            elif event == "removed":
                self._spawn(self.coordinator.on_tab_removed(tab_id))
            return

        if mtype == "ping":
            with contextlib.suppress(Exception):
                await self._ws_send_json(ws, {"type": "pong", "ts": _now_ms()})

    # ─────────────────────────────────────────────────────────────────────────
    # Page connections
    # ─────────────────────────────────────────────────────────────────────────

    async def _serve_page(self, ws, tab_id: int) -> None:  # type: ignore[no-untyped-def]
        page = PageConnection(tab_id=tab_id, ws=ws)
        with self._lock:
            self._pages[tab_id] = page
        try:
            await self._ws_send_json(
                ws,
                {"type": "helloAck", "role": "page", "tabId": tab_id, "protocolVersion": GATEWAY_PROTOCOL_VERSION},
            )
            async for raw_msg in ws:
                try:
                    frame = json.loads(raw_msg)
                except Exception:
                    continue
                if not isinstance(frame, dict) or frame.get("type") != "message":
                    continue
                await self._on_page_frame(page, frame)
        except Exception:
            pass
        finally:
            await self._page_disconnected(page)

    async def _on_page_frame(self, page: PageConnection, frame: dict[str, Any]) -> None:
        message = frame.get("message")
        coordinator = self.coordinator
        if coordinator is None:
            result: Any = {"ready": False, "reason": "coordinator_unavailable"}
        else:
            try:
                result = await coordinator.handle(message, sender_tab_id=page.tab_id)
            except Exception:
                logger.exception("page message from tab %s failed", page.tab_id)
                result = {"ready": False, "reason": "internal_error"}

        if (
            isinstance(message, dict)
            and message.get("action") == PREPARE_TO_PREVIEW
            and isinstance(result, dict)
            and result.get("ready") is True
            and isinstance(result.get("sessionId"), str)
        ):
            page.session_ids.add(result["sessionId"])

        if "id" in frame:
            with contextlib.suppress(Exception):
                await self._ws_send_json(page.ws, {"type": "response", "id": frame.get("id"), "result": result})

    async def _page_disconnected(self, page: PageConnection) -> None:
        with self._lock:
            if self._pages.get(page.tab_id) is page:
                del self._pages[page.tab_id]
        coordinator = self.coordinator
        if coordinator is None or self._stop.is_set():
            return
        for session_id in sorted(page.session_ids):
            # Stale ids are no-ops, so a page that already closed its preview costs nothing.
            with contextlib.suppress(Exception):
                await coordinator.clear_preview(page.tab_id, session_id)

    async def _ws_send_json(self, ws, payload: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        await ws.send(json.dumps(payload, ensure_ascii=False))
