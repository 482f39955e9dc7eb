"""Page-side transports to the privileged coordinator.

Both channels expose the same two calls:
- `request(message, timeout=...)`: send and await the response dict.
- `send(message)`: fire-and-forget.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any, Protocol

from .errors import ChannelError
from .gateway import GATEWAY_PROTOCOL_VERSION, _import_websockets

logger = logging.getLogger("link_preview.channel")


class PreviewChannel(Protocol):
    async def request(self, message: dict[str, Any], *, timeout: float = 5.0) -> dict[str, Any] | None: ...

    async def send(self, message: dict[str, Any]) -> None: ...


class LocalChannel:
    """In-process channel bound to one tab (embedding, tests)."""

    def __init__(self, coordinator: Any, tab_id: int) -> None:
        self.coordinator = coordinator
        self.tab_id = int(tab_id)
        self._tasks: set[asyncio.Task[Any]] = set()

    async def request(self, message: dict[str, Any], *, timeout: float = 5.0) -> dict[str, Any] | None:
        task = asyncio.get_running_loop().create_task(self.coordinator.handle(message, sender_tab_id=self.tab_id))
        try:
            # The privileged side finishes its work even when the page stops waiting.
            return await asyncio.wait_for(asyncio.shield(task), timeout=max(0.01, float(timeout)))
        except asyncio.TimeoutError as exc:
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            raise ChannelError(f"{message.get('action')} timed out") from exc
        except ChannelError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise ChannelError(f"{message.get('action')} failed: {exc}") from exc

    async def send(self, message: dict[str, Any]) -> None:
        task = asyncio.get_running_loop().create_task(self.coordinator.handle(message, sender_tab_id=self.tab_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for fire-and-forget messages already sent."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class GatewayChannel:
    """WebSocket page client for a running PreviewGateway."""

    def __init__(self, host: str, port: int, tab_id: int, *, connect_timeout: float = 5.0) -> None:
        self.host = host
        self.port = int(port)
        self.tab_id = int(tab_id)
        self.connect_timeout = float(connect_timeout)
        self._ws: Any | None = None
        self._reader: asyncio.Task[None] | None = None
        self._next_id = 1
        self._pending: dict[int, asyncio.Future[Any]] = {}

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port}"

    async def connect(self) -> GatewayChannel:
        if self._ws is not None:
            return self
        websockets = _import_websockets()
        try:
            ws = await asyncio.wait_for(websockets.connect(self.url, max_size=4_000_000), timeout=self.connect_timeout)
        except Exception as exc:  # noqa: BLE001
            raise ChannelError(f"cannot connect to preview gateway at {self.url}: {exc}") from exc

        try:
            await ws.send(json.dumps({"type": "hello", "role": "page", "tabId": self.tab_id}))
            raw = await asyncio.wait_for(ws.recv(), timeout=self.connect_timeout)
            ack = json.loads(raw)
        except Exception as exc:  # noqa: BLE001
            with contextlib.suppress(Exception):
                await ws.close()
            raise ChannelError(f"preview gateway handshake failed: {exc}") from exc
        if not isinstance(ack, dict) or ack.get("type") != "helloAck":
            with contextlib.suppress(Exception):
                await ws.close()
            raise ChannelError("preview gateway handshake failed: unexpected reply")
        if ack.get("protocolVersion") != GATEWAY_PROTOCOL_VERSION:
            logger.warning("gateway protocol %s differs from %s", ack.get("protocolVersion"), GATEWAY_PROTOCOL_VERSION)

        self._ws = ws
        self._reader = asyncio.get_running_loop().create_task(self._read_loop(ws))
        return self

    async def __aenter__(self) -> GatewayChannel:
        return await self.connect()

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _read_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                try:
                    frame = json.loads(raw)
                except Exception:
                    continue
                if not isinstance(frame, dict) or frame.get("type") != "response":
                    continue
                try:
                    req_id = int(frame.get("id"))  # type: ignore[arg-type]
                except Exception:
                    continue
                fut = self._pending.pop(req_id, None)
                if fut is not None and not fut.done():
                    fut.set_result(frame.get("result"))
        except Exception:
            pass
        finally:
            self._ws = None
            pending = list(self._pending.values())
            self._pending.clear()
            for fut in pending:
                if not fut.done():
                    fut.set_exception(ChannelError("preview gateway disconnected"))

    async def request(self, message: dict[str, Any], *, timeout: float = 5.0) -> dict[str, Any] | None:
        ws = self._ws
        if ws is None:
            raise ChannelError("not connected to the preview gateway")
        req_id = self._next_id
        self._next_id += 1
        fut: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[req_id] = fut
        try:
            await ws.send(json.dumps({"type": "message", "id": req_id, "message": message}))
            result = await asyncio.wait_for(fut, timeout=max(0.01, float(timeout)))
        except asyncio.TimeoutError as exc:
            raise ChannelError(f"{message.get('action')} timed out") from exc
        except ChannelError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise ChannelError(f"{message.get('action')} failed: {exc}") from exc
        finally:
            self._pending.pop(req_id, None)
        return result if isinstance(result, dict) else None

    async def send(self, message: dict[str, Any]) -> None:
        ws = self._ws
        if ws is None:
            raise ChannelError("not connected to the preview gateway")
        try:
            await ws.send(json.dumps({"type": "message", "message": message}))
        except Exception as exc:  # noqa: BLE001
            raise ChannelError(f"{message.get('action')} failed: {exc}") from exc

    async def close(self) -> None:
        ws = self._ws
        self._ws = None
        if ws is not None:
            with contextlib.suppress(Exception):
                await ws.close()
        reader = self._reader
        if reader is not None:
            with contextlib.suppress(Exception):
                await reader
