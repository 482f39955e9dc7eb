"""Privileged-side message handling.

The coordinator owns the session registry and the rule controller. Every
mutation of the registry is followed by an awaited reconcile, so a
`prepareToPreview` is answered only once the exemption is really installed.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .config import CoordinatorConfig
from .errors import ProtocolError, RuleInstallError
from .http_client import HttpClientError, http_get, http_head, inject_base_href
from .protocol import (
    CLEAR_PREVIEW,
    FETCH_PREVIEW,
    PRECONNECT,
    PREPARE_TO_PREVIEW,
    ClearPreview,
    FetchPreview,
    FetchResult,
    Message,
    Preconnect,
    PrepareToPreview,
    PreviewReady,
    decode_message,
)
from .redaction import redact_url
from .rule_backends import RuleBackend
from .rule_controller import NetworkRuleController
from .rules import SUB_FRAME
from .session_registry import SessionRegistry

logger = logging.getLogger("link_preview.coordinator")

Handler = Callable[[Any, "int | None"], Awaitable["dict[str, Any] | None"]]


class PreviewCoordinator:
    def __init__(
        self,
        registry: SessionRegistry,
        controller: NetworkRuleController,
        *,
        config: CoordinatorConfig | None = None,
    ) -> None:
        self.registry = registry
        self.controller = controller
        self.config = config or CoordinatorConfig()
        self._background: set[asyncio.Task[Any]] = set()
        self._handlers: dict[str, Handler] = {
            PREPARE_TO_PREVIEW: self._on_prepare,
            CLEAR_PREVIEW: self._on_clear,
            PRECONNECT: self._on_preconnect,
            FETCH_PREVIEW: self._on_fetch,
        }

    @classmethod
    def create(cls, backend: RuleBackend, config: CoordinatorConfig | None = None) -> PreviewCoordinator:
        cfg = config or CoordinatorConfig()
        registry = SessionRegistry(foreground_only=cfg.foreground_only, scope=cfg.scope)
        controller = NetworkRuleController(
            registry,
            backend,
            profile=cfg.profile,
            scope=cfg.scope,
            spoof_origin=cfg.spoof_origin,
            retries=cfg.rule_retries,
        )
        return cls(registry, controller, config=cfg)

    # ─────────────────────────────────────────────────────────────────────────
    # Dispatch
    # ─────────────────────────────────────────────────────────────────────────

    async def handle(self, message: Any, sender_tab_id: int | None = None) -> dict[str, Any] | None:
        """Dispatch one wire message. Never raises; returns the response dict (or None)."""
        try:
            msg = decode_message(message)
        except Exception as exc:  # noqa: BLE001
            if isinstance(exc, ProtocolError):
                logger.warning("rejected message: %s", exc)
            else:
                logger.exception("message decode failed")
            action = message.get("action") if isinstance(message, dict) else None
            if action == PREPARE_TO_PREVIEW:
                return PreviewReady(False, reason="bad_request").to_dict()
            if action == FETCH_PREVIEW:
                return FetchResult(False, error=str(exc)).to_dict()
            return None

        try:
            return await self._handlers[msg.action](msg, sender_tab_id)
        except Exception:
            logger.exception("%s handler failed", msg.action)
            if msg.action == PREPARE_TO_PREVIEW:
                return PreviewReady(False, reason="internal_error").to_dict()
            if msg.action == FETCH_PREVIEW:
                return FetchResult(False, error="internal error").to_dict()
            return None

    @staticmethod
    def _tab_for(msg: Message, sender_tab_id: int | None) -> int | None:
        # The connection's own tab wins over whatever the payload claims.
        if sender_tab_id is not None:
            return sender_tab_id
        return getattr(msg, "tab_id", None)

    async def _on_prepare(self, msg: PrepareToPreview, sender_tab_id: int | None) -> dict[str, Any]:
        tab_id = self._tab_for(msg, sender_tab_id)
        if tab_id is None:
            return PreviewReady(False, reason="no_tab").to_dict()
        return (await self.prepare_to_preview(tab_id, msg.url)).to_dict()

    async def _on_clear(self, msg: ClearPreview, sender_tab_id: int | None) -> None:
        tab_id = self._tab_for(msg, sender_tab_id)
        if tab_id is None:
            logger.debug("clearPreview without a tab id ignored")
            return None
        await self.clear_preview(tab_id, msg.session_id)
        return None

    async def _on_preconnect(self, msg: Preconnect, sender_tab_id: int | None) -> None:
        self.preconnect(msg.url)
        return None

    async def _on_fetch(self, msg: FetchPreview, sender_tab_id: int | None) -> dict[str, Any]:
        return (await self.fetch_preview(msg.url)).to_dict()

    # ─────────────────────────────────────────────────────────────────────────
    # Operations
    # ─────────────────────────────────────────────────────────────────────────

    async def prepare_to_preview(self, tab_id: int, url: str) -> PreviewReady:
        handle = self.registry.open(tab_id, url)
        logger.info(
            "preview requested tab=%s session=%s url=%s",
            tab_id,
            handle.session_id,
            redact_url(url),
        )
        try:
            rule = await self.controller.reconcile()
        except RuleInstallError as exc:
            logger.error("preview refused tab=%s: %s", tab_id, exc)
            self.registry.close(tab_id, handle.session_id)
            self.registry.discard_closing()
            return PreviewReady(False, reason="rule_install_failed")

        if not self.registry.is_current(handle):
            return PreviewReady(False, reason="superseded")
        if rule is None or not rule.matches(tab_id, handle.target_url, SUB_FRAME):
            # Focus moved elsewhere while the rule was being installed.
            await self.clear_preview(tab_id, handle.session_id)
            return PreviewReady(False, reason="not_exempt")
        self.registry.activate(handle)
        return PreviewReady(True, session_id=handle.session_id)

    async def clear_preview(self, tab_id: int, session_id: str | None = None) -> None:
        session = self.registry.close(tab_id, session_id)
        if session is None:
            return
        logger.info("preview closed tab=%s session=%s", tab_id, session.session_id)
        await self._reconcile_quietly()

    def preconnect(self, url: str) -> asyncio.Task[None]:
        """Warm up the connection in the background; failures are irrelevant."""
        task = asyncio.get_running_loop().create_task(self._preconnect(url))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _preconnect(self, url: str) -> None:
        try:
            status = await asyncio.to_thread(http_head, url, self.config)
        except HttpClientError as exc:
            logger.debug("preconnect failed url=%s: %s", redact_url(url), exc)
            return
        except Exception as exc:  # noqa: BLE001
            logger.debug("preconnect error url=%s: %s", redact_url(url), exc)
            return
        logger.debug("preconnect url=%s status=%s", redact_url(url), status)

    async def fetch_preview(self, url: str) -> FetchResult:
        try:
            res = await asyncio.to_thread(http_get, url, self.config)
        except HttpClientError as exc:
            logger.info("fetch preview failed url=%s: %s", redact_url(url), exc)
            return FetchResult(False, error=str(exc))
        html = str(res.get("body") or "")
        return FetchResult(True, html_content=inject_base_href(html, url))

    # ─────────────────────────────────────────────────────────────────────────
    # Tab lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def on_tab_activated(self, tab_id: int) -> None:
        self.registry.focus(tab_id)
        await self._reconcile_quietly()

    async def on_tab_removed(self, tab_id: int) -> None:
        session = self.registry.remove_tab(tab_id)
        if session is not None:
            logger.info("tab %s removed, session %s dropped", tab_id, session.session_id)
        await self._reconcile_quietly()

    async def reset(self) -> None:
        self.registry.reset()
        await self._reconcile_quietly()

    async def _reconcile_quietly(self) -> None:
        try:
            await self.controller.reconcile()
        except RuleInstallError as exc:
            logger.error("reconcile failed, interception withdrawn: %s", exc)
        finally:
            self.registry.discard_closing()

    def status(self) -> dict[str, Any]:
        return {
            "sessions": self.registry.snapshot(),
            "liveSessions": len(self.registry),
            "focusedTabId": self.registry.focused_tab_id,
            "rule": self.controller.status(),
        }

    async def aclose(self) -> None:
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
