"""Preview overlay controller (page side).

Drives one page's overlay lifecycle: gesture detection, the
`prepareToPreview` handshake, and teardown. Rendering is left to a
`PageSurface`; the controller only decides *when* things happen.

    IDLE -> REQUESTING -> LOADED -> CLOSING -> IDLE

No trigger is processed outside IDLE, and the frame source is set only after
the privileged side answered `ready: true`.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol
from urllib.parse import urljoin, urlsplit

from .channel import PreviewChannel
from .errors import ChannelError
from .protocol import ClearPreview, Preconnect, PrepareToPreview, PreviewReady
from .redaction import redact_url
from .settings_store import Settings, SettingsStore, normalize_hostname

logger = logging.getLogger("link_preview.overlay")

CLOSE_ANIMATION_DELAY = 0.2
HOVER_PRECONNECT_DELAY = 0.1


class OverlayState(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    LOADED = "loaded"
    CLOSING = "closing"


@dataclass(frozen=True, slots=True)
class Link:
    href: str
    target: str | None = None
    base_url: str | None = None

    def resolve(self) -> str | None:
        href = (self.href or "").strip()
        if not href:
            return None
        try:
            url = urljoin(self.base_url, href) if self.base_url else href
            parts = urlsplit(url)
        except ValueError:
            return None
        if not parts.scheme or not parts.netloc:
            return None
        return url

    @property
    def hostname(self) -> str:
        url = self.resolve()
        return normalize_hostname(url) if url else ""


@dataclass(frozen=True, slots=True)
class PointerEvent:
    link: Link | None
    modifiers: frozenset[str] = frozenset()

    def has(self, modifier: str) -> bool:
        return modifier in self.modifiers


@dataclass(frozen=True, slots=True)
class KeyEvent:
    key: str


@dataclass(slots=True)
class PageInteraction:
    """What the surface changed to make the page inert, captured before the change."""

    body_overflow: str = ""
    document_overflow: str = ""
    body_pointer_events: str = ""
    extra: dict[str, Any] = field(default_factory=dict)


class PageSurface(Protocol):
    def suspend_interaction(self) -> PageInteraction: ...

    def restore_interaction(self, state: PageInteraction) -> None: ...

    def show_overlay(self, url: str, settings: Settings) -> None: ...

    def set_frame_source(self, url: str) -> None: ...

    async def wait_frame_ready(self) -> None: ...

    def mark_loaded(self) -> None: ...

    def show_failure(self, reason: str) -> None: ...

    def start_close_animation(self) -> None: ...

    def remove_overlay(self) -> None: ...

    def open_in_new_tab(self, url: str) -> None: ...

    def apply_geometry(self, settings: Settings) -> None: ...


class OverlayController:
    def __init__(
        self,
        surface: PageSurface,
        channel: PreviewChannel,
        store: SettingsStore,
        *,
        page_url: str | None = None,
        prepare_timeout: float = 5.0,
        close_delay: float = CLOSE_ANIMATION_DELAY,
        hover_delay: float = HOVER_PRECONNECT_DELAY,
    ) -> None:
        self.surface = surface
        self.channel = channel
        self.store = store
        self.page_url = page_url
        self.prepare_timeout = float(prepare_timeout)
        self.close_delay = float(close_delay)
        self.hover_delay = float(hover_delay)

        self._state = OverlayState.IDLE
        self._settings = store.get()
        self._unsubscribe = store.subscribe(self._on_settings_changed)

        # Bumped on every open; stale completions compare against it.
        self._token = 0
        self._url: str | None = None
        self._session_id: str | None = None
        self._cleared_token = 0
        self._interaction: PageInteraction | None = None

        self._long_press: asyncio.TimerHandle | None = None
        self._pointer_link: Link | None = None
        self._suppressed_url: str | None = None
        self._hover_timer: asyncio.TimerHandle | None = None
        self._hovered_url: str | None = None

        self._frame_task: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    # ─────────────────────────────────────────────────────────────────────────
    # State
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def state(self) -> OverlayState:
        return self._state

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def session_id(self) -> str | None:
        return self._session_id

    def _on_settings_changed(self, snapshot: Settings, changed: dict[str, Any]) -> None:
        self._settings = snapshot

    def _spawn(self, coro: Any) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def accepts(self, link: Link | None) -> bool:
        if self._state is not OverlayState.IDLE or link is None:
            return False
        url = link.resolve()
        if url is None or urlsplit(url).scheme not in ("http", "https"):
            return False
        if (link.target or "").strip().lower() == "_blank":
            return False
        settings = self._settings
        if settings.is_site_disabled(link.hostname):
            return False
        if self.page_url and settings.is_site_disabled(self.page_url):
            return False
        return True

    # ─────────────────────────────────────────────────────────────────────────
    # Triggers
    # ─────────────────────────────────────────────────────────────────────────

    def on_pointer_down(self, event: PointerEvent) -> bool:
        """Start a gesture. Returns True when the default action must be prevented."""
        self._cancel_long_press()
        # Suppression only covers the click that ends the gesture that set it.
        self._suppressed_url = None
        link = event.link
        self._pointer_link = link
        if not self.accepts(link):
            return False
        assert link is not None
        url = link.resolve()

        if event.has(self._settings.modifier):
            self._suppressed_url = url
            self._spawn(self.try_open(link, trigger="modifier"))
            return True

        loop = asyncio.get_running_loop()
        self._long_press = loop.call_later(self._settings.duration / 1000.0, self._on_long_press, link)
        return False

    def _on_long_press(self, link: Link) -> None:
        self._long_press = None
        if self._pointer_link != link:
            return
        self._spawn(self.try_open(link, trigger="long_press"))

    def _cancel_long_press(self) -> None:
        if self._long_press is not None:
            self._long_press.cancel()
            self._long_press = None

    def on_pointer_up(self, event: PointerEvent | None = None) -> None:
        self._cancel_long_press()

    def on_click(self, event: PointerEvent) -> bool:
        """Returns True when the click's navigation must be suppressed."""
        link = event.link
        if link is None:
            return False
        url = link.resolve()
        if self._suppressed_url is not None and url == self._suppressed_url:
            self._suppressed_url = None
            return True
        return event.has(self._settings.modifier)

    def on_key_down(self, event: KeyEvent) -> bool:
        if self._state not in (OverlayState.REQUESTING, OverlayState.LOADED):
            return False
        if event.key != self._settings.close_key:
            return False
        self._spawn(self.close())
        return True

    def on_click_outside(self) -> None:
        if self._state in (OverlayState.REQUESTING, OverlayState.LOADED):
            self._spawn(self.close())

    # ─────────────────────────────────────────────────────────────────────────
    # Hover preconnect
    # ─────────────────────────────────────────────────────────────────────────

    def on_pointer_over(self, link: Link | None) -> None:
        self._pointer_link = link
        if link is None:
            return
        url = link.resolve()
        if url is None or url == self._hovered_url:
            return
        self._hovered_url = url
        self._cancel_hover()
        if urlsplit(url).scheme not in ("http", "https"):
            return
        loop = asyncio.get_running_loop()
        self._hover_timer = loop.call_later(self.hover_delay, self._fire_preconnect, url)

    def on_pointer_out(self, link: Link | None) -> None:
        if link is None:
            return
        self._cancel_hover()
        self._hovered_url = None
        if self._pointer_link == link:
            self._pointer_link = None

    def _cancel_hover(self) -> None:
        if self._hover_timer is not None:
            self._hover_timer.cancel()
            self._hover_timer = None

    def _fire_preconnect(self, url: str) -> None:
        self._hover_timer = None
        self._spawn(self._send_quietly(Preconnect(url).to_dict()))

    async def _send_quietly(self, message: dict[str, Any]) -> None:
        try:
            await self.channel.send(message)
        except ChannelError as exc:
            logger.debug("%s not delivered: %s", message.get("action"), exc)

    # ─────────────────────────────────────────────────────────────────────────
    # Open / close
    # ─────────────────────────────────────────────────────────────────────────

    async def try_open(self, link: Link, trigger: str | None = None) -> bool:
        """Open a preview for `link`. True only when the frame source was set."""
        if not self.accepts(link):
            return False
        url = link.resolve()
        assert url is not None

        self._state = OverlayState.REQUESTING
        self._token += 1
        token = self._token
        self._url = url
        self._session_id = None
        self._cancel_long_press()
        self._cancel_hover()

        settings = self._settings
        self._interaction = self.surface.suspend_interaction()
        self.surface.show_overlay(url, settings)
        logger.debug("preview opening trigger=%s url=%s", trigger or "direct", redact_url(url))

        unanswered = False
        try:
            raw = await self.channel.request(PrepareToPreview(url).to_dict(), timeout=self.prepare_timeout)
            reply = PreviewReady.from_dict(raw)
        except ChannelError as exc:
            logger.info("preview host not ready: %s", exc)
            reply = PreviewReady(False, reason="unavailable")
            unanswered = True

        if self._state is not OverlayState.REQUESTING or token != self._token:
            # Closed while waiting; close() already released the session.
            return False

        if not reply.ready:
            if unanswered:
                # The privileged side may still open a session we will never hear about.
                self._cleared_token = token
                await self._send_quietly(ClearPreview().to_dict())
            self.surface.show_failure(reply.reason or "not_ready")
            self._finish()
            return False

        self._session_id = reply.session_id
        self.surface.set_frame_source(url)
        self._state = OverlayState.LOADED
        self._frame_task = asyncio.get_running_loop().create_task(self._await_frame(token))
        return True

    async def _await_frame(self, token: int) -> None:
        await self.surface.wait_frame_ready()
        if token == self._token and self._state is OverlayState.LOADED:
            self.surface.mark_loaded()

    async def close(self) -> None:
        """Idempotent close; releases the session exactly once."""
        if self._state not in (OverlayState.REQUESTING, OverlayState.LOADED):
            return
        self._state = OverlayState.CLOSING
        token = self._token

        frame_task = self._frame_task
        self._frame_task = None
        if frame_task is not None and not frame_task.done():
            frame_task.cancel()

        self.surface.start_close_animation()
        if self._cleared_token != token:
            self._cleared_token = token
            await self._send_quietly(ClearPreview(session_id=self._session_id).to_dict())

        await asyncio.sleep(self.close_delay)
        if token == self._token and self._state is OverlayState.CLOSING:
            self._finish()

    async def enlarge(self) -> None:
        url = self._url
        if url is None or self._state not in (OverlayState.REQUESTING, OverlayState.LOADED):
            return
        self.surface.open_in_new_tab(url)
        await self.close()

    def _finish(self) -> None:
        self.surface.remove_overlay()
        interaction = self._interaction
        self._interaction = None
        if interaction is not None:
            self.surface.restore_interaction(interaction)
        self._url = None
        self._session_id = None
        self._state = OverlayState.IDLE

    # ─────────────────────────────────────────────────────────────────────────
    # Geometry
    # ─────────────────────────────────────────────────────────────────────────

    def save_geometry(
        self,
        *,
        width: str | None = None,
        height: str | None = None,
        top: str | None = None,
        left: str | None = None,
    ) -> Settings:
        return self.store.save_geometry(width=width, height=height, top=top, left=left)

    def restore_geometry(self) -> Settings:
        snapshot = self.store.restore_default_geometry()
        self._settings = snapshot
        self.surface.apply_geometry(snapshot)
        return snapshot

    async def dispose(self) -> None:
        self._unsubscribe()
        self._cancel_long_press()
        self._cancel_hover()
        await self.close()
        if self._frame_task is not None:
            self._frame_task.cancel()
            self._frame_task = None
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
