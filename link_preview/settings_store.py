"""Persisted preview settings (flat key/value, disk-backed).

Design
- One small JSON snapshot (`{"version", "updatedAt", "items"}`).
- Reads merge defaults in; writes are incremental (only the given keys change).
- Atomic writes: write temp file then replace.
- Corrupt or missing files load as defaults (fail-soft); invalid writes raise ValueError.
- Subscribers are notified on every change so consumers apply updates live.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from collections.abc import Callable, Iterable
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

logger = logging.getLogger("link_preview.settings")

MODIFIER_KEYS = ("shiftKey", "ctrlKey", "altKey", "metaKey")
THEMES = ("light", "dark")

DEFAULT_GEOMETRY: dict[str, str] = {"width": "90vw", "height": "90vh", "top": "50%", "left": "50%"}

DEFAULTS: dict[str, Any] = {
    "duration": 500,
    "modifier": "shiftKey",
    "theme": "light",
    "closeKey": "Escape",
    **DEFAULT_GEOMETRY,
    "disabledSites": [],
}

SettingsListener = Callable[["Settings", dict[str, Any]], None]


def normalize_hostname(raw: str) -> str:
    """Lower-case hostname; accepts bare hosts or full URLs."""
    value = (raw or "").strip()
    if not value:
        return ""
    if "://" in value:
        try:
            value = urlsplit(value).hostname or ""
        except Exception:
            return ""
    else:
        value = value.split("/", 1)[0].split(":", 1)[0]
    return value.strip().lower().rstrip(".")


def _unique_hosts(raw: Iterable[Any]) -> tuple[str, ...]:
    out: list[str] = []
    for item in raw:
        host = normalize_hostname(str(item))
        if host and host not in out:
            out.append(host)
    return tuple(out)


def _css_length(value: Any, default: str) -> str:
    text = str(value if value is not None else "").strip()
    return text or default


@dataclass(frozen=True, slots=True)
class Settings:
    """Immutable settings snapshot handed to consumers."""

    duration: int = 500
    modifier: str = "shiftKey"
    theme: str = "light"
    close_key: str = "Escape"
    width: str = "90vw"
    height: str = "90vh"
    top: str = "50%"
    left: str = "50%"
    disabled_sites: tuple[str, ...] = ()

    @classmethod
    def from_items(cls, items: dict[str, Any]) -> Settings:
        """Build a snapshot from storage items, falling back to defaults for bad values."""
        merged = {**DEFAULTS, **(items or {})}
        try:
            duration = int(merged.get("duration"))
        except Exception:
            duration = DEFAULTS["duration"]
        if duration <= 0:
            duration = DEFAULTS["duration"]
        modifier = str(merged.get("modifier") or "")
        if modifier not in MODIFIER_KEYS:
            modifier = DEFAULTS["modifier"]
        theme = str(merged.get("theme") or "")
        if theme not in THEMES:
            theme = DEFAULTS["theme"]
        sites = merged.get("disabledSites")
        return cls(
            duration=duration,
            modifier=modifier,
            theme=theme,
            close_key=str(merged.get("closeKey") or "") or DEFAULTS["closeKey"],
            width=_css_length(merged.get("width"), DEFAULT_GEOMETRY["width"]),
            height=_css_length(merged.get("height"), DEFAULT_GEOMETRY["height"]),
            top=_css_length(merged.get("top"), DEFAULT_GEOMETRY["top"]),
            left=_css_length(merged.get("left"), DEFAULT_GEOMETRY["left"]),
            disabled_sites=_unique_hosts(sites) if isinstance(sites, (list, tuple)) else (),
        )

    def to_items(self) -> dict[str, Any]:
        return {
            "duration": self.duration,
            "modifier": self.modifier,
            "theme": self.theme,
            "closeKey": self.close_key,
            "width": self.width,
            "height": self.height,
            "top": self.top,
            "left": self.left,
            "disabledSites": list(self.disabled_sites),
        }

    def geometry(self) -> dict[str, str]:
        return {"width": self.width, "height": self.height, "top": self.top, "left": self.left}

    def is_site_disabled(self, host: str) -> bool:
        h = normalize_hostname(host)
        return bool(h) and h in self.disabled_sites


def _validate_changes(changes: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in changes.items():
        if key not in DEFAULTS:
            raise ValueError(f"Unknown setting: {key}")
        if key == "duration":
            try:
                duration = int(value)
            except Exception as exc:
                raise ValueError(f"duration must be an integer, got {value!r}") from exc
            if duration <= 0:
                raise ValueError("duration must be > 0")
            out[key] = duration
        elif key == "modifier":
            if value not in MODIFIER_KEYS:
                raise ValueError(f"modifier must be one of {', '.join(MODIFIER_KEYS)}")
            out[key] = value
        elif key == "theme":
            if value not in THEMES:
                raise ValueError(f"theme must be one of {', '.join(THEMES)}")
            out[key] = value
        elif key == "closeKey":
            out[key] = str(value or "").strip() or DEFAULTS["closeKey"]
        elif key == "disabledSites":
            if not isinstance(value, (list, tuple)):
                raise ValueError("disabledSites must be a list of hostnames")
            out[key] = list(_unique_hosts(value))
        else:
            text = str(value if value is not None else "").strip()
            if not text:
                raise ValueError(f"{key} must be a non-empty CSS length")
            out[key] = text
    return out


class SettingsStore:
    """Flat key/value settings store with change notifications.

    `path=None` keeps everything in memory (embedding, tests).
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path).expanduser() if path else None
        self._lock = threading.Lock()
        self._items: dict[str, Any] = {}
        self._listeners: list[SettingsListener] = []
        self._snapshot = Settings()
        self.load()

    def load(self) -> Settings:
        items = self._read_items()
        snapshot = Settings.from_items(items)
        with self._lock:
            self._items = items
            self._snapshot = snapshot
        return snapshot

    def get(self) -> Settings:
        with self._lock:
            return self._snapshot

    def set(self, changes: dict[str, Any] | None = None, **kwargs: Any) -> Settings:
        """Write the given storage keys and notify subscribers of what actually changed."""
        requested = _validate_changes({**(changes or {}), **kwargs})
        with self._lock:
            previous = self._snapshot.to_items()
            self._items.update(requested)
            snapshot = Settings.from_items(self._items)
            self._snapshot = snapshot
            items = dict(self._items)
            listeners = list(self._listeners)
        changed = {k: v for k, v in snapshot.to_items().items() if previous.get(k) != v}
        if self.path is not None:
            self._write_items(items)
        if changed:
            for listener in listeners:
                try:
                    listener(snapshot, changed)
                except Exception:
                    logger.exception("settings listener failed")
        return snapshot

    def subscribe(self, listener: SettingsListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock, suppress(ValueError):
                self._listeners.remove(listener)

        return _unsubscribe

    def disable_site(self, host: str) -> Settings:
        h = normalize_hostname(host)
        if not h:
            raise ValueError(f"Not a hostname: {host!r}")
        sites = list(self.get().disabled_sites)
        if h in sites:
            return self.get()
        return self.set(disabledSites=[*sites, h])

    def enable_site(self, host: str) -> Settings:
        h = normalize_hostname(host)
        sites = list(self.get().disabled_sites)
        if h not in sites:
            return self.get()
        return self.set(disabledSites=[s for s in sites if s != h])

    def save_geometry(
        self,
        *,
        width: str | None = None,
        height: str | None = None,
        top: str | None = None,
        left: str | None = None,
    ) -> Settings:
        """Persist the result of a drag (top/left) or resize (all four)."""
        changes = {k: v for k, v in {"width": width, "height": height, "top": top, "left": left}.items() if v}
        if not changes:
            return self.get()
        return self.set(changes)

    def restore_default_geometry(self) -> Settings:
        return self.set(dict(DEFAULT_GEOMETRY))

    # ─────────────────────────────────────────────────────────────────────────
    # Disk
    # ─────────────────────────────────────────────────────────────────────────

    def _read_items(self) -> dict[str, Any]:
        p = self.path
        if p is None:
            return {}
        try:
            if not p.exists() or not p.is_file():
                return {}
            obj = json.loads(p.read_text(encoding="utf-8", errors="replace"))
        except Exception:
            logger.warning("settings file unreadable, using defaults: %s", p)
            return {}
        if not isinstance(obj, dict):
            return {}
        items = obj.get("items")
        if not isinstance(items, dict):
            return {}
        return {k: v for k, v in items.items() if isinstance(k, str) and k in DEFAULTS}

    def _write_items(self, items: dict[str, Any]) -> None:
        p = self.path
        if p is None:
            return
        p.parent.mkdir(parents=True, exist_ok=True)
        payload = {"version": 1, "updatedAt": int(time.time() * 1000), "items": items}
        text = json.dumps(payload, ensure_ascii=True, indent=2, sort_keys=True)

        tmp = p.with_suffix(p.suffix + ".tmp")
        tmp.write_text(text, encoding="utf-8")
        with suppress(Exception):
            os.chmod(tmp, 0o600)
        tmp.replace(p)
