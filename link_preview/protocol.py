"""Messages exchanged between the page overlay and the privileged coordinator.

Wire form is a plain dict with an `action` key; responses are plain dicts too.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, ClassVar, Union
from urllib.parse import urlsplit

from .errors import ProtocolError

PREPARE_TO_PREVIEW = "prepareToPreview"
CLEAR_PREVIEW = "clearPreview"
PRECONNECT = "preconnect"
FETCH_PREVIEW = "fetchPreview"


def _require_url(payload: dict[str, Any]) -> str:
    url = payload.get("url")
    if not isinstance(url, str) or not url.strip():
        raise ProtocolError(f"{payload.get('action')}: missing url")
    url = url.strip()
    try:
        parts = urlsplit(url)
    except ValueError as exc:
        raise ProtocolError(f"{payload.get('action')}: invalid url: {exc}") from exc
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ProtocolError(f"{payload.get('action')}: only absolute http(s) urls are accepted")
    return url


def _optional_tab_id(payload: dict[str, Any]) -> int | None:
    tab_id = payload.get("tabId")
    if tab_id is None:
        return None
    if isinstance(tab_id, bool) or not isinstance(tab_id, int):
        raise ProtocolError(f"{payload.get('action')}: tabId must be an integer")
    return tab_id


@dataclass(frozen=True, slots=True)
class PrepareToPreview:
    action: ClassVar[str] = PREPARE_TO_PREVIEW
    url: str
    tab_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"action": self.action, "url": self.url}
        if self.tab_id is not None:
            out["tabId"] = self.tab_id
        return out


@dataclass(frozen=True, slots=True)
class ClearPreview:
    action: ClassVar[str] = CLEAR_PREVIEW
    tab_id: int | None = None
    session_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"action": self.action}
        if self.tab_id is not None:
            out["tabId"] = self.tab_id
        if self.session_id is not None:
            out["sessionId"] = self.session_id
        return out


@dataclass(frozen=True, slots=True)
class Preconnect:
    action: ClassVar[str] = PRECONNECT
    url: str

    def to_dict(self) -> dict[str, Any]:
        return {"action": self.action, "url": self.url}


@dataclass(frozen=True, slots=True)
class FetchPreview:
    action: ClassVar[str] = FETCH_PREVIEW
    url: str

    def to_dict(self) -> dict[str, Any]:
        return {"action": self.action, "url": self.url}


Message = Union[PrepareToPreview, ClearPreview, Preconnect, FetchPreview]


@dataclass(frozen=True, slots=True)
class PreviewReady:
    ready: bool
    session_id: str | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"ready": self.ready}
        if self.session_id is not None:
            out["sessionId"] = self.session_id
        if self.reason is not None:
            out["reason"] = self.reason
        return out

    @classmethod
    def from_dict(cls, raw: Any) -> PreviewReady:
        if not isinstance(raw, dict):
            return cls(False, reason="malformed_response")
        session_id = raw.get("sessionId")
        reason = raw.get("reason")
        return cls(
            ready=raw.get("ready") is True,
            session_id=session_id if isinstance(session_id, str) else None,
            reason=reason if isinstance(reason, str) else None,
        )


@dataclass(frozen=True, slots=True)
class FetchResult:
    success: bool
    html_content: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": self.success}
        if self.html_content is not None:
            out["htmlContent"] = self.html_content
        if self.error is not None:
            out["error"] = self.error
        return out

    @classmethod
    def from_dict(cls, raw: Any) -> FetchResult:
        if not isinstance(raw, dict):
            return cls(False, error="malformed response")
        html = raw.get("htmlContent")
        error = raw.get("error")
        return cls(
            success=raw.get("success") is True,
            html_content=html if isinstance(html, str) else None,
            error=error if isinstance(error, str) else None,
        )


def decode_message(raw: Any) -> Message:
    """Parse a wire message (dict or JSON text); raises ProtocolError."""
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as exc:
            raise ProtocolError(f"invalid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise ProtocolError("message must be an object")

    action = raw.get("action")
    if action == PREPARE_TO_PREVIEW:
        return PrepareToPreview(url=_require_url(raw), tab_id=_optional_tab_id(raw))
    if action == CLEAR_PREVIEW:
        session_id = raw.get("sessionId")
        if session_id is not None and not isinstance(session_id, str):
            raise ProtocolError("clearPreview: sessionId must be a string")
        return ClearPreview(tab_id=_optional_tab_id(raw), session_id=session_id)
    if action == PRECONNECT:
        return Preconnect(url=_require_url(raw))
    if action == FETCH_PREVIEW:
        return FetchPreview(url=_require_url(raw))
    raise ProtocolError(f"unknown action: {action!r}")
