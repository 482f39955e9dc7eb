"""Authoritative bookkeeping of open preview sessions (privileged side).

The registry is the single source of truth for whether interception should be
active. It holds at most one session per tab and tracks which tab is focused,
so the rule controller can keep the exemption limited to the foreground
preview tab.

Mutations happen only on the coordinator's event loop; the registry itself
does no I/O and never awaits.
"""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from urllib.parse import urlsplit, urlunsplit


class SessionState(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


LIVE_STATES = frozenset({SessionState.PENDING, SessionState.ACTIVE})


def normalize_target_url(url: str) -> str:
    """Drop the fragment; it never reaches the network."""
    try:
        parts = urlsplit(url)
        return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), parts.path or "/", parts.query, ""))
    except Exception:
        return url


def _new_session_id() -> str:
    return f"ps-{secrets.token_hex(6)}"


@dataclass(frozen=True, slots=True)
class SessionHandle:
    session_id: str
    tab_id: int
    target_url: str


@dataclass(slots=True)
class PreviewSession:
    session_id: str
    tab_id: int
    target_url: str
    state: SessionState = SessionState.PENDING
    created_at_ms: int = field(default_factory=lambda: int(time.time() * 1000))

    @property
    def is_live(self) -> bool:
        return self.state in LIVE_STATES

    def handle(self) -> SessionHandle:
        return SessionHandle(self.session_id, self.tab_id, self.target_url)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "tabId": self.tab_id,
            "url": self.target_url,
            "state": self.state.value,
            "createdAtMs": self.created_at_ms,
        }


class SessionRegistry:
    """Process-wide registry of preview sessions keyed by tab id."""

    def __init__(self, *, foreground_only: bool = True, scope: str = "tab") -> None:
        self.foreground_only = bool(foreground_only)
        self.scope = scope
        self._sessions: dict[int, PreviewSession] = {}
        self._focused_tab_id: int | None = None

    # ─────────────────────────────────────────────────────────────────────────
    # Queries
    # ─────────────────────────────────────────────────────────────────────────

    def __len__(self) -> int:
        return sum(1 for s in self._sessions.values() if s.is_live)

    def __contains__(self, tab_id: object) -> bool:
        session = self._sessions.get(tab_id)  # type: ignore[arg-type]
        return session is not None and session.is_live

    @property
    def focused_tab_id(self) -> int | None:
        return self._focused_tab_id

    def get(self, tab_id: int) -> PreviewSession | None:
        return self._sessions.get(tab_id)

    def is_current(self, handle: SessionHandle) -> bool:
        session = self._sessions.get(handle.tab_id)
        return session is not None and session.session_id == handle.session_id and session.is_live

    def is_exempt(self, tab_id: int | None, url: str | None = None) -> bool:
        """Pure predicate evaluated per intercepted response."""
        if tab_id is None:
            return False
        session = self._sessions.get(tab_id)
        if session is None or not session.is_live:
            return False
        if self.foreground_only and tab_id != self._focused_tab_id:
            return False
        if self.scope == "url":
            return url is not None and normalize_target_url(url) == session.target_url
        return True

    def exempt_sessions(self) -> list[PreviewSession]:
        return [s for s in self._sessions.values() if self.is_exempt(s.tab_id, s.target_url)]

    def snapshot(self) -> list[dict[str, Any]]:
        return [s.to_dict() for s in self._sessions.values()]

    # ─────────────────────────────────────────────────────────────────────────
    # Mutations
    # ─────────────────────────────────────────────────────────────────────────

    def open(self, tab_id: int, url: str) -> SessionHandle:
        """Insert or replace the tab's session; the opening tab is the foreground tab."""
        session = PreviewSession(
            session_id=_new_session_id(),
            tab_id=int(tab_id),
            target_url=normalize_target_url(url),
        )
        previous = self._sessions.get(session.tab_id)
        if previous is not None:
            previous.state = SessionState.CLOSED
        self._sessions[session.tab_id] = session
        self._focused_tab_id = session.tab_id
        return session.handle()

    def activate(self, handle: SessionHandle) -> bool:
        session = self._sessions.get(handle.tab_id)
        if session is None or session.session_id != handle.session_id:
            return False
        if session.state is SessionState.PENDING:
            session.state = SessionState.ACTIVE
        return session.state is SessionState.ACTIVE

    def close(self, tab_id: int, session_id: str | None = None) -> PreviewSession | None:
        """Mark the tab's session closing. Idempotent; stale session ids are ignored."""
        session = self._sessions.get(tab_id)
        if session is None or not session.is_live:
            return None
        if session_id is not None and session.session_id != session_id:
            return None
        session.state = SessionState.CLOSING
        return session

    def discard_closing(self) -> list[PreviewSession]:
        """Destroy sessions whose interception has been revoked."""
        closed: list[PreviewSession] = []
        for tab_id, session in list(self._sessions.items()):
            if session.state is SessionState.CLOSING:
                session.state = SessionState.CLOSED
                del self._sessions[tab_id]
                closed.append(session)
        return closed

    def remove_tab(self, tab_id: int) -> PreviewSession | None:
        """Tab-removed hook: drop the session synchronously."""
        session = self._sessions.pop(tab_id, None)
        if session is not None:
            session.state = SessionState.CLOSED
        if self._focused_tab_id == tab_id:
            self._focused_tab_id = None
        return session

    def focus(self, tab_id: int | None) -> None:
        self._focused_tab_id = tab_id

    def reset(self) -> None:
        for session in self._sessions.values():
            session.state = SessionState.CLOSED
        self._sessions.clear()
        self._focused_tab_id = None
