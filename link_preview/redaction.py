"""Redaction utilities for log lines.

Previewed URLs are user browsing data; log them through `redact_url` (keeps the
shape, hides credential-like parameters) or `redact_url_brief` (origin + path).
"""

from __future__ import annotations

from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

_SENSITIVE_SUBSTRINGS = (
    "token",
    "secret",
    "password",
    "passwd",
    "pwd",
    "authorization",
    "cookie",
    "session",
    "jwt",
    "bearer",
    "api-key",
    "api_key",
    "apikey",
)

_SENSITIVE_EXACT = {
    # Avoid false-positives like "author"/"authorship" while still protecting obvious keys.
    "auth",
    "code",
    "sig",
}


def is_sensitive_key(key: str) -> bool:
    k = (key or "").strip().lower()
    if not k:
        return False
    if k in _SENSITIVE_EXACT:
        return True
    return any(s in k for s in _SENSITIVE_SUBSTRINGS)


def _looks_like_query_string(value: str) -> bool:
    if not isinstance(value, str) or not value:
        return False
    return "=" in value


def _redact_pairs(raw: str) -> tuple[str, bool]:
    pairs = parse_qsl(raw, keep_blank_values=True)
    redacted_any = False
    out_pairs: list[tuple[str, str]] = []
    for k, v in pairs:
        if is_sensitive_key(k) and v:
            out_pairs.append((k, "<redacted>"))
            redacted_any = True
        else:
            out_pairs.append((k, v))
    if not redacted_any:
        return raw, False
    return urlencode(out_pairs, doseq=True), True


def redact_url(url: str) -> str:
    """Redact suspicious URL parameters without destroying normal queries.

    - Keeps non-sensitive query params intact.
    - Redacts values for keys like token/auth/secret/api-key.
    - Sanitizes fragment when it looks like a query string (OAuth-style).
    - Removes userinfo (`user:pass@host`) from netloc.

    Returns the original URL unchanged when no redaction is needed.
    """
    if not isinstance(url, str) or not url:
        return url
    try:
        parts = urlsplit(url)
    except Exception:
        return url

    changed = False
    netloc = parts.netloc
    query = parts.query
    fragment = parts.fragment

    if "@" in netloc:
        netloc = netloc.split("@", 1)[1]
        changed = True

    if query:
        query, q_changed = _redact_pairs(query)
        changed = changed or q_changed

    if fragment and _looks_like_query_string(fragment):
        fragment, f_changed = _redact_pairs(fragment)
        changed = changed or f_changed

    if not changed:
        return url

    try:
        return urlunsplit((parts.scheme, netloc, parts.path, query, fragment))
    except Exception:
        return url


def redact_url_brief(url: str) -> str:
    """Low-noise URL redaction (drops query+fragment; removes userinfo)."""
    if not isinstance(url, str) or not url:
        return url
    try:
        parts = urlsplit(url)
        netloc = parts.netloc.split("@", 1)[1] if "@" in parts.netloc else parts.netloc
        return urlunsplit((parts.scheme, netloc, parts.path, "", ""))
    except Exception:
        return url


def redact_headers(headers: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Redact CDP-style header entries (`[{"name", "value"}]`) for logging."""
    out: list[dict[str, Any]] = []
    for entry in headers or []:
        if not isinstance(entry, dict):
            continue
        name = str(entry.get("name") or "")
        lk = name.lower()
        if is_sensitive_key(lk) or lk.startswith("set-cookie"):
            out.append({"name": name, "value": "<redacted>"})
        else:
            out.append(dict(entry))
    return out
