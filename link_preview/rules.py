"""
Interception rule model.

One rule object describes which sub-frame responses get which headers removed.
It serialises to the browser's declarative session-rule format and is also
evaluated in process by the imperative backend, so both backends share the
exact same matching semantics.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from urllib.parse import urlsplit

RULE_ID = 1
RULE_PRIORITY = 1
SUB_FRAME = "sub_frame"

STANDARD_HEADERS: tuple[str, ...] = (
    "x-frame-options",
    "content-security-policy",
    "x-content-type-options",
)

ISOLATION_HEADERS: tuple[str, ...] = (
    "cross-origin-embedder-policy",
    "cross-origin-opener-policy",
    "cross-origin-resource-policy",
    "referrer-policy",
)

HEADER_PROFILES: dict[str, tuple[str, ...]] = {
    "standard": STANDARD_HEADERS,
    "strict": STANDARD_HEADERS + ISOLATION_HEADERS,
}


def profile_headers(profile: str) -> tuple[str, ...]:
    return HEADER_PROFILES.get((profile or "").strip().lower(), STANDARD_HEADERS)


def exact_url_filter(url: str) -> str:
    return f"|{url}|"


def url_filter_matches(url_filter: str | None, url: str) -> bool:
    """Subset of the declarative `urlFilter` syntax: `|` anchors, otherwise substring."""
    if not url_filter:
        return True
    pattern = url_filter
    anchored_start = pattern.startswith("|")
    anchored_end = pattern.endswith("|") and len(pattern) > 1
    if anchored_start:
        pattern = pattern[1:]
    if anchored_end:
        pattern = pattern[:-1]
    if anchored_start and anchored_end:
        return url == pattern
    if anchored_start:
        return url.startswith(pattern)
    if anchored_end:
        return url.endswith(pattern)
    return pattern in url


def origin_of(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


@dataclass(frozen=True, slots=True)
class HeaderOperation:
    header: str
    operation: str = "remove"
    value: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"header": self.header, "operation": self.operation}
        if self.value is not None:
            out["value"] = self.value
        return out

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> HeaderOperation:
        value = raw.get("value")
        return cls(
            header=str(raw.get("header") or "").lower(),
            operation=str(raw.get("operation") or "remove"),
            value=str(value) if value is not None else None,
        )


@dataclass(frozen=True, slots=True)
class InterceptionRule:
    """The single header-exemption rule, keyed by a fixed id."""

    tab_ids: tuple[int, ...]
    response_headers: tuple[HeaderOperation, ...]
    request_headers: tuple[HeaderOperation, ...] = ()
    url_filter: str | None = None
    resource_types: tuple[str, ...] = (SUB_FRAME,)
    rule_id: int = RULE_ID
    priority: int = RULE_PRIORITY

    @classmethod
    def build(
        cls,
        tab_ids: list[int] | tuple[int, ...],
        *,
        profile: str = "standard",
        url_filter: str | None = None,
        spoof_target: str | None = None,
    ) -> InterceptionRule:
        request_headers: tuple[HeaderOperation, ...] = ()
        if spoof_target:
            request_headers = (
                HeaderOperation("origin", "set", origin_of(spoof_target)),
                HeaderOperation("referer", "set", spoof_target),
            )
        return cls(
            tab_ids=tuple(sorted({int(t) for t in tab_ids})),
            response_headers=tuple(HeaderOperation(h) for h in profile_headers(profile)),
            request_headers=request_headers,
            url_filter=url_filter,
        )

    def matches(self, tab_id: int | None, url: str, resource_type: str) -> bool:
        if resource_type not in self.resource_types:
            return False
        if tab_id is None or tab_id not in self.tab_ids:
            return False
        return url_filter_matches(self.url_filter, url)

    def removed_headers(self) -> frozenset[str]:
        return frozenset(op.header for op in self.response_headers if op.operation == "remove")

    def to_dnr(self) -> dict[str, Any]:
        action: dict[str, Any] = {
            "type": "modifyHeaders",
            "responseHeaders": [op.to_dict() for op in self.response_headers],
        }
        if self.request_headers:
            action["requestHeaders"] = [op.to_dict() for op in self.request_headers]
        condition: dict[str, Any] = {
            "resourceTypes": list(self.resource_types),
            "tabIds": list(self.tab_ids),
        }
        if self.url_filter:
            condition["urlFilter"] = self.url_filter
        return {"id": self.rule_id, "priority": self.priority, "action": action, "condition": condition}

    @classmethod
    def from_dnr(cls, raw: dict[str, Any]) -> InterceptionRule:
        action = raw.get("action") if isinstance(raw.get("action"), dict) else {}
        condition = raw.get("condition") if isinstance(raw.get("condition"), dict) else {}
        return cls(
            tab_ids=tuple(sorted(int(t) for t in condition.get("tabIds") or [])),
            response_headers=tuple(
                HeaderOperation.from_dict(op) for op in action.get("responseHeaders") or [] if isinstance(op, dict)
            ),
            request_headers=tuple(
                HeaderOperation.from_dict(op) for op in action.get("requestHeaders") or [] if isinstance(op, dict)
            ),
            url_filter=condition.get("urlFilter") or None,
            resource_types=tuple(str(t) for t in condition.get("resourceTypes") or []),
            rule_id=int(raw.get("id") or 0),
            priority=int(raw.get("priority") or RULE_PRIORITY),
        )

    def describe(self) -> str:
        scope = f"tabs={list(self.tab_ids)}"
        if self.url_filter:
            scope += " url=exact"
        spoof = " spoof=origin" if self.request_headers else ""
        return f"rule {self.rule_id} {scope} headers={len(self.response_headers)}{spoof}"
