"""
Error types for the preview coordinator.

Provides:
- PreviewError: base class
- RuleBackendError: one host rule call failed
- RuleInstallError: reconcile gave up (fail closed, retryable)
- ProtocolError: malformed or unknown message
- ChannelError: page-side transport failure or timeout
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


class PreviewError(Exception):
    pass


class RuleBackendError(PreviewError):
    pass


@dataclass
class RuleInstallError(PreviewError):
    """Structured error raised when the interception rule could not be reconciled."""

    reason: str
    rule_id: int
    attempts: int = 1
    retryable: bool = True
    details: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return f"rule {self.rule_id}: {self.reason} (attempts={self.attempts})"

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "error": self.reason,
            "ruleId": self.rule_id,
            "attempts": self.attempts,
            "retryable": self.retryable,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class ProtocolError(PreviewError):
    pass


class ChannelError(PreviewError):
    pass


__all__ = [
    "ChannelError",
    "PreviewError",
    "ProtocolError",
    "RuleBackendError",
    "RuleInstallError",
]
