from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


def expand_path(raw: str) -> str:
    return str(Path(raw).expanduser())


def _env_flag(name: str, default: bool) -> bool:
    raw = (os.environ.get(name) or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def _env_float(name: str, default: float, *, lo: float, hi: float) -> float:
    try:
        value = float(os.environ.get(name) or default)
    except Exception:
        value = default
    return max(lo, min(value, hi))


DEFAULT_SETTINGS_PATH = "~/.config/link-preview/settings.json"


@dataclass
class CoordinatorConfig:
    host: str = "127.0.0.1"
    port: int = 8766
    backend: str = "declarative"
    profile: str = "standard"
    scope: str = "tab"
    foreground_only: bool = True
    spoof_origin: bool = False
    prepare_timeout: float = 5.0
    rule_retries: int = 1
    rpc_timeout: float = 5.0
    settings_path: str = field(default_factory=lambda: expand_path(DEFAULT_SETTINGS_PATH))
    allow_hosts: list[str] = field(default_factory=list)
    http_timeout: float = 10.0
    http_max_bytes: int = 2_000_000

    @staticmethod
    def normalize_backend(raw: str | None) -> str:
        mode = (raw or "").strip().lower()
        if mode in {"imperative", "listener", "cdp", "fetch"}:
            return "imperative"
        return "declarative"

    @staticmethod
    def normalize_profile(raw: str | None) -> str:
        v = (raw or "").strip().lower()
        if v in {"strict", "isolation", "coi"}:
            return "strict"
        return "standard"

    @staticmethod
    def normalize_scope(raw: str | None) -> str:
        v = (raw or "").strip().lower()
        if v in {"url", "exact", "exact-url"}:
            return "url"
        # Anything else (including "any") falls back to the narrow tab scope.
        return "tab"

    @classmethod
    def from_env(cls) -> CoordinatorConfig:
        host = (os.environ.get("LINK_PREVIEW_HOST") or "127.0.0.1").strip() or "127.0.0.1"
        try:
            port = int(os.environ.get("LINK_PREVIEW_PORT") or 8766)
        except Exception:
            port = 8766
        try:
            retries = int(os.environ.get("LINK_PREVIEW_RULE_RETRIES") or 1)
        except Exception:
            retries = 1
        allow_raw = os.environ.get("LINK_PREVIEW_ALLOW_HOSTS", "")
        allow_hosts = [h.strip().lower() for h in allow_raw.split(",") if h.strip() and h.strip() != "*"]
        try:
            max_bytes = int(os.environ.get("LINK_PREVIEW_HTTP_MAX_BYTES") or 2_000_000)
        except Exception:
            max_bytes = 2_000_000
        return cls(
            host=host,
            port=port,
            backend=cls.normalize_backend(os.environ.get("LINK_PREVIEW_BACKEND")),
            profile=cls.normalize_profile(os.environ.get("LINK_PREVIEW_PROFILE")),
            scope=cls.normalize_scope(os.environ.get("LINK_PREVIEW_SCOPE")),
            foreground_only=_env_flag("LINK_PREVIEW_FOREGROUND_ONLY", True),
            spoof_origin=_env_flag("LINK_PREVIEW_SPOOF_ORIGIN", False),
            prepare_timeout=_env_float("LINK_PREVIEW_PREPARE_TIMEOUT", 5.0, lo=0.1, hi=60.0),
            rule_retries=max(0, min(retries, 5)),
            rpc_timeout=_env_float("LINK_PREVIEW_RPC_TIMEOUT", 5.0, lo=0.1, hi=60.0),
            settings_path=expand_path(os.environ.get("LINK_PREVIEW_SETTINGS") or DEFAULT_SETTINGS_PATH),
            allow_hosts=allow_hosts,
            http_timeout=_env_float("LINK_PREVIEW_HTTP_TIMEOUT", 10.0, lo=0.5, hi=120.0),
            http_max_bytes=max(1024, max_bytes),
        )

    def is_host_allowed(self, host: str) -> bool:
        host = (host or "").strip().lower().rstrip(".")
        if not self.allow_hosts:
            return True
        for raw_allowed in self.allow_hosts:
            allowed = (raw_allowed or "").strip().lower().lstrip(".").rstrip(".")
            if not allowed:
                continue
            if host == allowed:
                return True
            if host.endswith("." + allowed):
                return True
        return False
