"""Network rule controller.

Keeps the browser's interception rule in step with the session registry:
exactly one rule (`RULE_ID`) while some session is exempt, none otherwise.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .errors import RuleBackendError, RuleInstallError
from .redaction import redact_url
from .rule_backends import RuleBackend
from .rules import RULE_ID, InterceptionRule, exact_url_filter
from .session_registry import SessionRegistry

logger = logging.getLogger("link_preview.rules")

_UNPARSEABLE = object()


class NetworkRuleController:
    def __init__(
        self,
        registry: SessionRegistry,
        backend: RuleBackend,
        *,
        profile: str = "standard",
        scope: str = "tab",
        spoof_origin: bool = False,
        retries: int = 1,
    ) -> None:
        self.registry = registry
        self.backend = backend
        self.profile = profile
        self.scope = scope
        self.spoof_origin = bool(spoof_origin)
        self.retries = max(0, int(retries))
        self.installed: InterceptionRule | None = None
        self.mutations = 0
        self._lock = asyncio.Lock()

    def desired_rule(self) -> InterceptionRule | None:
        sessions = self.registry.exempt_sessions()
        if not sessions:
            return None

        url_filter = None
        if self.scope == "url":
            urls = {s.target_url for s in sessions}
            if len(urls) == 1:
                url_filter = exact_url_filter(next(iter(urls)))
            else:
                # One rule carries one urlFilter; the tab condition still bounds it.
                logger.info("url scope relaxed to tab scope: %d distinct targets", len(urls))

        spoof_target = None
        if self.spoof_origin:
            if len(sessions) == 1:
                spoof_target = sessions[0].target_url
            else:
                logger.info("origin spoofing skipped: %d exempt sessions", len(sessions))

        return InterceptionRule.build(
            [s.tab_id for s in sessions],
            profile=self.profile,
            url_filter=url_filter,
            spoof_target=spoof_target,
        )

    async def _current(self) -> Any:
        for raw in await self.backend.installed_rules():
            if raw.get("id") != RULE_ID:
                continue
            try:
                return InterceptionRule.from_dnr(raw)
            except Exception:  # noqa: BLE001
                return _UNPARSEABLE
        return None

    async def _apply(self, desired: InterceptionRule | None) -> bool:
        current = await self._current()
        if current == desired:
            return False

        add = [desired.to_dnr()] if desired is not None else []
        remove = [RULE_ID] if current is not None else []
        await self.backend.update_rules(add=add, remove_ids=remove)
        self.mutations += 1

        after = await self._current()
        if after != desired:
            raise RuleBackendError("installed rule does not match the requested rule after update")
        return True

    async def reconcile(self) -> InterceptionRule | None:
        """Bring the installed rule in line with the registry (serialised, idempotent)."""
        async with self._lock:
            attempts = 0
            last_error: RuleBackendError | None = None
            while attempts <= self.retries:
                attempts += 1
                # Re-read each attempt: the registry may have moved while we awaited the backend.
                desired = self.desired_rule()
                try:
                    changed = await self._apply(desired)
                except RuleBackendError as exc:
                    last_error = exc
                    logger.warning(
                        "rule update failed (attempt %d/%d): %s",
                        attempts,
                        self.retries + 1,
                        exc,
                    )
                    continue
                self.installed = desired
                if changed:
                    if desired is None:
                        logger.info("interception rule %d removed", RULE_ID)
                    else:
                        logger.info("interception rule installed: %s", desired.describe())
                        for session in self.registry.exempt_sessions():
                            logger.debug(
                                "exempt tab=%s url=%s",
                                session.tab_id,
                                redact_url(session.target_url),
                            )
                return desired

            await self._fail_closed()
            raise RuleInstallError(
                reason=str(last_error) if last_error else "rule update failed",
                rule_id=RULE_ID,
                attempts=attempts,
                retryable=True,
            )

    async def _fail_closed(self) -> None:
        self.installed = None
        try:
            await self.backend.update_rules(remove_ids=[RULE_ID])
        except Exception as exc:  # noqa: BLE001
            logger.error("fail-closed removal of rule %d failed: %s", RULE_ID, exc)
            return
        logger.error("interception rule %d withdrawn after repeated failures", RULE_ID)

    def status(self) -> dict[str, Any]:
        rule = self.installed
        return {
            "ruleId": RULE_ID,
            "installed": rule is not None,
            "rule": rule.to_dnr() if rule is not None else None,
            "profile": self.profile,
            "scope": self.scope,
            "spoofOrigin": self.spoof_origin,
        }
