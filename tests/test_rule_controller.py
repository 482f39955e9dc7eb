from __future__ import annotations

import asyncio
from typing import Any

import pytest


class _FlakyBackend:
    """Declarative-style rule table that can fail or silently drop updates."""

    name = "fake"

    def __init__(self, *, fail_updates: int = 0, drop_adds: bool = False) -> None:
        self.rules: dict[int, dict[str, Any]] = {}
        self.updates: list[tuple[list[dict[str, Any]], list[int]]] = []
        self.fail_updates = fail_updates
        self.drop_adds = drop_adds

    async def installed_rules(self) -> list[dict[str, Any]]:
        return [dict(r) for r in self.rules.values()]

    async def update_rules(self, *, add=(), remove_ids=()) -> None:  # noqa: ANN001
        add = list(add)
        remove_ids = list(remove_ids)
        self.updates.append((add, remove_ids))
        if self.fail_updates > 0:
            self.fail_updates -= 1
            from link_preview.errors import RuleBackendError

            raise RuleBackendError("MAX_NUMBER_OF_SESSION_RULES exceeded")
        for rule_id in remove_ids:
            self.rules.pop(rule_id, None)
        if not self.drop_adds:
            for raw in add:
                self.rules[raw["id"]] = raw


def _controller(backend: Any, **kwargs: Any):  # noqa: ANN202
    from link_preview.rule_controller import NetworkRuleController
    from link_preview.session_registry import SessionRegistry

    registry = SessionRegistry(
        foreground_only=kwargs.pop("foreground_only", True),
        scope=kwargs.get("scope", "tab"),
    )
    return registry, NetworkRuleController(registry, backend, **kwargs)


def test_no_rule_while_registry_is_empty() -> None:
    backend = _FlakyBackend()
    _registry, controller = _controller(backend)

    assert asyncio.run(controller.reconcile()) is None
    assert backend.rules == {}
    assert backend.updates == []
    assert controller.installed is None


def test_exactly_one_rule_scoped_to_the_exempt_tab() -> None:
    backend = _FlakyBackend()
    registry, controller = _controller(backend)
    registry.open(7, "https://a.example/")

    rule = asyncio.run(controller.reconcile())
    assert rule is not None
    assert list(backend.rules) == [1]
    installed = backend.rules[1]
    assert installed["condition"]["tabIds"] == [7]
    assert installed["condition"]["resourceTypes"] == ["sub_frame"]
    assert controller.status()["installed"] is True


def test_redundant_reconcile_does_not_touch_the_backend() -> None:
    backend = _FlakyBackend()
    registry, controller = _controller(backend)
    registry.open(7, "https://a.example/")

    asyncio.run(controller.reconcile())
    asyncio.run(controller.reconcile())
    assert controller.mutations == 1
    assert len(backend.updates) == 1


def test_replacing_the_rule_removes_before_adding_in_one_call() -> None:
    backend = _FlakyBackend()
    registry, controller = _controller(backend)
    registry.open(7, "https://a.example/")
    asyncio.run(controller.reconcile())

    registry.open(9, "https://b.example/")
    asyncio.run(controller.reconcile())
    add, remove_ids = backend.updates[-1]
    assert remove_ids == [1]
    assert add[0]["condition"]["tabIds"] == [9]
    assert list(backend.rules) == [1]


def test_rule_removed_when_last_session_closes() -> None:
    backend = _FlakyBackend()
    registry, controller = _controller(backend)
    handle = registry.open(7, "https://a.example/")
    asyncio.run(controller.reconcile())

    registry.close(7, handle.session_id)
    assert asyncio.run(controller.reconcile()) is None
    assert backend.rules == {}
    assert backend.updates[-1] == ([], [1])


def test_url_scope_adds_exact_url_filter() -> None:
    backend = _FlakyBackend()
    registry, controller = _controller(backend, scope="url")
    registry.open(7, "https://a.example/page#frag")

    asyncio.run(controller.reconcile())
    assert backend.rules[1]["condition"]["urlFilter"] == "|https://a.example/page|"


def test_url_scope_with_several_targets_keeps_tab_condition() -> None:
    backend = _FlakyBackend()
    registry, controller = _controller(backend, scope="url", foreground_only=False)
    registry.open(7, "https://a.example/")
    registry.open(9, "https://b.example/")

    asyncio.run(controller.reconcile())
    cond = backend.rules[1]["condition"]
    assert "urlFilter" not in cond
    assert cond["tabIds"] == [7, 9]


def test_origin_spoofing_only_with_a_single_exempt_session() -> None:
    backend = _FlakyBackend()
    registry, controller = _controller(backend, spoof_origin=True, foreground_only=False)
    registry.open(7, "https://a.example/x")

    asyncio.run(controller.reconcile())
    assert backend.rules[1]["action"]["requestHeaders"][0] == {
        "header": "origin",
        "operation": "set",
        "value": "https://a.example",
    }

    registry.open(9, "https://b.example/")
    asyncio.run(controller.reconcile())
    assert "requestHeaders" not in backend.rules[1]["action"]


def test_request_headers_untouched_by_default() -> None:
    backend = _FlakyBackend()
    registry, controller = _controller(backend)
    registry.open(7, "https://a.example/x")
    asyncio.run(controller.reconcile())
    assert "requestHeaders" not in backend.rules[1]["action"]


def test_one_retry_recovers_from_a_transient_failure() -> None:
    backend = _FlakyBackend(fail_updates=1)
    registry, controller = _controller(backend, retries=1)
    registry.open(7, "https://a.example/")

    rule = asyncio.run(controller.reconcile())
    assert rule is not None
    assert list(backend.rules) == [1]
    assert len(backend.updates) == 2


def test_fails_closed_after_retries_are_exhausted() -> None:
    from link_preview.errors import RuleInstallError

    backend = _FlakyBackend(fail_updates=2)
    registry, controller = _controller(backend, retries=1)
    registry.open(7, "https://a.example/")

    with pytest.raises(RuleInstallError) as excinfo:
        asyncio.run(controller.reconcile())
    err = excinfo.value
    assert err.retryable is True
    assert err.rule_id == 1
    assert err.attempts == 2
    assert "MAX_NUMBER_OF_SESSION_RULES" in err.reason
    assert err.to_dict()["retryable"] is True
    # Fail closed: the best-effort removal went through.
    assert backend.updates[-1] == ([], [1])
    assert backend.rules == {}
    assert controller.installed is None


def test_rule_that_never_shows_up_counts_as_failure() -> None:
    from link_preview.errors import RuleInstallError

    backend = _FlakyBackend(drop_adds=True)
    registry, controller = _controller(backend, retries=0)
    registry.open(7, "https://a.example/")

    with pytest.raises(RuleInstallError, match="does not match"):
        asyncio.run(controller.reconcile())


def test_concurrent_reconciles_are_serialized() -> None:
    backend = _FlakyBackend()
    registry, controller = _controller(backend)

    async def _main() -> None:
        registry.open(7, "https://a.example/")
        await asyncio.gather(*(controller.reconcile() for _ in range(5)))

    asyncio.run(_main())
    assert controller.mutations == 1
    assert list(backend.rules) == [1]
