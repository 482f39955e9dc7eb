from __future__ import annotations

import asyncio
from typing import Any

import pytest


class _SlowBackend:
    """Rule table with an artificial delay on every call."""

    name = "slow"

    def __init__(self, *, delay: float = 0.0, fail_updates: int = 0, log: list[str] | None = None) -> None:
        self.rules: dict[int, dict[str, Any]] = {}
        self.delay = delay
        self.fail_updates = fail_updates
        self.updates = 0
        self.log = log if log is not None else []

    async def installed_rules(self) -> list[dict[str, Any]]:
        if self.delay:
            await asyncio.sleep(self.delay)
        return [dict(r) for r in self.rules.values()]

    async def update_rules(self, *, add=(), remove_ids=()) -> None:  # noqa: ANN001
        if self.delay:
            await asyncio.sleep(self.delay)
        self.updates += 1
        if self.fail_updates > 0:
            self.fail_updates -= 1
            from link_preview.errors import RuleBackendError

            raise RuleBackendError("host rejected rule")
        for rule_id in remove_ids:
            self.rules.pop(rule_id, None)
        for raw in add:
            self.rules[raw["id"]] = raw
        self.log.append(f"rule:{self.tab_ids()}")

    def tab_ids(self) -> list[int]:
        rule = self.rules.get(1)
        return list(rule["condition"]["tabIds"]) if rule else []


def _coordinator(backend: Any, **config: Any):  # noqa: ANN202
    from link_preview.config import CoordinatorConfig
    from link_preview.coordinator import PreviewCoordinator

    return PreviewCoordinator.create(backend, CoordinatorConfig(**config))


def test_prepare_installs_rule_before_answering_ready() -> None:
    backend = _SlowBackend(delay=0.01)
    coord = _coordinator(backend)

    reply = asyncio.run(coord.prepare_to_preview(7, "https://a.example/"))
    assert reply.ready is True
    assert reply.session_id and reply.session_id.startswith("ps-")
    assert backend.tab_ids() == [7]
    session = coord.registry.get(7)
    assert session is not None and session.state.value == "active"


def test_tab_focus_scenario_only_the_foreground_preview_is_exempt() -> None:
    backend = _SlowBackend()
    coord = _coordinator(backend)

    async def _main() -> None:
        assert (await coord.prepare_to_preview(7, "https://a.example/")).ready
        assert backend.tab_ids() == [7]
        assert (await coord.prepare_to_preview(9, "https://b.example/")).ready
        assert backend.tab_ids() == [9]
        await coord.on_tab_activated(7)
        assert backend.tab_ids() == [7]
        await coord.on_tab_activated(12)
        assert backend.tab_ids() == []

    asyncio.run(_main())
    assert len(coord.registry) == 2


def test_double_trigger_yields_a_single_registry_entry() -> None:
    backend = _SlowBackend(delay=0.01)
    coord = _coordinator(backend)

    async def _main() -> list[Any]:
        return list(
            await asyncio.gather(
                coord.prepare_to_preview(7, "https://a.example/"),
                coord.prepare_to_preview(7, "https://a.example/"),
            )
        )

    first, second = asyncio.run(_main())
    assert len(coord.registry) == 1
    assert first.ready is False and first.reason == "superseded"
    assert second.ready is True
    assert coord.registry.get(7).session_id == second.session_id
    assert backend.tab_ids() == [7]


def test_clear_preview_is_idempotent() -> None:
    backend = _SlowBackend()
    coord = _coordinator(backend)

    async def _main() -> None:
        reply = await coord.prepare_to_preview(7, "https://a.example/")
        await coord.clear_preview(7, reply.session_id)
        updates = backend.updates
        await coord.clear_preview(7, reply.session_id)
        await coord.clear_preview(7)
        assert backend.updates == updates

    asyncio.run(_main())
    assert backend.rules == {}
    assert len(coord.registry) == 0
    assert coord.registry.get(7) is None


def test_stale_clear_does_not_close_a_newer_session() -> None:
    backend = _SlowBackend()
    coord = _coordinator(backend)

    async def _main() -> None:
        old = await coord.prepare_to_preview(7, "https://a.example/")
        new = await coord.prepare_to_preview(7, "https://b.example/")
        await coord.clear_preview(7, old.session_id)
        assert coord.registry.get(7).session_id == new.session_id

    asyncio.run(_main())
    assert backend.tab_ids() == [7]


def test_tab_removal_clears_registry_and_rule() -> None:
    backend = _SlowBackend()
    coord = _coordinator(backend)

    async def _main() -> None:
        await coord.prepare_to_preview(7, "https://a.example/")
        await coord.on_tab_removed(7)

    asyncio.run(_main())
    assert len(coord.registry) == 0
    assert backend.rules == {}


def test_rule_failure_answers_not_ready_and_drops_session() -> None:
    backend = _SlowBackend(fail_updates=2)
    coord = _coordinator(backend, rule_retries=1)

    reply = asyncio.run(coord.prepare_to_preview(7, "https://a.example/"))
    assert reply.ready is False
    assert reply.reason == "rule_install_failed"
    assert len(coord.registry) == 0
    assert backend.rules == {}


def test_reset_removes_leftover_rule() -> None:
    from link_preview.rules import InterceptionRule

    backend = _SlowBackend()
    backend.rules[1] = InterceptionRule.build([3]).to_dnr()
    coord = _coordinator(backend)

    asyncio.run(coord.reset())
    assert backend.rules == {}
    assert coord.status()["rule"]["installed"] is False


def test_handle_dispatches_wire_messages_using_sender_tab() -> None:
    backend = _SlowBackend()
    coord = _coordinator(backend)

    async def _main() -> None:
        res = await coord.handle({"action": "prepareToPreview", "url": "https://a.example/", "tabId": 99}, 7)
        assert res is not None and res["ready"] is True
        assert backend.tab_ids() == [7]

        assert await coord.handle({"action": "clearPreview", "sessionId": res["sessionId"]}, 7) is None
        assert backend.tab_ids() == []

    asyncio.run(_main())


def test_handle_rejects_malformed_messages() -> None:
    backend = _SlowBackend()
    coord = _coordinator(backend)

    async def _main() -> None:
        assert await coord.handle({"action": "prepareToPreview", "url": "javascript:alert(1)"}, 7) == {
            "ready": False,
            "reason": "bad_request",
        }
        assert await coord.handle({"action": "prepareToPreview", "url": "https://a.example/"}) == {
            "ready": False,
            "reason": "no_tab",
        }
        assert await coord.handle({"action": "nope"}, 7) is None
        assert await coord.handle("not json", 7) is None
        res = await coord.handle({"action": "fetchPreview"}, 7)
        assert res is not None and res["success"] is False

    asyncio.run(_main())
    assert backend.rules == {}
    assert len(coord.registry) == 0


def test_preconnect_swallows_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    from link_preview import coordinator as coordinator_mod
    from link_preview.http_client import HttpClientError

    seen: list[str] = []

    def _boom(url: str, config: Any) -> int:
        seen.append(url)
        raise HttpClientError("connection refused")

    monkeypatch.setattr(coordinator_mod, "http_head", _boom)
    coord = _coordinator(_SlowBackend())

    async def _main() -> None:
        assert await coord.handle({"action": "preconnect", "url": "https://a.example/"}, 7) is None
        await asyncio.gather(*list(coord._background))  # noqa: SLF001

    asyncio.run(_main())
    assert seen == ["https://a.example/"]


def test_fetch_preview_injects_base_href(monkeypatch: pytest.MonkeyPatch) -> None:
    from link_preview import coordinator as coordinator_mod
    from link_preview.http_client import HttpClientError

    def _get(url: str, config: Any) -> dict[str, Any]:
        if "missing" in url:
            raise HttpClientError("HTTP error! status: 404")
        return {"status": 200, "headers": {}, "body": "<html><head><title>t</title></head></html>", "truncated": False}

    monkeypatch.setattr(coordinator_mod, "http_get", _get)
    coord = _coordinator(_SlowBackend())

    ok = asyncio.run(coord.handle({"action": "fetchPreview", "url": "https://a.example/doc"}, 7))
    assert ok == {
        "success": True,
        "htmlContent": '<html><head><base href="https://a.example/doc"><title>t</title></head></html>',
    }

    bad = asyncio.run(coord.handle({"action": "fetchPreview", "url": "https://a.example/missing"}, 7))
    assert bad == {"success": False, "error": "HTTP error! status: 404"}


def test_imperative_backend_end_to_end() -> None:
    from link_preview.rule_backends import ImperativeRuleBackend

    backend = ImperativeRuleBackend()
    coord = _coordinator(backend, profile="strict")
    headers = [
        {"name": "x-frame-options", "value": "SAMEORIGIN"},
        {"name": "cross-origin-opener-policy", "value": "same-origin"},
        {"name": "cache-control", "value": "no-store"},
    ]

    reply = asyncio.run(coord.prepare_to_preview(7, "https://a.example/"))
    assert reply.ready
    assert backend.rewrite_response_headers(7, "https://a.example/", "sub_frame", headers) == [
        {"name": "cache-control", "value": "no-store"}
    ]

    asyncio.run(coord.clear_preview(7))
    assert backend.rewrite_response_headers(7, "https://a.example/", "sub_frame", headers) is None


def test_handle_answers_unparseable_urls_with_bad_request() -> None:
    backend = _SlowBackend()
    coord = _coordinator(backend)

    async def _main() -> None:
        assert await coord.handle({"action": "prepareToPreview", "url": "http://[::1"}, 7) == {
            "ready": False,
            "reason": "bad_request",
        }
        res = await coord.handle({"action": "fetchPreview", "url": "http://[::1"}, 7)
        assert res is not None and res["success"] is False
        assert await coord.handle({"action": "preconnect", "url": "http://[::1"}, 7) is None

    asyncio.run(_main())
    assert backend.rules == {}
    assert len(coord.registry) == 0


def test_handle_never_raises_when_decoding_blows_up(monkeypatch: pytest.MonkeyPatch) -> None:
    import link_preview.coordinator as coordinator_mod

    def _explode(raw: Any) -> Any:
        raise RuntimeError("decoder bug")

    monkeypatch.setattr(coordinator_mod, "decode_message", _explode)
    coord = _coordinator(_SlowBackend())

    reply = asyncio.run(coord.handle({"action": "prepareToPreview", "url": "https://a.example/"}, 7))
    assert reply == {"ready": False, "reason": "bad_request"}
