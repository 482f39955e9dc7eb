from __future__ import annotations

import asyncio
from typing import Any


class _LoggingBackend:
    name = "logging"

    def __init__(self, log: list[str], *, delay: float = 0.0) -> None:
        self.rules: dict[int, dict[str, Any]] = {}
        self.log = log
        self.delay = delay

    async def installed_rules(self) -> list[dict[str, Any]]:
        await asyncio.sleep(self.delay)
        return [dict(r) for r in self.rules.values()]

    async def update_rules(self, *, add=(), remove_ids=()) -> None:  # noqa: ANN001
        await asyncio.sleep(self.delay)
        for rule_id in remove_ids:
            self.rules.pop(rule_id, None)
        for raw in add:
            self.rules[raw["id"]] = raw
        rule = self.rules.get(1)
        self.log.append(f"rule:{rule['condition']['tabIds'] if rule else []}")


class _Surface:
    def __init__(self, log: list[str], tab: int) -> None:
        from link_preview.overlay import PageInteraction

        self.log = log
        self.tab = tab
        self.snapshot = PageInteraction()

    def suspend_interaction(self):  # noqa: ANN201
        return self.snapshot

    def restore_interaction(self, state) -> None:  # noqa: ANN001
        self.log.append(f"restore:{self.tab}")

    def show_overlay(self, url, settings) -> None:  # noqa: ANN001
        self.log.append(f"show:{self.tab}")

    def set_frame_source(self, url: str) -> None:
        self.log.append(f"frame:{self.tab}")

    async def wait_frame_ready(self) -> None:
        return None

    def mark_loaded(self) -> None:
        pass

    def show_failure(self, reason: str) -> None:
        self.log.append(f"failure:{self.tab}:{reason}")

    def start_close_animation(self) -> None:
        self.log.append(f"closing:{self.tab}")

    def remove_overlay(self) -> None:
        pass

    def open_in_new_tab(self, url: str) -> None:
        pass

    def apply_geometry(self, settings) -> None:  # noqa: ANN001
        pass


def _page(coord: Any, log: list[str], tab: int):  # noqa: ANN202
    from link_preview.channel import LocalChannel
    from link_preview.overlay import OverlayController
    from link_preview.settings_store import SettingsStore

    channel = LocalChannel(coord, tab)
    ctrl = OverlayController(_Surface(log, tab), channel, SettingsStore(), close_delay=0.01)
    return channel, ctrl


def test_frame_source_is_set_only_after_the_rule_is_installed() -> None:
    from link_preview.coordinator import PreviewCoordinator
    from link_preview.overlay import Link

    log: list[str] = []
    backend = _LoggingBackend(log, delay=0.02)
    coord = PreviewCoordinator.create(backend)

    async def _main() -> None:
        channel, ctrl = _page(coord, log, 7)
        assert await ctrl.try_open(Link("https://a.example/")) is True
        await ctrl.close()
        await channel.drain()

    asyncio.run(_main())
    assert log.index("rule:[7]") < log.index("frame:7")
    assert log.index("closing:7") < log.index("rule:[]")
    assert len(coord.registry) == 0
    assert backend.rules == {}


def test_two_tabs_only_the_foreground_preview_is_exempt() -> None:
    from link_preview.coordinator import PreviewCoordinator
    from link_preview.overlay import Link

    log: list[str] = []
    backend = _LoggingBackend(log)
    coord = PreviewCoordinator.create(backend)

    async def _main() -> None:
        _c7, page7 = _page(coord, log, 7)
        _c9, page9 = _page(coord, log, 9)
        assert await page7.try_open(Link("https://a.example/"))
        assert await page9.try_open(Link("https://b.example/"))
        assert backend.rules[1]["condition"]["tabIds"] == [9]

        await coord.on_tab_activated(7)
        assert backend.rules[1]["condition"]["tabIds"] == [7]

    asyncio.run(_main())
    assert len(coord.registry) == 2


def test_prepare_timeout_leaves_no_exemption_behind() -> None:
    from link_preview.channel import LocalChannel
    from link_preview.coordinator import PreviewCoordinator
    from link_preview.overlay import Link, OverlayController, OverlayState
    from link_preview.settings_store import SettingsStore

    log: list[str] = []
    backend = _LoggingBackend(log, delay=0.05)
    coord = PreviewCoordinator.create(backend)

    async def _main() -> None:
        channel = LocalChannel(coord, 7)
        ctrl = OverlayController(_Surface(log, 7), channel, SettingsStore(), prepare_timeout=0.02)
        assert await ctrl.try_open(Link("https://a.example/")) is False
        assert ctrl.state is OverlayState.IDLE
        await channel.drain()

    asyncio.run(_main())
    assert "failure:7:unavailable" in log
    assert "frame:7" not in log
    assert len(coord.registry) == 0
    assert backend.rules == {}


def test_coordinator_crash_fails_the_open_instead_of_hanging() -> None:
    from link_preview.channel import LocalChannel
    from link_preview.errors import ChannelError
    from link_preview.overlay import Link, OverlayController, OverlayState
    from link_preview.settings_store import SettingsStore

    class _BrokenCoordinator:
        async def handle(self, message: Any, sender_tab_id: int | None = None) -> dict[str, Any] | None:
            raise ValueError("boom")

    log: list[str] = []

    async def _main() -> None:
        channel = LocalChannel(_BrokenCoordinator(), 7)
        try:
            await channel.request({"action": "prepareToPreview", "url": "https://a.example/"})
        except ChannelError as exc:
            assert "boom" in str(exc)
        else:
            raise AssertionError("expected ChannelError")

        ctrl = OverlayController(_Surface(log, 7), channel, SettingsStore(), close_delay=0.01)
        assert await ctrl.try_open(Link("https://a.example/")) is False
        assert ctrl.state is OverlayState.IDLE
        await channel.drain()

    asyncio.run(_main())
    assert "failure:7:unavailable" in log
    assert "restore:7" in log
    assert "frame:7" not in log
