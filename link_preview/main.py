"""
Link preview coordinator entry point.

`serve` runs the gateway + coordinator until interrupted; `settings` and
`sites` edit the persisted settings file used by page overlays.
"""

from __future__ import annotations

import argparse
import contextlib
import json
import logging
import sys
import threading
from typing import Any

from .config import CoordinatorConfig
from .coordinator import PreviewCoordinator
from .gateway import PreviewGateway
from .rule_backends import CdpConnection, CdpFetchInterceptor, DeclarativeRuleBackend, ImperativeRuleBackend
from .settings_store import DEFAULT_GEOMETRY, SettingsStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(message)s",
)
logger = logging.getLogger("link_preview")

__all__ = ["build_parser", "main"]


def _parse_assignment(raw: str) -> tuple[str, Any]:
    key, sep, value = raw.partition("=")
    if not sep or not key.strip():
        raise argparse.ArgumentTypeError(f"expected key=value, got {raw!r}")
    try:
        parsed: Any = json.loads(value)
    except json.JSONDecodeError:
        parsed = value
    return key.strip(), parsed


def _parse_cdp_target(raw: str) -> tuple[int, str]:
    tab, sep, ws_url = raw.partition("=")
    if not sep or not tab.strip().isdigit() or not ws_url.startswith(("ws://", "wss://")):
        raise argparse.ArgumentTypeError(f"expected TAB_ID=ws://..., got {raw!r}")
    return int(tab), ws_url


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="link-preview", description="Link preview session coordinator")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="run the preview gateway")
    serve.add_argument("--host", default=None, help="bind host (default: LINK_PREVIEW_HOST)")
    serve.add_argument("--port", type=int, default=None, help="bind port (default: LINK_PREVIEW_PORT)")
    serve.add_argument(
        "--cdp",
        action="append",
        type=_parse_cdp_target,
        default=[],
        metavar="TAB_ID=WS_URL",
        help="imperative backend: intercept this tab through its DevTools websocket",
    )

    settings = sub.add_parser("settings", help="print or update preview settings")
    settings.add_argument("--set", dest="assignments", action="append", type=_parse_assignment, default=[])
    settings.add_argument("--restore-geometry", action="store_true", help="reset overlay size and position")

    sites = sub.add_parser("sites", help="per-site enable/disable")
    sites.add_argument("verb", choices=["disable", "enable", "list"])
    sites.add_argument("host", nargs="?", default=None)
    return parser


def _print_json(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, ensure_ascii=False, indent=2) + "\n")
    sys.stdout.flush()


def _cmd_settings(config: CoordinatorConfig, args: argparse.Namespace) -> int:
    store = SettingsStore(config.settings_path)
    changes: dict[str, Any] = dict(DEFAULT_GEOMETRY) if args.restore_geometry else {}
    changes.update(dict(args.assignments))
    try:
        if changes:
            store.set(changes)
    except ValueError as exc:
        logger.error("settings rejected: %s", exc)
        return 2
    _print_json(store.get().to_items())
    return 0


def _cmd_sites(config: CoordinatorConfig, args: argparse.Namespace) -> int:
    store = SettingsStore(config.settings_path)
    if args.verb != "list":
        if not args.host:
            logger.error("sites %s: hostname required", args.verb)
            return 2
        try:
            if args.verb == "disable":
                store.disable_site(args.host)
            else:
                store.enable_site(args.host)
        except ValueError as exc:
            logger.error("sites %s rejected: %s", args.verb, exc)
            return 2
    _print_json({"disabledSites": list(store.get().disabled_sites)})
    return 0


def _cmd_serve(config: CoordinatorConfig, args: argparse.Namespace) -> int:
    if args.host:
        config.host = args.host
    if args.port:
        config.port = int(args.port)
    if args.cdp and config.backend != "imperative":
        logger.info("--cdp given, switching to the imperative backend")
        config.backend = "imperative"

    gateway = PreviewGateway(host=config.host, port=config.port)
    interceptors: list[CdpFetchInterceptor] = []
    if config.backend == "imperative":
        backend: Any = ImperativeRuleBackend()
        for tab_id, ws_url in args.cdp:
            conn = CdpConnection(ws_url, timeout=config.rpc_timeout)
            interceptor = CdpFetchInterceptor(conn, backend, tab_id=tab_id)
            interceptor.enable(request_stage=config.spoof_origin)
            interceptor.start()
            interceptors.append(interceptor)
    else:
        backend = DeclarativeRuleBackend(gateway, timeout=config.rpc_timeout)

    coordinator = PreviewCoordinator.create(backend, config)
    gateway.coordinator = coordinator
    try:
        gateway.start()
    except RuntimeError as exc:
        logger.error("%s", exc)
        return 1

    if config.backend == "imperative":
        gateway.run_coroutine(coordinator.reset())
    logger.info(
        "link preview coordinator ready backend=%s profile=%s scope=%s foregroundOnly=%s",
        config.backend,
        config.profile,
        config.scope,
        config.foreground_only,
    )

    stop = threading.Event()
    try:
        while not stop.wait(1.0):
            pass
    except KeyboardInterrupt:
        logger.info("shutting down")
    finally:
        for interceptor in interceptors:
            with contextlib.suppress(Exception):
                interceptor.stop()
                interceptor.connection.close()
        gateway.stop()
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the link-preview CLI."""
    args = build_parser().parse_args(argv)
    config = CoordinatorConfig.from_env()
    if args.command == "serve":
        return _cmd_serve(config, args)
    if args.command == "settings":
        return _cmd_settings(config, args)
    return _cmd_sites(config, args)


if __name__ == "__main__":
    sys.exit(main())
