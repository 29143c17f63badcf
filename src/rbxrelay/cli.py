from __future__ import annotations

import argparse
import json
from typing import Any

from . import __version__
from .kernel.settings import SettingsStore, settings_path
from .util.obslog import setup_root_json_logging


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2))


def cmd_web(args: argparse.Namespace) -> int:
    from .ports.web.main import main as web_main

    argv = ["--host", str(args.host), "--port", str(args.port)]
    if args.log_level:
        argv += ["--log-level", str(args.log_level)]
    if args.reload:
        argv.append("--reload")
    return int(web_main(argv))


def cmd_mcp(_: argparse.Namespace) -> int:
    from .ports.mcp.main import main as mcp_main

    return int(mcp_main())


def cmd_gui(args: argparse.Namespace) -> int:
    from .launcher import run_gui

    setup_root_json_logging(component="gui", level=str(args.log_level or ""))
    return int(run_gui(str(args.host), int(args.port), log_level=str(args.log_level or "")))


def cmd_settings(args: argparse.Namespace) -> int:
    store = SettingsStore()
    if args.auto_accept is not None:
        store.set_auto_accept(args.auto_accept == "on")
    if args.strict_mode is not None:
        store.set_strict_mode(args.strict_mode == "on")
    for tool in args.toggle or []:
        store.toggle_whitelist(tool)
    _print_json({"path": str(settings_path()), "settings": store.snapshot()})
    return 0


def cmd_version(_: argparse.Namespace) -> int:
    print(__version__)
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="rbxrelay", description="Roblox Studio tool relay (MCP <-> Studio plugin)")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_web = sub.add_parser("web", help="Run the HTTP relay the Studio plugin polls")
    p_web.add_argument("--host", default="127.0.0.1", help="Bind host (default: 127.0.0.1)")
    p_web.add_argument("--port", type=int, default=3000, help="Bind port (default: 3000)")
    p_web.add_argument("--log-level", default="", help="Log level (default: $RBXRELAY_LOG_LEVEL or info)")
    p_web.add_argument("--reload", action="store_true", help="Enable autoreload (dev)")
    p_web.set_defaults(func=cmd_web)

    p_mcp = sub.add_parser("mcp", help="Run the MCP server on stdio (talks to the relay at $RBXRELAY_URL)")
    p_mcp.set_defaults(func=cmd_mcp)

    p_gui = sub.add_parser("gui", help="Run the relay and open its dashboard; closing the window stops the relay")
    p_gui.add_argument("--host", default="127.0.0.1", help="Bind host (default: 127.0.0.1)")
    p_gui.add_argument("--port", type=int, default=3000, help="Bind port (default: 3000)")
    p_gui.add_argument("--log-level", default="", help="Log level (default: $RBXRELAY_LOG_LEVEL or info)")
    p_gui.set_defaults(func=cmd_gui)

    p_settings = sub.add_parser("settings", help="Show or change persisted settings")
    p_settings.add_argument("--auto-accept", choices=["on", "off"], default=None, help="Dispatch every call without asking")
    p_settings.add_argument("--strict-mode", choices=["on", "off"], default=None, help="Require readLine before editScript")
    p_settings.add_argument(
        "--toggle",
        action="append",
        default=[],
        metavar="TOOL",
        help="Toggle a tool's whitelist membership (repeatable)",
    )
    p_settings.set_defaults(func=cmd_settings)

    p_ver = sub.add_parser("version", help="Show version")
    p_ver.set_defaults(func=cmd_version)

    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
