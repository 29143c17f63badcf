"""
rbxrelay MCP server entry point (stdio).

Usage:
    python -m rbxrelay.ports.mcp.main

or via the CLI:
    rbxrelay mcp
"""

from __future__ import annotations

import json
import logging
import sys
from typing import Any, Dict, Optional

from ... import __version__
from ...util.obslog import setup_root_json_logging
from .server import MCP_TOOLS, MCPError, handle_tool_call

logger = logging.getLogger("rbxrelay.mcp")


class _InvalidMessage(Exception):
    pass


def _read_message() -> Optional[Dict[str, Any]]:
    """Read one JSON-RPC message from stdin; None at EOF."""
    line = sys.stdin.readline()
    if not line:
        return None
    try:
        msg = json.loads(line.strip())
    except ValueError as e:
        raise _InvalidMessage(str(e)) from None
    if not isinstance(msg, dict):
        raise _InvalidMessage("message is not an object")
    return msg


def _write_message(msg: Dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(msg, ensure_ascii=False) + "\n")
    sys.stdout.flush()


def _make_response(id: Any, result: Any) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": id, "result": result}


def _make_error(id: Any, code: int, message: str, data: Any = None) -> Dict[str, Any]:
    error: Dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": "2.0", "id": id, "error": error}


def _text_result(text: str, *, is_error: bool = False) -> Dict[str, Any]:
    result: Dict[str, Any] = {"content": [{"type": "text", "text": text}]}
    if is_error:
        result["isError"] = True
    return result


def handle_request(req: Dict[str, Any]) -> Dict[str, Any]:
    """Handle one MCP JSON-RPC request; an empty dict means no response (notification)."""
    req_id = req.get("id")
    method = str(req.get("method") or "")
    params = req.get("params")
    if not isinstance(params, dict):
        params = {}

    if method == "initialize":
        return _make_response(req_id, {
            "protocolVersion": "2024-11-05",
            "capabilities": {
                "tools": {},
                "resources": {},
                "prompts": {},
            },
            "serverInfo": {
                "name": "roblox-studio",
                "version": __version__,
            },
        })

    if method.startswith("notifications/"):
        return {}

    if method == "tools/list":
        return _make_response(req_id, {"tools": MCP_TOOLS})

    # Probed by some clients even though nothing is offered.
    if method == "resources/list":
        return _make_response(req_id, {"resources": []})

    if method == "prompts/list":
        return _make_response(req_id, {"prompts": []})

    if method in ("ping", "logging/setLevel"):
        return _make_response(req_id, {})

    if method == "tools/call":
        tool_name = str(params.get("name") or "")
        arguments = params.get("arguments") or {}
        if not isinstance(arguments, dict):
            arguments = {}

        try:
            reply = handle_tool_call(tool_name, arguments)
        except MCPError as e:
            logger.warning(f"{tool_name} failed: {e.message}", extra={"tool": tool_name, "op": e.code})
            return _make_response(req_id, _text_result(f"Error: {e.message}", is_error=True))
        return _make_response(req_id, _text_result(reply["text"], is_error=bool(reply.get("isError"))))

    return _make_error(req_id, -32601, f"Method not found: {method}")


def main() -> int:
    """MCP server main loop (stdio)."""
    setup_root_json_logging(component="mcp")
    logger.info(f"rbxrelay MCP server {__version__} ready on stdio")
    while True:
        try:
            msg = _read_message()
        except _InvalidMessage as e:
            _write_message(_make_error(None, -32700, f"Parse error: {e}"))
            continue
        if msg is None:
            break

        try:
            resp = handle_request(msg)
        except Exception:
            logger.critical("Unexpected error while handling a request; exiting", exc_info=True)
            return 1
        if resp:
            _write_message(resp)

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
