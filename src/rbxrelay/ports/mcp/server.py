"""
rbxrelay MCP server: Roblox Studio tools for MCP clients.

Tools exposed to agents:
- tree / get / getScriptInfo: inspect the instance hierarchy and properties
- create / modifyObject / delete / copy / convertScript: change instances
- readLine / editScript / deleteLines / insertLines: line-level script edits
- scriptSearch / scriptSearchOnly: search script sources
- multi: run several of the above sequentially in one call

Every tool call is forwarded to the relay's `/api/<tool>/direct` endpoint
(RBXRELAY_URL, default http://localhost:3000); the relay applies the approval
policy and waits for the Studio plugin's answer. Script text is Base64-encoded
for transport and plugin output is decoded again before it is returned.
"""

from __future__ import annotations

import json
import logging
import os
import urllib.error
import urllib.request
from typing import Any, Dict, List, Optional

from ...daemon.errors import RelayError, TransportError, ValidationError
from ...daemon.multi import output_text
from ...kernel.settings import RelayConfig
from ...kernel.tools import SCRIPT_TYPES, TOOL_NAMES, encode_transport_fields, validate_args
from ...util.b64 import decode_output

logger = logging.getLogger("rbxrelay.mcp")

DEFAULT_RELAY_URL = "http://localhost:3000"
# Covers an interactive approval followed by a full dispatch wait.
REQUEST_TIMEOUT_S = 240.0
MAX_BODY_SIZE = RelayConfig().max_response_size


class MCPError(Exception):
    """MCP tool call error"""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}


def relay_url() -> str:
    return str(os.environ.get("RBXRELAY_URL") or DEFAULT_RELAY_URL).rstrip("/")


def _post(endpoint: str, body: Dict[str, Any], *, timeout: float = REQUEST_TIMEOUT_S) -> Dict[str, Any]:
    """POST JSON to the relay, raise TransportError on failure"""
    data = json.dumps(body, ensure_ascii=False).encode("utf-8")
    if len(data) > MAX_BODY_SIZE:
        raise TransportError(f"Request too large: {len(data) // (1024 * 1024)}MB", code="request_too_large")

    url = f"{relay_url()}{endpoint}"
    req = urllib.request.Request(url, data=data, method="POST")
    req.add_header("Content-Type", "application/json; charset=utf-8")
    req.add_header("Accept", "application/json")
    logger.debug(f"POST {endpoint}", extra={"op": "relay_call"})

    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            raw = resp.read(MAX_BODY_SIZE + 1)
    except urllib.error.HTTPError as e:
        raise TransportError(f"Relay error: HTTP {e.code}: {e.reason}") from None
    except (urllib.error.URLError, OSError) as e:
        reason = getattr(e, "reason", e)
        raise TransportError(f"Relay unreachable at {relay_url()}: {reason}") from None

    if len(raw) > MAX_BODY_SIZE:
        raise TransportError("Response from relay is too large", code="response_too_large")
    try:
        doc = json.loads(raw.decode("utf-8", errors="replace"))
    except ValueError:
        raise TransportError("Relay returned invalid JSON") from None
    if not isinstance(doc, dict):
        raise TransportError("Relay returned an unexpected response")
    return doc


def _reply(text: str, *, is_error: bool = False) -> Dict[str, Any]:
    return {"text": text, "isError": is_error}


def call_tool(tool: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
    validate_args(tool, arguments)
    resp = _post(f"/api/{tool}/direct", encode_transport_fields(tool, arguments))
    if resp.get("success"):
        return _reply(output_text(decode_output(resp.get("output"))))
    raise MCPError("tool_failed", f"{tool} failed: {resp.get('error') or 'unknown error'}")


def call_multi(arguments: Dict[str, Any]) -> Dict[str, Any]:
    calls = arguments.get("calls")
    if not isinstance(calls, list) or not calls:
        raise ValidationError('Parameter "calls" must be a non-empty array')

    encoded: List[Dict[str, Any]] = []
    for item in calls:
        tool = str((item or {}).get("tool") or "") if isinstance(item, dict) else ""
        args = item.get("args") if isinstance(item, dict) else None
        if not isinstance(args, dict):
            args = {}
        if tool in TOOL_NAMES:
            args = encode_transport_fields(tool, args)
        encoded.append({"tool": tool, "args": args})

    resp = _post("/api/multi/direct", {"calls": encoded})
    text = resp.get("output")
    if not isinstance(text, str):
        text = str(resp.get("error") or "")
    return _reply(text, is_error=not resp.get("success"))


def handle_tool_call(name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
    """Handle MCP tool call; returns `{text, isError}`"""
    try:
        if name == "multi":
            return call_multi(arguments)
        if name in TOOL_NAMES:
            return call_tool(name, arguments)
    except RelayError as e:
        raise MCPError(e.code, e.message, e.details) from None
    raise MCPError("unknown_tool", f"Unknown tool: {name}")


# =============================================================================
# Tool schemas
# =============================================================================


def _str(description: str) -> Dict[str, Any]:
    return {"type": "string", "description": description}


def _int(description: str) -> Dict[str, Any]:
    return {"type": "integer", "description": description}


def _bool(description: str) -> Dict[str, Any]:
    return {"type": "boolean", "description": description}


def _tool(name: str, description: str, properties: Dict[str, Any], required: List[str]) -> Dict[str, Any]:
    return {
        "name": name,
        "description": description,
        "inputSchema": {"type": "object", "properties": properties, "required": required},
    }


_PATH = _str('Path to the Roblox object. Examples: "workspace", "workspace.Model", "game.ReplicatedStorage.Script"')
_SCRIPT_PATH = _str('Path to the script. Example: "game.ServerScriptService.MyScript"')
_LUA_CODE = _str(
    'Lua statements applied to the object; only `obj.` assignments and `obj:SetAttribute()` are allowed. '
    'Example: "obj.Size = Vector3.new(10,2,10)\\nobj.Anchored = true". (Base64-encoded internally)'
)

MCP_TOOLS: List[Dict[str, Any]] = [
    _tool(
        "tree",
        "Get the complete hierarchy tree of any Roblox object by path.",
        {"path": _PATH},
        ["path"],
    ),
    _tool(
        "create",
        "Create a new Roblox object (Part, Script, Model, ...). Script source keeps every character exactly "
        "(Base64-encoded internally for transport).",
        {
            "className": _str('Roblox class name. Examples: "Part", "Script", "Model"'),
            "name": _str("Name of the new object"),
            "parent": _str('Path to the parent. Examples: "workspace", "game.ReplicatedStorage"'),
            "luaCode": _LUA_CODE,
            "source": _str("Source code, only for Script, LocalScript and ModuleScript. (Base64-encoded internally)"),
            "count": _int("Optional: create this many instances (batch mode)"),
            "loopVars": {
                "type": "object",
                "description": 'Optional batch-mode loop variables, e.g. {"x": {"start": 0, "step": 2}}; usable in luaCode.',
            },
        },
        ["className", "name", "parent"],
    ),
    _tool(
        "get",
        "Read properties and attributes from a Roblox object.",
        {
            "path": _PATH,
            "attributes": {
                "type": "array",
                "items": {"type": "string"},
                "description": 'Property or attribute names. Examples: ["Size", "Color", "Anchored"]',
            },
        },
        ["path", "attributes"],
    ),
    _tool(
        "modifyObject",
        "Modify an existing Roblox object: properties and attributes via luaCode, or replace a script's "
        "entire source.",
        {
            "path": _PATH,
            "luaCode": _LUA_CODE,
            "source": _str("New script source; replaces the ENTIRE script. (Base64-encoded internally)"),
        },
        ["path"],
    ),
    _tool(
        "editScript",
        "Precise script editing by exact string replacement. Read the script with readLine first and copy "
        "old_string without the line-number prefix.",
        {
            "path": _SCRIPT_PATH,
            "old_string": _str("EXACT text to replace, including indentation. (Base64-encoded internally)"),
            "new_string": _str("Replacement text. (Base64-encoded internally)"),
            "replace_all": _bool("Replace every occurrence; otherwise old_string must be unique (default: false)"),
        },
        ["path", "old_string", "new_string"],
    ),
    _tool(
        "convertScript",
        "Convert a script to another script type, keeping source, children and attributes.",
        {
            "path": _SCRIPT_PATH,
            "targetType": {"type": "string", "enum": list(SCRIPT_TYPES), "description": "Target class name"},
        },
        ["path", "targetType"],
    ),
    _tool(
        "readLine",
        "Read lines from a script. Use it before editing and again afterwards to verify the change.",
        {
            "path": _SCRIPT_PATH,
            "lineNumber": _int("Single line to read"),
            "startLine": _int("First line of a range (with endLine)"),
            "endLine": _int("Last line of a range (with startLine)"),
        },
        ["path"],
    ),
    _tool(
        "deleteLines",
        "Delete a range of lines from a script.",
        {
            "path": _SCRIPT_PATH,
            "startLine": _int("First line to delete"),
            "endLine": _int("Last line to delete"),
        },
        ["path", "startLine", "endLine"],
    ),
    _tool(
        "insertLines",
        "Insert lines at a position in a script; the line previously at lineNumber moves down.",
        {
            "path": _SCRIPT_PATH,
            "lineNumber": _int("Position for the first inserted line"),
            "lines": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Lines to insert, characters preserved exactly. (Each line Base64-encoded internally)",
            },
        },
        ["path", "lineNumber", "lines"],
    ),
    _tool(
        "getScriptInfo",
        "Get information about a script (line count, type, ...).",
        {"path": _SCRIPT_PATH},
        ["path"],
    ),
    _tool(
        "scriptSearch",
        "Search for text across all scripts in the game.",
        {
            "searchText": _str("Text to search for"),
            "caseSensitive": _bool("Case-sensitive search (default: false)"),
            "maxResults": _int("Maximum number of results (default: 50)"),
        },
        ["searchText"],
    ),
    _tool(
        "scriptSearchOnly",
        "Search for text inside one script (read-only).",
        {
            "scriptPath": _SCRIPT_PATH,
            "searchText": _str("Text to search for"),
            "caseSensitive": _bool("Case-sensitive search (default: false)"),
            "maxResults": _int("Maximum number of results (default: 50)"),
        },
        ["scriptPath", "searchText"],
    ),
    _tool(
        "delete",
        "Delete a Roblox object entirely.",
        {"path": _PATH},
        ["path"],
    ),
    _tool(
        "copy",
        "Copy a Roblox object to a new parent (Instance:Clone()).",
        {
            "sourcePath": _str("Path of the object to copy"),
            "targetPath": _str("Path of the new parent"),
            "newName": _str("Optional new name for the copy"),
        },
        ["sourcePath", "targetPath"],
    ),
    _tool(
        "multi",
        "Execute several tool calls sequentially. A failing call does not stop the batch. Available tools: "
        + ", ".join(TOOL_NAMES),
        {
            "calls": {
                "type": "array",
                "description": "Tool calls to execute in order",
                "items": {
                    "type": "object",
                    "properties": {
                        "tool": {"type": "string", "enum": list(TOOL_NAMES)},
                        "args": {"type": "object", "description": "Arguments, as for a direct call"},
                    },
                    "required": ["tool", "args"],
                },
            }
        },
        ["calls"],
    ),
]
