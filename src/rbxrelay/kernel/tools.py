"""Known plugin tools and their argument plumbing.

The relay never interprets what a tool does; it only knows which arguments
must be present, which ones carry script text (Base64 on the wire), and a
handful of shape checks that stop obviously broken calls before they reach
the plugin.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from ..daemon.errors import ValidationError
from ..util.b64 import decode_text, encode_text


@dataclass(frozen=True)
class ToolSpec:
    name: str
    required: Tuple[str, ...] = ()
    non_empty: Tuple[str, ...] = ()
    text_fields: Tuple[str, ...] = ()
    text_list_fields: Tuple[str, ...] = ()


SCRIPT_TYPES = ("Script", "LocalScript", "ModuleScript")

TOOL_SPECS: Dict[str, ToolSpec] = {
    spec.name: spec
    for spec in (
        ToolSpec("tree", required=("path",), non_empty=("path",)),
        ToolSpec(
            "create",
            required=("className", "name", "parent"),
            non_empty=("className", "name", "parent"),
            text_fields=("luaCode", "source"),
        ),
        ToolSpec("get", required=("path", "attributes"), non_empty=("path",)),
        ToolSpec("modifyObject", required=("path",), non_empty=("path",), text_fields=("luaCode", "source")),
        ToolSpec(
            "editScript",
            required=("path", "old_string", "new_string"),
            non_empty=("path",),
            text_fields=("old_string", "new_string"),
        ),
        ToolSpec("convertScript", required=("path", "targetType"), non_empty=("path",)),
        ToolSpec("readLine", required=("path",), non_empty=("path",)),
        ToolSpec("deleteLines", required=("path", "startLine", "endLine"), non_empty=("path",)),
        ToolSpec(
            "insertLines",
            required=("path", "lineNumber", "lines"),
            non_empty=("path",),
            text_list_fields=("lines",),
        ),
        ToolSpec("getScriptInfo", required=("path",), non_empty=("path",)),
        ToolSpec("scriptSearch", required=("searchText",), non_empty=("searchText",)),
        ToolSpec("scriptSearchOnly", required=("scriptPath", "searchText"), non_empty=("scriptPath", "searchText")),
        ToolSpec("delete", required=("path",), non_empty=("path",)),
        ToolSpec("copy", required=("sourcePath", "targetPath"), non_empty=("sourcePath", "targetPath")),
    )
}

TOOL_NAMES: Tuple[str, ...] = tuple(TOOL_SPECS)


def get_tool(name: str) -> ToolSpec:
    spec = TOOL_SPECS.get(str(name or ""))
    if spec is None:
        raise ValidationError(f"Unknown tool: {name}", code="unknown_tool")
    return spec


def _check_edit_script(args: Dict[str, Any]) -> None:
    old, new = args.get("old_string"), args.get("new_string")
    if not isinstance(old, str) or not isinstance(new, str):
        raise ValidationError('Parameters "old_string" and "new_string" must be strings')
    if old == new:
        raise ValidationError('"new_string" must differ from "old_string"; nothing would change')


def _check_convert_script(args: Dict[str, Any]) -> None:
    if args.get("targetType") not in SCRIPT_TYPES:
        raise ValidationError(f'Parameter "targetType" must be one of: {", ".join(SCRIPT_TYPES)}')


def _check_insert_lines(args: Dict[str, Any]) -> None:
    lines = args.get("lines")
    if not isinstance(lines, list) or not all(isinstance(x, str) for x in lines):
        raise ValidationError('Parameter "lines" must be an array of strings')


def _check_get(args: Dict[str, Any]) -> None:
    if not isinstance(args.get("attributes"), list):
        raise ValidationError('Parameter "attributes" must be an array of names')


_EXTRA_CHECKS: Dict[str, Callable[[Dict[str, Any]], None]] = {
    "editScript": _check_edit_script,
    "convertScript": _check_convert_script,
    "insertLines": _check_insert_lines,
    "get": _check_get,
}


def validate_args(tool: str, args: Any) -> Dict[str, Any]:
    """Raise ValidationError unless `args` has the shape `tool` needs; returns the args dict."""
    spec = get_tool(tool)
    if not isinstance(args, dict):
        raise ValidationError("Arguments must be a JSON object")
    for key in spec.required:
        if args.get(key) is None:
            raise ValidationError(f'Parameter "{key}" is missing')
    for key in spec.non_empty:
        value = args.get(key)
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f'Parameter "{key}" is required and must not be empty')
    check = _EXTRA_CHECKS.get(spec.name)
    if check is not None:
        check(args)
    return args


def _map_text_fields(spec: ToolSpec, args: Dict[str, Any], fn: Callable[[Any], Any]) -> Dict[str, Any]:
    out = dict(args)
    for key in spec.text_fields:
        if out.get(key):
            out[key] = fn(out[key])
    for key in spec.text_list_fields:
        if isinstance(out.get(key), list):
            out[key] = [fn(x) for x in out[key]]
    return out


def encode_transport_fields(tool: str, args: Dict[str, Any]) -> Dict[str, Any]:
    """Base64-encode the script-text fields of `args` (MCP side)."""
    return _map_text_fields(get_tool(tool), args, encode_text)


def decode_transport_fields(tool: str, args: Dict[str, Any]) -> Dict[str, Any]:
    """Undo `encode_transport_fields` (relay side). Plain text passes through unchanged."""
    return _map_text_fields(get_tool(tool), args, decode_text)


def path_of(args: Optional[Dict[str, Any]]) -> str:
    if not isinstance(args, dict):
        return ""
    return str(args.get("path") or "")
