"""Base64 transport helpers for script text.

Script source, Lua snippets and edit strings are Base64-encoded by the MCP port
so that every character survives JSON transport untouched; the relay decodes
them again before the command reaches the plugin. Plugin output travels as raw
text, but older plugin builds Base64-encode it, so output decoding is lenient.
"""
from __future__ import annotations

import base64
import binascii
import re
from typing import Any

_B64_RE = re.compile(r"^[A-Za-z0-9+/]*={0,2}$")

# Status lines the plugin emits verbatim; never treat them as Base64.
_PLAIN_PREFIXES = ("[SUCCESS]", "[ERROR]", "[WARNING]", "[DEBUG]", "[INFO]", "✅", "⚠️")


def encode_text(value: Any) -> Any:
    if not isinstance(value, str) or not value:
        return value
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def decode_text(value: Any) -> Any:
    """Decode `value` if it is well-formed Base64 of UTF-8 text, else return it unchanged."""
    if not isinstance(value, str) or len(value) < 4:
        return value
    if value.startswith(_PLAIN_PREFIXES) or "[INFO]" in value:
        return value
    if len(value) % 4 != 0 or not _B64_RE.match(value):
        return value
    try:
        decoded = base64.b64decode(value, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return value
    if not decoded:
        return value
    return decoded


def decode_output(value: Any) -> Any:
    """Decode plugin output only when the result is plausibly text."""
    decoded = decode_text(value)
    if decoded is value:
        return value
    if all(ch.isprintable() or ch in "\n\r\t" for ch in decoded):
        return decoded
    return value
