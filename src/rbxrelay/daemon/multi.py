"""Sequential batch execution for the `multi` tool."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List

from ..contracts.v1 import ToolResult

TRUNCATED_MARKER = "(output truncated for size)"
MALFORMED_CALL = 'Each call must be an object like {"tool": ..., "args": {...}}'

ToolCaller = Callable[[str, Dict[str, Any]], Awaitable[ToolResult]]


@dataclass
class MultiCallEntry:
    index: int
    tool: str
    status: str  # "success" | "error"
    output: str
    truncated: bool = False

    @property
    def ok(self) -> bool:
        return self.status == "success"

    def render(self) -> str:
        head = f"[{self.index}] {self.tool.upper()}: "
        if self.truncated:
            state = "Success" if self.ok else "Error"
            return head + f"{'✅' if self.ok else '❌'} {state} {TRUNCATED_MARKER}"
        if self.ok:
            return head + "✅ Success\n" + self.output
        return head + "❌ Error\n" + self.output


@dataclass
class MultiCallReport:
    entries: List[MultiCallEntry] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for e in self.entries if e.ok)

    @property
    def failed(self) -> int:
        return len(self.entries) - self.succeeded

    @property
    def is_error(self) -> bool:
        return self.failed > 0

    def render(self) -> str:
        parts = [f"=== Multi Tool Results ({len(self.entries)} calls) ==="]
        parts.extend(e.render() for e in self.entries)
        parts.append(f"Summary: {self.succeeded} succeeded, {self.failed} failed")
        return "\n\n".join(parts)


def output_text(output: Any) -> str:
    if output is None:
        return ""
    if isinstance(output, str):
        return output
    try:
        return json.dumps(output, ensure_ascii=False, indent=2)
    except (TypeError, ValueError):
        return str(output)


async def run_multi(calls: List[Any], call: ToolCaller, *, max_response_size: int) -> MultiCallReport:
    """Run each `{tool, args}` in order. A failing call never stops the batch.

    Once the accumulated output passes half of `max_response_size`, later
    entries keep their status but drop their output.
    """
    report = MultiCallReport()
    budget = max(0, int(max_response_size)) // 2
    total = 0
    for i, item in enumerate(calls, start=1):
        if isinstance(item, dict):
            tool = str(item.get("tool") or "")
            args = item.get("args")
            result = await call(tool, args if isinstance(args, dict) else {})
        else:
            tool = "invalid"
            result = ToolResult.fail(MALFORMED_CALL, code="validation_error")
        status = "success" if result.success else "error"
        text = output_text(result.output) if result.success else (result.error or "Unknown error")
        if total > budget:
            report.entries.append(MultiCallEntry(index=i, tool=tool, status=status, output="", truncated=True))
            continue
        total += len(text.encode("utf-8"))
        report.entries.append(MultiCallEntry(index=i, tool=tool, status=status, output=text))
    return report
