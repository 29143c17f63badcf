from __future__ import annotations

import uuid
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ...util.time import utc_now_iso


LegacyStatus = Literal["queued", "processing", "completed", "error"]

ApprovalOutcome = Literal["approved", "rejected", "timeout"]


def new_correlation_id() -> str:
    return str(uuid.uuid4())


class Command(BaseModel):
    """A tool call waiting for (or handed to) the plugin. Immutable once created."""

    id: str = Field(default_factory=new_correlation_id)
    tool: str
    args: Dict[str, Any] = Field(default_factory=dict)
    created_at: str = Field(default_factory=utc_now_iso)

    model_config = ConfigDict(extra="forbid", frozen=True)

    def to_wire(self) -> Dict[str, Any]:
        return {"tool": self.tool, "args": self.args, "id": self.id}


class ToolResult(BaseModel):
    """Structured outcome of a tool call, as returned by `/api/<tool>/direct`."""

    success: bool
    output: Any = None
    error: str = ""
    code: str = ""

    model_config = ConfigDict(extra="forbid")

    @classmethod
    def ok(cls, output: Any) -> "ToolResult":
        return cls(success=True, output=output)

    @classmethod
    def fail(cls, message: str, *, code: str = "error") -> "ToolResult":
        return cls(success=False, error=message, code=code)

    def to_response(self) -> Dict[str, Any]:
        if self.success:
            return {"success": True, "output": self.output}
        return {"success": False, "error": self.error}


class ApprovalRequestData(BaseModel):
    id: str
    tool: str
    args: Dict[str, Any] = Field(default_factory=dict)
    timestamp: str

    model_config = ConfigDict(extra="forbid")


class ResultPost(BaseModel):
    """JSON form of `POST /result` kept for older plugin builds."""

    id: Optional[str] = None
    output: Any = None

    model_config = ConfigDict(extra="ignore")
