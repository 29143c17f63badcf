from __future__ import annotations

from .command import (
    ApprovalOutcome,
    ApprovalRequestData,
    Command,
    LegacyStatus,
    ResultPost,
    ToolResult,
    new_correlation_id,
)

__all__ = [
    "ApprovalOutcome",
    "ApprovalRequestData",
    "Command",
    "LegacyStatus",
    "ResultPost",
    "ToolResult",
    "new_correlation_id",
]
