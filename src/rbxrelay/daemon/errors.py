from __future__ import annotations

from typing import Any, Dict, Optional


class RelayError(Exception):
    """Tool-level failure; always converted into a structured error before it reaches a caller."""

    code = "relay_error"

    def __init__(self, message: str, *, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}


class ValidationError(RelayError):
    """Malformed or missing arguments; the call is never dispatched."""

    code = "validation_error"


class RejectedError(RelayError):
    """Declined by the user or the approval timed out."""

    code = "rejected"


class DispatchTimeoutError(RelayError):
    """No plugin result before the dispatch deadline. The command may still be in the backlog."""

    code = "timeout"


class RemoteError(RelayError):
    """The plugin reported an error for the command."""

    code = "remote_error"


class TransportError(RelayError):
    """Pickup/post plumbing failed (relay unreachable, bad response)."""

    code = "transport_error"
