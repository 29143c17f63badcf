"""Approval gate for tool dispatch.

A call is dispatched automatically when auto-accept is on or the tool is
whitelisted. Anything else becomes an ApprovalRequest that waits for a decision
from the dashboard (human-in-the-loop) and turns into a rejection once the
interactive timeout passes.

Each ApprovalRequest resolves exactly once. Whoever commits first (the user,
the request's own deadline, or the janitor) wins; every later attempt is a
no-op. Every committed transition is broadcast.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..contracts.v1 import ApprovalOutcome, ApprovalRequestData
from ..kernel.settings import SettingsStore
from ..util.time import utc_now_iso
from .broadcast import EventBroadcaster

logger = logging.getLogger("rbxrelay.approval")


@dataclass
class ApprovalRequest:
    id: str
    tool: str
    args: Dict[str, Any]
    future: "asyncio.Future[ApprovalOutcome]"
    created_at: float = field(default_factory=time.monotonic)
    timestamp: str = field(default_factory=utc_now_iso)

    @property
    def resolved(self) -> bool:
        return self.future.done()

    def resolve(self, outcome: ApprovalOutcome) -> bool:
        if self.future.done():
            return False
        self.future.set_result(outcome)
        return True

    def to_data(self) -> ApprovalRequestData:
        return ApprovalRequestData(id=self.id, tool=self.tool, args=self.args, timestamp=self.timestamp)


class ApprovalGate:
    def __init__(
        self,
        settings: SettingsStore,
        broadcaster: EventBroadcaster,
        *,
        timeout_s: Optional[float] = None,
    ) -> None:
        self.settings = settings
        self._broadcaster = broadcaster
        self.timeout_s = float(timeout_s if timeout_s is not None else settings.config.approval_timeout)
        self._pending: Dict[str, ApprovalRequest] = {}

    # ------------------------------------------------------------------
    # Policy
    # ------------------------------------------------------------------

    def evaluate(self, tool: str) -> bool:
        """True when `tool` may be dispatched without asking."""
        return self.settings.auto_accept or self.settings.is_whitelisted(tool)

    async def check(self, correlation_id: str, tool: str, args: Dict[str, Any]) -> ApprovalOutcome:
        if self.evaluate(tool):
            if not self.settings.auto_accept:
                logger.info(f"Tool allowed by whitelist: {tool}", extra={"tool": tool, "correlation_id": correlation_id})
            return "approved"
        return await self.request_approval(correlation_id, tool, args)

    async def request_approval(self, correlation_id: str, tool: str, args: Dict[str, Any]) -> ApprovalOutcome:
        loop = asyncio.get_running_loop()
        req = ApprovalRequest(id=correlation_id, tool=tool, args=dict(args or {}), future=loop.create_future())
        self._pending[correlation_id] = req
        self._broadcaster.publish("approvalRequest", req.to_data().model_dump())
        logger.info(
            f"Waiting for user approval: {correlation_id} ({tool})",
            extra={"tool": tool, "correlation_id": correlation_id},
        )

        try:
            await asyncio.wait({req.future}, timeout=self.timeout_s)
        finally:
            if not req.future.done():
                # Deadline passed, or the caller itself went away.
                self._commit(req, "timeout")
        return req.future.result()

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(self, correlation_id: str, approved: bool) -> bool:
        """Apply a user decision. False when the request is unknown or already resolved."""
        req = self._pending.get(str(correlation_id or ""))
        if req is None:
            return False
        return self._commit(req, "approved" if approved else "rejected")

    def _commit(self, req: ApprovalRequest, outcome: ApprovalOutcome) -> bool:
        if not req.resolve(outcome):
            return False
        if self._pending.get(req.id) is req:
            del self._pending[req.id]
        self._broadcaster.publish("approvalProcessed", {"id": req.id, "outcome": outcome})
        extra = {"tool": req.tool, "correlation_id": req.id}
        if outcome == "approved":
            logger.info(f"Request approved: {req.id}", extra={**extra, "status": "success"})
        elif outcome == "rejected":
            logger.warning(f"Request rejected: {req.id} ({req.tool})", extra=extra)
        else:
            logger.warning(f"Approval timed out: {req.id} ({req.tool})", extra=extra)
        return True

    def expire_stale(self, now: Optional[float] = None) -> int:
        """Force-resolve requests older than the interactive timeout; returns how many were expired."""
        t = time.monotonic() if now is None else now
        expired = 0
        for req in list(self._pending.values()):
            if t - req.created_at >= self.timeout_s:
                if self._commit(req, "timeout"):
                    expired += 1
                else:
                    self._pending.pop(req.id, None)
        return expired

    def pending(self) -> List[ApprovalRequestData]:
        return [r.to_data() for r in self._pending.values()]

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ------------------------------------------------------------------
    # Settings (persisted + broadcast)
    # ------------------------------------------------------------------

    def set_auto_accept(self, value: bool) -> None:
        self.settings.set_auto_accept(value)
        logger.info(f"Auto-accept {'enabled' if value else 'disabled'}")
        self._broadcaster.publish("autoAcceptUpdate", self.settings.auto_accept)

    def set_strict_mode(self, value: bool) -> None:
        self.settings.set_strict_mode(value)
        logger.info(f"Strict edit mode {'enabled' if value else 'disabled'}")
        self._broadcaster.publish("strictModeUpdate", self.settings.strict_mode)

    def toggle_whitelist(self, tool: str) -> bool:
        added = self.settings.toggle_whitelist(tool)
        logger.info(f"Tool {'added to' if added else 'removed from'} whitelist: {tool}", extra={"tool": tool})
        self._broadcaster.publish("whitelistUpdate", self.settings.whitelist)
        return added
