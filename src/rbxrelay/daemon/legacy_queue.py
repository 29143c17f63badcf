"""Legacy fire-and-poll intake (`POST /api/<tool>`).

Requests are recorded with an id, processed strictly one at a time through the
approval gate and the correlator, and polled by the caller via
`/api/status/<id>` and `/api/result/<id>`. Only one legacy request is ever in
flight; the direct path does not wait on this queue.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Optional

from ..contracts.v1 import LegacyStatus, new_correlation_id
from ..kernel.tools import decode_transport_fields, validate_args
from ..util.time import utc_now_iso
from .approval import ApprovalGate
from .correlator import Correlator
from .errors import RejectedError, RelayError, ValidationError

logger = logging.getLogger("rbxrelay.legacy")

CallHook = Callable[[str, Dict[str, Any]], None]


@dataclass
class LegacyRequest:
    id: str
    tool: str
    args: Dict[str, Any]
    status: LegacyStatus = "queued"
    result: Any = None
    error: str = ""
    timestamp: str = field(default_factory=utc_now_iso)
    created_at: float = field(default_factory=time.monotonic)

    def status_view(self) -> Dict[str, Any]:
        return {"id": self.id, "status": self.status, "tool": self.tool, "timestamp": self.timestamp}

    def result_view(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"id": self.id, "status": self.status}
        if self.status == "completed":
            out["result"] = self.result
        elif self.status == "error":
            out["error"] = self.error
        return out


class LegacyQueueProcessor:
    def __init__(
        self,
        gate: ApprovalGate,
        correlator: Correlator,
        *,
        pause_s: float = 0.1,
        on_fatal: Optional[Callable[[BaseException], None]] = None,
        before_dispatch: Optional[CallHook] = None,
        on_success: Optional[CallHook] = None,
    ) -> None:
        self.gate = gate
        self.correlator = correlator
        self.pause_s = float(pause_s)
        self._requests: Dict[str, LegacyRequest] = {}
        self._order: Deque[str] = deque()
        self._current: Optional[str] = None
        self._task: Optional["asyncio.Task[None]"] = None
        self._on_fatal = on_fatal
        self._before_dispatch = before_dispatch
        self._on_success = on_success

    def submit(self, tool: str, args: Any) -> Dict[str, Any]:
        """Record a request and kick the processor. Returns the intake response body."""
        rid = new_correlation_id()
        try:
            validate_args(tool, args)
        except ValidationError as e:
            req = LegacyRequest(id=rid, tool=tool, args=args if isinstance(args, dict) else {})
            req.status = "error"
            req.error = e.message
            self._requests[rid] = req
            logger.warning(f"Rejected {tool} request: {e.message}", extra={"tool": tool, "request_id": rid})
            return {"id": rid, "status": "error", "message": e.message}

        # Stored decoded so the approval prompt shows plain script text.
        self._requests[rid] = LegacyRequest(id=rid, tool=tool, args=decode_transport_fields(tool, args))
        self._order.append(rid)
        logger.info(f"New {tool} request queued: {rid}", extra={"tool": tool, "request_id": rid})
        self._kick()
        return {"id": rid, "status": "queued", "message": "Request queued for processing"}

    def _kick(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name="rbxrelay-legacy-queue")
        self._task.add_done_callback(self._task_done)

    def _task_done(self, task: "asyncio.Task[None]") -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        logger.critical(f"Legacy queue processor crashed: {exc!r}", exc_info=exc)
        if self._on_fatal is not None:
            self._on_fatal(exc)

    async def _run(self) -> None:
        while self._order:
            rid = self._order.popleft()
            req = self._requests.get(rid)
            if req is None or req.status != "queued":
                continue
            self._current = rid
            try:
                await self._process(req)
            finally:
                self._current = None
            if self._order and self.pause_s > 0:
                await asyncio.sleep(self.pause_s)

    async def _process(self, req: LegacyRequest) -> None:
        extra = {"tool": req.tool, "request_id": req.id}
        req.status = "processing"
        logger.info(f"Processing request: {req.id} ({req.tool})", extra=extra)

        try:
            # Not at intake: strict mode depends on the calls completed before this one.
            if self._before_dispatch is not None:
                self._before_dispatch(req.tool, req.args)
            outcome = await self.gate.check(req.id, req.tool, req.args)
            if outcome == "rejected":
                raise RejectedError("Request was rejected by the user")
            if outcome == "timeout":
                raise RejectedError("Approval timed out", code="approval_timeout")
            req.result = await self.correlator.dispatch(req.tool, req.args, correlation_id=req.id)
        except RelayError as e:
            req.status = "error"
            req.error = e.message
            logger.warning(f"Request failed: {req.id}: {e.message}", extra=extra)
            return

        req.status = "completed"
        if self._on_success is not None:
            self._on_success(req.tool, req.args)
        logger.info(f"Request completed: {req.id}", extra={**extra, "status": "success"})

    def status(self, rid: str) -> Optional[Dict[str, Any]]:
        req = self._requests.get(rid)
        return req.status_view() if req is not None else None

    def result(self, rid: str) -> Optional[Dict[str, Any]]:
        req = self._requests.get(rid)
        return req.result_view() if req is not None else None

    def queue_info(self) -> Dict[str, Any]:
        counts: Dict[str, int] = {"queued": 0, "processing": 0, "completed": 0, "error": 0}
        for req in self._requests.values():
            counts[req.status] = counts.get(req.status, 0) + 1
        return {
            "queue_length": len(self._order),
            "processing": self._current,
            "requests": len(self._requests),
            "by_status": counts,
        }

    def expire(self, max_age_s: float, now: Optional[float] = None) -> int:
        """Forget requests older than `max_age_s`, except the one being processed."""
        t = time.monotonic() if now is None else now
        stale = [
            rid
            for rid, req in self._requests.items()
            if rid != self._current and t - req.created_at >= max_age_s
        ]
        for rid in stale:
            del self._requests[rid]
        if stale:
            dropped = set(stale)
            self._order = deque(rid for rid in self._order if rid not in dropped)
        return len(stale)

    @property
    def request_count(self) -> int:
        return len(self._requests)

    @property
    def current(self) -> Optional[str]:
        return self._current

    async def stop(self) -> None:
        task = self._task
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
