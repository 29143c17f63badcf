"""RelayCore: the owned context that ties the relay components together.

One RelayCore exists per server process. It holds every in-memory table (via
its components), runs the background maintenance tasks between `start()` and
`stop()`, and exposes the tool-facing operations that never raise: failures
come back as a failed ToolResult.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..contracts.v1 import Command, ToolResult, new_correlation_id
from ..kernel.settings import SettingsStore
from ..kernel.tools import decode_transport_fields, path_of, validate_args
from ..util.b64 import decode_output
from .approval import ApprovalGate
from .broadcast import EventBroadcaster
from .correlator import Correlator
from .errors import RejectedError, RelayError, ValidationError
from .janitor import StateJanitor
from .legacy_queue import LegacyQueueProcessor
from .multi import MultiCallReport, run_multi
from .rendezvous import AgentPresence, LongPollRendezvous

logger = logging.getLogger("rbxrelay.core")

FatalHandler = Callable[[BaseException], None]


class RelayCore:
    def __init__(
        self,
        settings: Optional[SettingsStore] = None,
        *,
        broadcaster: Optional[EventBroadcaster] = None,
        on_fatal: Optional[FatalHandler] = None,
    ) -> None:
        self.settings = settings or SettingsStore()
        self.config = self.settings.config
        self.broadcaster = broadcaster or EventBroadcaster()
        self._on_fatal = on_fatal

        cfg = self.config
        self.gate = ApprovalGate(self.settings, self.broadcaster, timeout_s=cfg.approval_timeout)
        self.rendezvous = LongPollRendezvous(
            pickup_timeout_s=cfg.pickup_timeout,
            presence=AgentPresence(offline_after_s=cfg.agent_offline_after),
        )
        self.correlator = Correlator(self.rendezvous, dispatch_timeout_s=cfg.dispatch_timeout)
        self.legacy = LegacyQueueProcessor(
            self.gate,
            self.correlator,
            pause_s=cfg.legacy_pause,
            on_fatal=self.fatal,
            before_dispatch=self.check_strict,
            on_success=self.record_call,
        )
        self.janitor = StateJanitor(
            cfg,
            gate=self.gate,
            correlator=self.correlator,
            rendezvous=self.rendezvous,
            legacy=self.legacy,
            broadcaster=self.broadcaster,
        )

        self.accepting = True
        self._last_call: Optional[Tuple[str, str]] = None
        self._tasks: List["asyncio.Task[None]"] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        loop = asyncio.get_running_loop()
        self.broadcaster.bind_loop(loop)
        self.accepting = True
        for name, coro in (
            ("rbxrelay-janitor", self.janitor.run_sweeps()),
            ("rbxrelay-presence", self.janitor.run_presence()),
        ):
            task = loop.create_task(coro, name=name)
            task.add_done_callback(self._background_done)
            self._tasks.append(task)
        logger.info("Relay core started", extra={"op": "start"})

    async def stop(self) -> None:
        """Stop accepting work and cancel background tasks. In-flight state is not drained."""
        self.accepting = False
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.legacy.stop()
        logger.info("Relay core stopped", extra={"op": "stop"})

    def _background_done(self, task: "asyncio.Task[None]") -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.critical(f"Background task {task.get_name()} crashed: {exc!r}", exc_info=exc)
            self.fatal(exc)

    def fatal(self, exc: BaseException) -> None:
        self.accepting = False
        if self._on_fatal is not None:
            self._on_fatal(exc)

    # ------------------------------------------------------------------
    # Tool calls
    # ------------------------------------------------------------------

    def check_strict(self, tool: str, args: Dict[str, Any]) -> None:
        """With strict mode on, editScript must follow a readLine of the same script."""
        if tool != "editScript" or not self.settings.strict_mode:
            return
        path = path_of(args)
        if self._last_call != ("readLine", path):
            raise ValidationError(
                f"Strict mode: call readLine on {path} before editScript",
                code="strict_mode",
            )

    def record_call(self, tool: str, args: Dict[str, Any]) -> None:
        self._last_call = (tool, path_of(args))

    async def execute_direct(self, tool: str, args: Any) -> ToolResult:
        cid = new_correlation_id()
        extra = {"correlation_id": cid, "tool": tool}
        try:
            if not self.accepting:
                raise RelayError("Relay is shutting down", code="unavailable")
            validate_args(tool, args)
            decoded = decode_transport_fields(tool, args)
            self.check_strict(tool, decoded)
            logger.info(f"Direct {tool} request: {cid}", extra=extra)

            outcome = await self.gate.check(cid, tool, decoded)
            if outcome == "rejected":
                raise RejectedError("Request was rejected by the user")
            if outcome == "timeout":
                raise RejectedError("Approval timed out", code="approval_timeout")

            output = await self.correlator.dispatch(tool, decoded, correlation_id=cid)
        except RelayError as e:
            logger.warning(f"Direct {tool} request failed: {e.message}", extra=extra)
            return ToolResult.fail(e.message, code=e.code)

        self.record_call(tool, decoded)
        logger.info(f"Direct {tool} request completed: {cid}", extra={**extra, "status": "success"})
        return ToolResult.ok(output)

    async def execute_multi(self, calls: Any) -> ToolResult:
        if not isinstance(calls, list) or not calls:
            return ToolResult.fail('Parameter "calls" must be a non-empty array', code="validation_error")

        async def _call(tool: str, args: Dict[str, Any]) -> ToolResult:
            if tool == "multi":
                return ToolResult.fail("multi cannot be nested", code="validation_error")
            res = await self.execute_direct(tool, args)
            if res.success:
                return ToolResult.ok(decode_output(res.output))
            return res

        report: MultiCallReport = await run_multi(calls, _call, max_response_size=self.config.max_response_size)
        text = report.render()
        if report.is_error:
            return ToolResult(success=False, output=text, error=text, code="partial_failure")
        return ToolResult.ok(text)

    async def execute(self, tool: str, args: Any) -> ToolResult:
        if tool == "multi":
            return await self.execute_multi((args or {}).get("calls") if isinstance(args, dict) else None)
        return await self.execute_direct(tool, args)

    def submit_legacy(self, tool: str, args: Any) -> Dict[str, Any]:
        return self.legacy.submit(tool, args)

    # ------------------------------------------------------------------
    # Plugin side
    # ------------------------------------------------------------------

    async def pickup(self, timeout: Optional[float] = None) -> Optional[Command]:
        return await self.rendezvous.pickup(timeout)

    def redeliver(self, command: Command) -> None:
        self.rendezvous.redeliver(command)

    def post_result(self, correlation_id: Any, output: Any) -> bool:
        return self.correlator.post_result(correlation_id, output)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def queue_info(self) -> Dict[str, Any]:
        info = self.legacy.queue_info()
        info["backlog"] = self.rendezvous.backlog()
        info["parked_pickups"] = self.rendezvous.parked_count
        info["pending_approvals"] = self.gate.pending_count
        info["waiting_results"] = self.correlator.waiter_count
        info["agent_connected"] = self.rendezvous.presence.is_online()
        return info
