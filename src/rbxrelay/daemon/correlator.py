"""Request/response pairing between tool calls and plugin results.

`dispatch()` creates a Command, hands it to the rendezvous and suspends on a
per-correlation-id wake signal until the plugin posts a result or the deadline
passes. A timed-out command is not retracted: it may already be with the
plugin. A result that arrives after its waiter is gone stays in the result
table until the janitor reclaims it.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..contracts.v1 import Command
from .errors import DispatchTimeoutError, RemoteError
from .rendezvous import LongPollRendezvous

logger = logging.getLogger("rbxrelay.correlator")

ERROR_MARKER = "[ERROR]"


@dataclass
class PendingResult:
    output: Any
    received_at: float = field(default_factory=time.monotonic)


@dataclass
class Waiter:
    correlation_id: str
    tool: str
    deadline: float
    event: asyncio.Event = field(default_factory=asyncio.Event)


def classify_output(output: Any) -> Optional[str]:
    """Return the unwrapped error message when `output` carries an error marker, else None."""
    if isinstance(output, str):
        if ERROR_MARKER not in output:
            return None
        msg = output.strip()
        if msg.startswith(ERROR_MARKER):
            msg = msg[len(ERROR_MARKER):].strip()
        return msg or "plugin reported an error"
    if isinstance(output, dict) and output.get("error"):
        return str(output["error"])
    return None


class Correlator:
    def __init__(self, rendezvous: LongPollRendezvous, *, dispatch_timeout_s: float = 120.0) -> None:
        self.rendezvous = rendezvous
        self.dispatch_timeout_s = float(dispatch_timeout_s)
        self._waiters: Dict[str, Waiter] = {}
        self._results: Dict[str, PendingResult] = {}

    async def dispatch(
        self,
        tool: str,
        args: Dict[str, Any],
        timeout: Optional[float] = None,
        *,
        correlation_id: Optional[str] = None,
    ) -> Any:
        """Send `tool` to the plugin and wait for its output.

        Raises RemoteError when the plugin reports a failure and
        DispatchTimeoutError when nothing arrives before the deadline.
        """
        wait_s = self.dispatch_timeout_s if timeout is None else float(timeout)
        if correlation_id:
            command = Command(id=correlation_id, tool=tool, args=dict(args or {}))
        else:
            command = Command(tool=tool, args=dict(args or {}))
        cid = command.id
        waiter = Waiter(correlation_id=cid, tool=tool, deadline=time.monotonic() + wait_s)
        self._waiters[cid] = waiter
        extra = {"correlation_id": cid, "tool": tool}

        self.rendezvous.enqueue(command)
        logger.debug(f"Waiting for result of {cid} (timeout: {wait_s}s)", extra=extra)
        started = time.monotonic()
        try:
            await asyncio.wait_for(waiter.event.wait(), timeout=wait_s)
        except asyncio.TimeoutError:
            logger.warning(f"Timeout waiting for result of {cid} after {wait_s}s", extra=extra)
            raise DispatchTimeoutError("Timeout: no response from Roblox Studio") from None
        finally:
            if self._waiters.get(cid) is waiter:
                del self._waiters[cid]

        pending = self._results.pop(cid)
        logger.debug(f"Result for {cid} after {time.monotonic() - started:.3f}s", extra=extra)
        error = classify_output(pending.output)
        if error is not None:
            raise RemoteError(error)
        return pending.output

    def post_result(self, correlation_id: Any, output: Any) -> bool:
        """Store a plugin result and wake its waiter. Returns True when a live waiter matched."""
        cid = str(correlation_id)
        extra = {"correlation_id": cid}
        if cid in self._results:
            logger.warning(f"Result for {cid} overwrites an unconsumed result", extra=extra)
        self._results[cid] = PendingResult(output=output)

        waiter = self._waiters.get(cid)
        if waiter is None:
            logger.info(f"Result received for {cid} with no live waiter", extra=extra)
            return False
        logger.info(f"Output received from plugin (ID: {cid})", extra={**extra, "tool": waiter.tool})
        waiter.event.set()
        return True

    def reclaim_results(self, max_age_s: float, now: Optional[float] = None) -> int:
        """Drop results nobody is waiting for that are older than `max_age_s`."""
        t = time.monotonic() if now is None else now
        stale = [
            cid
            for cid, res in self._results.items()
            if cid not in self._waiters and t - res.received_at >= max_age_s
        ]
        for cid in stale:
            del self._results[cid]
        return len(stale)

    @property
    def waiter_count(self) -> int:
        return len(self._waiters)

    @property
    def result_count(self) -> int:
        return len(self._results)

    def has_result(self, correlation_id: str) -> bool:
        return correlation_id in self._results
