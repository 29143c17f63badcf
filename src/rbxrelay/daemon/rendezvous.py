"""Long-poll rendezvous between created commands and plugin pickups.

The plugin calls `GET /command`; when the backlog has work it gets the oldest
command immediately, otherwise the request is parked until a command arrives
or the long-poll deadline passes.

Ordering invariant: a command is either handed to a parked pickup or appended
to the backlog, never both, and the object handed over is the object that
counts as delivered. Nothing ever pops the backlog head on behalf of a parked
pickup, so a fresh command can never be delivered while an older, undelivered
one is dropped.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional

from ..contracts.v1 import Command

logger = logging.getLogger("rbxrelay.rendezvous")


@dataclass
class ParkedPickup:
    future: "asyncio.Future[Optional[Command]]"
    deadline: float
    parked_at: float = field(default_factory=time.monotonic)

    def deliver(self, command: Optional[Command]) -> bool:
        """Hand `command` (or the no-command sentinel) over; False if this pickup is already gone."""
        if self.future.done():
            return False
        self.future.set_result(command)
        return True


class AgentPresence:
    """Plugin connectivity derived from the time since its last pickup."""

    def __init__(self, offline_after_s: float = 35.0) -> None:
        self.offline_after_s = float(offline_after_s)
        self.last_poll = 0.0
        self._reported: Optional[bool] = None

    def touch(self, now: Optional[float] = None) -> None:
        self.last_poll = time.monotonic() if now is None else now

    def is_online(self, now: Optional[float] = None) -> bool:
        if self.last_poll <= 0:
            return False
        t = time.monotonic() if now is None else now
        return (t - self.last_poll) <= self.offline_after_s

    def changed(self, online: bool) -> bool:
        """Record the reported state; True when it differs from the last report."""
        if self._reported is online:
            return False
        self._reported = online
        return True


class LongPollRendezvous:
    def __init__(self, *, pickup_timeout_s: float = 15.0, presence: Optional[AgentPresence] = None) -> None:
        self.pickup_timeout_s = float(pickup_timeout_s)
        self.presence = presence or AgentPresence()
        self._backlog: Deque[Command] = deque()
        self._parked: Deque[ParkedPickup] = deque()

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def enqueue(self, command: Command) -> bool:
        """Deliver `command` to the oldest live parked pickup, else append it to the backlog.

        Returns True when the command went straight to a waiting pickup.
        """
        while self._parked:
            pickup = self._parked.popleft()
            if pickup.deliver(command):
                logger.info(
                    f"Long poll instant delivery (ID: {command.id}, Tool: {command.tool})",
                    extra={"correlation_id": command.id, "tool": command.tool},
                )
                return True
            logger.debug("Skipping parked pickup whose connection already went away")
        self._backlog.append(command)
        logger.debug(
            f"Command queued (ID: {command.id}, backlog={len(self._backlog)})",
            extra={"correlation_id": command.id, "tool": command.tool},
        )
        return False

    def redeliver(self, command: Command) -> None:
        """Put back a command whose pickup connection closed before the response went out."""
        while self._parked:
            if self._parked.popleft().deliver(command):
                return
        self._backlog.appendleft(command)
        logger.warning(
            f"Pickup connection lost; command kept for the next poll (ID: {command.id})",
            extra={"correlation_id": command.id, "tool": command.tool},
        )

    # ------------------------------------------------------------------
    # Consumer side (plugin)
    # ------------------------------------------------------------------

    async def pickup(self, timeout: Optional[float] = None) -> Optional[Command]:
        """Return the next command, waiting up to `timeout` seconds; None means no command."""
        self.presence.touch()
        if self._backlog:
            command = self._backlog.popleft()
            logger.info(
                f"Command sent to plugin (ID: {command.id}, Tool: {command.tool})",
                extra={"correlation_id": command.id, "tool": command.tool},
            )
            return command

        wait_s = self.pickup_timeout_s if timeout is None else float(timeout)
        loop = asyncio.get_running_loop()
        pickup = ParkedPickup(future=loop.create_future(), deadline=time.monotonic() + wait_s)
        self._parked.append(pickup)
        logger.debug(f"Long poll parked ({len(self._parked)} waiting)")

        try:
            await asyncio.wait({pickup.future}, timeout=wait_s)
        except asyncio.CancelledError:
            self._abandon(pickup)
            raise

        if not pickup.future.done():
            # Deadline passed with no command; resolve exactly once with the sentinel.
            pickup.deliver(None)
            logger.debug(f"Long poll timeout ({len(self._parked) - 1} remaining)")
        self._discard(pickup)
        return pickup.future.result()

    def _discard(self, pickup: ParkedPickup) -> None:
        try:
            self._parked.remove(pickup)
        except ValueError:
            pass

    def _abandon(self, pickup: ParkedPickup) -> None:
        """The pickup's caller is gone. Re-home a command that was already handed to it."""
        self._discard(pickup)
        if not pickup.future.done():
            pickup.future.cancel()
            return
        if pickup.future.cancelled():
            return
        command = pickup.future.result()
        if command is not None:
            self.redeliver(command)

    # ------------------------------------------------------------------
    # Maintenance / introspection
    # ------------------------------------------------------------------

    def expire_parked(self, now: Optional[float] = None) -> int:
        """Resolve parked pickups past their deadline with the no-command sentinel."""
        t = time.monotonic() if now is None else now
        expired = 0
        for pickup in list(self._parked):
            if t >= pickup.deadline:
                self._discard(pickup)
                if pickup.deliver(None):
                    expired += 1
        return expired

    @property
    def backlog_size(self) -> int:
        return len(self._backlog)

    @property
    def parked_count(self) -> int:
        return len(self._parked)

    def backlog(self) -> List[Dict[str, Any]]:
        return [{"id": c.id, "tool": c.tool, "created_at": c.created_at} for c in self._backlog]
