"""Periodic maintenance for the relay's in-memory tables.

Every table is evicted by age. Nothing is cleared wholesale, so a result that
is still inside its retention window survives a sweep.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional

from ..kernel.settings import RelayConfig
from .approval import ApprovalGate
from .broadcast import EventBroadcaster
from .correlator import Correlator
from .legacy_queue import LegacyQueueProcessor
from .rendezvous import LongPollRendezvous

logger = logging.getLogger("rbxrelay.janitor")


@dataclass(frozen=True)
class SweepReport:
    legacy: int = 0
    approvals: int = 0
    results: int = 0
    pickups: int = 0
    tracked: int = 0

    @property
    def reclaimed(self) -> int:
        return self.legacy + self.approvals + self.results + self.pickups


class StateJanitor:
    def __init__(
        self,
        config: RelayConfig,
        *,
        gate: ApprovalGate,
        correlator: Correlator,
        rendezvous: LongPollRendezvous,
        legacy: LegacyQueueProcessor,
        broadcaster: EventBroadcaster,
    ) -> None:
        self.config = config
        self.gate = gate
        self.correlator = correlator
        self.rendezvous = rendezvous
        self.legacy = legacy
        self.broadcaster = broadcaster

    def tracked_objects(self) -> int:
        return (
            self.legacy.request_count
            + self.gate.pending_count
            + self.correlator.result_count
            + self.correlator.waiter_count
            + self.rendezvous.backlog_size
            + self.rendezvous.parked_count
        )

    def sweep(self, now: Optional[float] = None) -> SweepReport:
        t = time.monotonic() if now is None else now
        report = SweepReport(
            legacy=self.legacy.expire(self.config.legacy_retention, now=t),
            approvals=self.gate.expire_stale(now=t),
            results=self.correlator.reclaim_results(self.config.result_retention, now=t),
            pickups=self.rendezvous.expire_parked(now=t),
            tracked=self.tracked_objects(),
        )
        if report.reclaimed:
            logger.info(
                f"Cleanup: {report.legacy} legacy requests, {report.approvals} approvals, "
                f"{report.results} results, {report.pickups} pickups reclaimed",
                extra={"op": "janitor"},
            )
        if report.tracked > self.config.memory_warning_threshold:
            logger.warning(
                f"High memory usage: {report.tracked} tracked objects (threshold "
                f"{self.config.memory_warning_threshold})",
                extra={"op": "janitor"},
            )
        return report

    def check_presence(self, now: Optional[float] = None) -> Optional[bool]:
        """Broadcast `agentStatus` when plugin connectivity changed; returns the new state or None."""
        presence = self.rendezvous.presence
        online = presence.is_online(now)
        if not presence.changed(online):
            return None
        self.broadcaster.publish("agentStatus", {"connected": online})
        if online:
            logger.info("Roblox Studio plugin connected", extra={"op": "presence", "status": "success"})
        else:
            logger.warning("Roblox Studio plugin disconnected", extra={"op": "presence"})
        return online

    async def run_sweeps(self) -> None:
        interval = max(0.05, self.config.janitor_interval)
        while True:
            await asyncio.sleep(interval)
            self.sweep()

    async def run_presence(self) -> None:
        interval = max(0.05, self.config.presence_interval)
        while True:
            self.check_presence()
            await asyncio.sleep(interval)
