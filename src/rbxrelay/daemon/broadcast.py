"""Fire-and-forget event fan-out to dashboard subscribers (WebSocket)."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..util.time import utc_now_iso


BROADCAST_EVENTS = (
    "approvalRequest",
    "approvalProcessed",
    "whitelistUpdate",
    "autoAcceptUpdate",
    "strictModeUpdate",
    "log",
    "agentStatus",
)


@dataclass(frozen=True)
class Subscription:
    sub_id: str
    q: "asyncio.Queue[Optional[Dict[str, Any]]]"


class EventBroadcaster:
    def __init__(self, *, max_queue: int = 512) -> None:
        self._subs: Dict[str, Subscription] = {}
        self._seq = 0
        self._max_queue = max(1, int(max_queue))
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    @property
    def subscriber_count(self) -> int:
        return len(self._subs)

    def subscribe(self) -> Subscription:
        self._seq += 1
        sub = Subscription(sub_id=f"s{self._seq:x}", q=asyncio.Queue(maxsize=self._max_queue))
        self._subs[sub.sub_id] = sub
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        self._subs.pop(sub.sub_id, None)
        self._signal_close(sub.q)

    @staticmethod
    def _signal_close(q: "asyncio.Queue[Optional[Dict[str, Any]]]") -> None:
        # Queue is full: drop buffered items so the consumer can observe the close signal.
        try:
            while True:
                q.get_nowait()
        except asyncio.QueueEmpty:
            pass
        q.put_nowait(None)

    def publish(self, event: str, data: Any = None) -> None:
        """Queue `event` for every subscriber. Never blocks, never raises into the caller."""
        loop = self._loop
        if loop is not None and not loop.is_closed():
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is not loop:
                loop.call_soon_threadsafe(self._publish_now, event, data)
                return
        self._publish_now(event, data)

    def _publish_now(self, event: str, data: Any) -> None:
        msg = {"event": event, "data": data, "ts": utc_now_iso()}
        for sub in list(self._subs.values()):
            try:
                sub.q.put_nowait(msg)
            except asyncio.QueueFull:
                # Slow consumer: close it rather than let the relay block on it.
                self._subs.pop(sub.sub_id, None)
                self._signal_close(sub.q)


class BroadcastLogHandler(logging.Handler):
    """Forward relay log records to dashboards as `log` events."""

    _TYPES = {"INFO": "info", "WARNING": "warning", "ERROR": "error", "CRITICAL": "error"}

    def __init__(self, broadcaster: EventBroadcaster, level: int = logging.INFO) -> None:
        super().__init__(level=level)
        self._broadcaster = broadcaster

    def emit(self, record: logging.LogRecord) -> None:
        try:
            stamp = time.strftime("%H:%M:%S", time.localtime(record.created))
            kind = self._TYPES.get(record.levelname, "info")
            if kind == "info" and getattr(record, "status", "") == "success":
                kind = "success"
            self._broadcaster.publish("log", {"type": kind, "message": f"[{stamp}] {record.getMessage()}"})
        except Exception:
            self.handleError(record)
