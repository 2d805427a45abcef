"""Retry policies for stream setup.

Two independent mechanisms:

- `PendingQueue` holds down-stream messages (offers, ICE) that arrive for
  streams the session can't accept yet, because the `joined` reply hasn't
  been processed. They are replayed once, in arrival order, when the session
  becomes ready; anything older than the staleness window is dropped.
- `IceRetryPolicy` reacts to `iceConnectionState == "failed"` with an
  exponential backoff and a small attempt ceiling. Once the ceiling is hit
  the stream is left alone; the session is never torn down from here.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List


logger = logging.getLogger(__name__)


@dataclass
class PendingMessage:
    message: Dict[str, Any]
    timestamp: float


class PendingQueue:
    def __init__(self, stale_after: float = 5.0, clock: Callable[[], float] = time.monotonic):
        self.stale_after = stale_after
        self._clock = clock
        self._items: Deque[PendingMessage] = deque()

    def __len__(self) -> int:
        return len(self._items)

    def push(self, message: Dict[str, Any]) -> None:
        logger.debug("pending queued type=%s id=%s", message.get("type"), message.get("id"))
        self._items.append(PendingMessage(message=message, timestamp=self._clock()))

    def drain(self) -> List[Dict[str, Any]]:
        """Remove and return the fresh messages, oldest first."""
        now = self._clock()
        fresh: List[Dict[str, Any]] = []
        while self._items:
            item = self._items.popleft()
            if now - item.timestamp > self.stale_after:
                logger.warning(
                    "pending dropped stale type=%s id=%s age=%.1fs",
                    item.message.get("type"),
                    item.message.get("id"),
                    now - item.timestamp,
                )
                continue
            fresh.append(item.message)
        return fresh

    def clear(self) -> None:
        self._items.clear()


class IceRetryPolicy:
    def __init__(self, max_attempts: int = 3, base_delay: float = 1.0):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._attempts: Dict[str, int] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}

    def attempts(self, stream_id: str) -> int:
        return self._attempts.get(stream_id, 0)

    def on_state(self, stream_id: str, state: str, retry: Callable[[], None]) -> None:
        """Feed an ICE connection state; `retry` runs after the backoff."""
        if state in ("connected", "completed"):
            if stream_id in self._attempts:
                logger.debug("ice retry reset id=%s", stream_id)
            self._attempts.pop(stream_id, None)
            self._cancel_timer(stream_id)
            return

        if state != "failed":
            return

        if stream_id in self._timers:
            logger.debug("ice retry already scheduled id=%s", stream_id)
            return

        attempt = self._attempts.get(stream_id, 0)
        if attempt >= self.max_attempts:
            logger.debug("ice retry abandoned id=%s attempts=%s", stream_id, attempt)
            return

        self._attempts[stream_id] = attempt + 1
        delay = self.base_delay * (2 ** attempt)
        logger.info("ice failed id=%s retry=%s/%s in %.1fs", stream_id, attempt + 1, self.max_attempts, delay)

        def _fire() -> None:
            self._timers.pop(stream_id, None)
            retry()

        self._timers[stream_id] = asyncio.get_running_loop().call_later(delay, _fire)

    def forget(self, stream_id: str) -> None:
        self._attempts.pop(stream_id, None)
        self._cancel_timer(stream_id)

    def clear(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._attempts.clear()

    def _cancel_timer(self, stream_id: str) -> None:
        handle = self._timers.pop(stream_id, None)
        if handle is not None:
            handle.cancel()
