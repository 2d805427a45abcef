from __future__ import annotations

import logging

from pyrite_sfu.rtc.retry import IceRetryPolicy, PendingQueue

from .fakes import settle


class Clock:
    def __init__(self):
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_pending_queue_drops_stale_messages(caplog):
    clock = Clock()
    queue = PendingQueue(stale_after=5.0, clock=clock)
    queue.push({"type": "offer", "id": "old"})
    clock.now += 4
    queue.push({"type": "ice", "id": "fresh"})
    clock.now += 2

    caplog.set_level(logging.WARNING)
    assert [m["id"] for m in queue.drain()] == ["fresh"]
    assert "dropped stale type=offer id=old" in caplog.text
    assert len(queue) == 0
    assert queue.drain() == []


def test_pending_queue_keeps_arrival_order():
    queue = PendingQueue(stale_after=5.0, clock=Clock())
    for i in range(3):
        queue.push({"type": "ice", "id": str(i)})
    assert [m["id"] for m in queue.drain()] == ["0", "1", "2"]


async def test_ice_retry_backoff_and_ceiling():
    policy = IceRetryPolicy(max_attempts=2, base_delay=0)
    fired = []

    def retry():
        fired.append(policy.attempts("s"))

    policy.on_state("s", "failed", retry)
    await settle()
    policy.on_state("s", "failed", retry)
    await settle()
    policy.on_state("s", "failed", retry)
    await settle()

    assert fired == [1, 2]
    assert policy.attempts("s") == 2

    policy.on_state("s", "connected", retry)
    assert policy.attempts("s") == 0
    policy.on_state("s", "failed", retry)
    await settle()
    assert fired == [1, 2, 1]


async def test_ice_retry_ignores_failure_while_scheduled():
    policy = IceRetryPolicy(max_attempts=3, base_delay=60)
    fired = []
    policy.on_state("s", "failed", lambda: fired.append(True))
    policy.on_state("s", "failed", lambda: fired.append(True))
    assert policy.attempts("s") == 1

    policy.forget("s")
    await settle()
    assert fired == []
    assert policy.attempts("s") == 0


async def test_ice_retry_other_states_are_ignored():
    policy = IceRetryPolicy(max_attempts=3, base_delay=0)
    for state in ("new", "checking", "disconnected", "closed"):
        policy.on_state("s", state, lambda: None)
    assert policy.attempts("s") == 0
