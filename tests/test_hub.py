import asyncio
import logging
import threading
import time

import pytest

from hub import Hub
from session import OutboundBuffer

from conftest import make_session


# -------------------- OutboundBuffer --------------------

def test_buffer_is_fifo_and_bounded():
    buf = OutboundBuffer(capacity=2)
    assert buf.try_put("a")
    assert buf.try_put("b")
    assert not buf.try_put("c")
    assert buf.drain_nowait() == ["a", "b"]
    assert len(buf) == 0


def test_buffer_rejects_puts_after_close_and_close_twice():
    buf = OutboundBuffer()
    buf.close()
    assert buf.closed
    assert not buf.try_put("late")
    with pytest.raises(RuntimeError):
        buf.close()


def test_buffer_get_drains_before_reporting_closed():
    async def scenario():
        buf = OutboundBuffer()
        buf.try_put("one")
        buf.close()
        return [await buf.get(), await buf.get()]

    assert asyncio.run(scenario()) == ["one", None]


def test_buffer_get_wakes_on_put_from_another_thread():
    async def scenario():
        buf = OutboundBuffer()
        timer = threading.Timer(0.02, buf.try_put, ("from-thread",))
        timer.start()
        try:
            return await asyncio.wait_for(buf.get(), 1.0)
        finally:
            timer.join()

    assert asyncio.run(scenario()) == "from-thread"


# -------------------- Hub --------------------

def test_register_then_unregister_closes_buffer_once():
    hub = Hub()
    session = make_session(hub, user_id=1)
    hub.register(session)
    assert hub.connected_sessions() == 1

    assert hub.unregister(session) is True
    assert session.outbound.closed
    assert hub.connected_sessions() == 0
    # further calls are no-ops and do not try to close again
    assert hub.unregister(session) is False
    assert hub.unregister(session) is False


def test_session_ids_are_monotonic():
    hub = Hub()
    ids = [hub.next_session_id() for _ in range(5)]
    assert ids == sorted(ids)
    assert len(set(ids)) == 5


def test_register_same_id_replaces_and_closes_displaced_buffer():
    hub = Hub()
    first = make_session(hub, user_id=1)
    second = make_session(hub, user_id=2)
    second.session_id = first.session_id
    hub.register(first)
    hub.register(second)

    assert hub.connected_sessions() == 1
    assert first.outbound.closed
    assert not second.outbound.closed
    assert hub.unregister(first) is False
    assert hub.unregister(second) is True


def test_register_is_idempotent_for_same_session():
    hub = Hub()
    session = make_session(hub, user_id=1)
    hub.register(session)
    hub.register(session)
    assert hub.connected_sessions() == 1
    assert not session.outbound.closed


def test_send_to_user_reaches_every_session_of_that_user_only():
    hub = Hub()
    a = make_session(hub, user_id=42)
    b = make_session(hub, user_id=42)
    other = make_session(hub, user_id=7)
    for s in (a, b, other):
        hub.register(s)

    assert hub.send_to_user(42, "P") == 2
    assert a.outbound.drain_nowait() == ["P"]
    assert b.outbound.drain_nowait() == ["P"]
    assert other.outbound.drain_nowait() == []


def test_slow_client_does_not_hold_back_other_sessions(caplog):
    hub = Hub()
    slow = make_session(hub, user_id=42)
    fast = make_session(hub, user_id=42)
    bystander = make_session(hub, user_id=5)
    for s in (slow, fast, bystander):
        hub.register(s)
    for i in range(256):
        assert slow.outbound.try_put(f"old-{i}")

    with caplog.at_level(logging.WARNING, logger="hub"):
        started = time.perf_counter()
        delivered = hub.send_to_user(42, "P")
        elapsed = time.perf_counter() - started

    assert delivered == 1
    assert elapsed < 0.01
    assert fast.outbound.drain_nowait() == ["P"]
    assert len(slow.outbound) == 256
    assert slow.dropped == 1
    assert "buffer full" in caplog.text
    assert len(bystander.outbound) == 0


def test_broadcast_all_and_send_to_session():
    hub = Hub()
    sessions = [make_session(hub, user_id=uid) for uid in (1, 2, 2)]
    for s in sessions:
        hub.register(s)

    assert hub.broadcast_all("hello") == 3
    assert hub.send_to_session(sessions[1].session_id, "direct") is True
    assert hub.send_to_session(999, "nobody") is False
    assert sessions[1].outbound.drain_nowait() == ["hello", "direct"]
    assert sessions[2].outbound.drain_nowait() == ["hello"]


def test_connected_users_counts_distinct_users():
    hub = Hub()
    for uid in (1, 1, 2, 3):
        hub.register(make_session(hub, user_id=uid))
    assert hub.connected_sessions() == 4
    assert hub.connected_users() == 3


def test_fan_out_from_many_threads_while_sessions_churn():
    hub = Hub()
    steady = make_session(hub, user_id=1)
    hub.register(steady)
    start = threading.Barrier(5, timeout=5)

    def sender():
        start.wait()
        for i in range(50):
            hub.send_to_user(1, f"p{i}")

    def churn():
        start.wait()
        for _ in range(50):
            s = make_session(hub, user_id=1)
            hub.register(s)
            hub.connected_users()
            hub.unregister(s)

    threads = [threading.Thread(target=sender) for _ in range(4)] + [threading.Thread(target=churn)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(5)

    assert not any(t.is_alive() for t in threads)
    assert len(steady.outbound) == 200
    assert hub.connected_sessions() == 1
