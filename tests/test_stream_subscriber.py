"""
Tests for the reconnecting stream subscriber.
"""

import asyncio

from dataflow.errors import MalformedMessage, StreamError
from dataflow.stream import BackoffPolicy, StreamState, StreamSubscriber

from fakes import FakeTransport, wait_until

FAST = BackoffPolicy(base_delay=0.01, factor=2.0, max_delay=0.04, jitter=0.2, degraded_after=2)


def parse(raw):
    if raw == "ack":
        return None
    if raw == "garbage":
        raise MalformedMessage("not a number")
    return int(raw)


def make_subscriber(transport, received, **kwargs):
    kwargs.setdefault("backoff", FAST)
    kwargs.setdefault("rng", lambda: 0.0)
    return StreamSubscriber(transport, "prices", parse, received.append, **kwargs)


def test_delivers_parsed_messages_in_order():
    async def scenario():
        transport = FakeTransport()
        received = []
        sub = make_subscriber(transport, received)
        sub.start()
        await wait_until(lambda: sub.state is StreamState.OPEN)

        conn = transport.connection("prices")
        for raw in ["1", "ack", "garbage", "2", "3"]:
            conn.push(raw)
        await wait_until(lambda: len(received) == 3)

        sub.unsubscribe()
        await sub.wait_closed()
        return received, sub

    received, sub = asyncio.run(scenario())

    assert received == [1, 2, 3]
    assert sub.messages_dropped == 1
    assert sub.messages_received == 3
    assert sub.state is StreamState.CLOSED


def test_reconnects_after_remote_close_and_keeps_delivering():
    async def scenario():
        transport = FakeTransport()
        received = []
        sub = make_subscriber(transport, received)
        sub.start()
        await wait_until(lambda: sub.state is StreamState.OPEN)

        first = transport.connection("prices")
        first.push("1")
        first.drop()
        await wait_until(lambda: len(transport.connections) == 2 and sub.state is StreamState.OPEN)

        transport.connection("prices").push("2")
        await wait_until(lambda: len(received) == 2)
        sub.unsubscribe()
        await sub.wait_closed()
        return received, sub, first

    received, sub, first = asyncio.run(scenario())

    assert received == [1, 2]
    assert first.closed
    assert sub.last_delay == FAST.base_delay
    assert sub.attempts == 0


def test_transport_errors_count_as_failed_attempts():
    async def scenario():
        transport = FakeTransport()
        received = []
        sub = make_subscriber(transport, received)
        sub.start()
        await wait_until(lambda: sub.state is StreamState.OPEN)
        transport.connection("prices").push(StreamError("reset by peer"))
        await wait_until(lambda: len(transport.connections) == 2)
        sub.unsubscribe()
        await sub.wait_closed()
        return sub

    sub = asyncio.run(scenario())

    assert sub.state is StreamState.CLOSED


def test_degraded_after_consecutive_failures_then_recovers():
    async def scenario():
        transport = FakeTransport(fail_opens=3)
        received = []
        changes = []
        sub = make_subscriber(
            transport,
            received,
            on_state_change=lambda s: changes.append((s.state, s.degraded)),
        )
        sub.start()
        await wait_until(lambda: sub.degraded)
        degraded_attempts = sub.attempts
        await wait_until(lambda: sub.state is StreamState.OPEN)
        sub.unsubscribe()
        await sub.wait_closed()
        return sub, changes, degraded_attempts, transport

    sub, changes, degraded_attempts, transport = asyncio.run(scenario())

    assert degraded_attempts >= FAST.degraded_after
    assert (StreamState.ERRORED, True) in changes
    assert changes[-1] == (StreamState.OPEN, False)
    assert not sub.degraded
    assert len(transport.opened) == 4


def test_backoff_delays_grow_between_failures():
    async def scenario():
        transport = FakeTransport(fail_opens=10)
        sub = make_subscriber(transport, [])
        delays = []

        def record(s):
            if s.last_delay is not None and s.state is StreamState.CONNECTING:
                delays.append(s.last_delay)

        sub.on_state_change = record
        sub.start()
        await wait_until(lambda: len(delays) >= 4)
        sub.unsubscribe()
        await sub.wait_closed()
        return delays

    delays = asyncio.run(scenario())

    assert delays[:4] == [0.01, 0.02, 0.04, 0.04]


def test_unsubscribe_stops_callbacks_immediately():
    async def scenario():
        transport = FakeTransport()
        received = []
        sub = make_subscriber(transport, received)
        sub.start()
        await wait_until(lambda: sub.state is StreamState.OPEN)
        conn = transport.connection("prices")

        conn.push("1")
        sub.unsubscribe()
        sub.unsubscribe()
        conn.push("2")
        await sub.wait_closed()
        return received, conn, sub

    received, conn, sub = asyncio.run(scenario())

    assert received == []
    assert conn.closed
    assert sub.state is StreamState.CLOSED


def test_unsubscribe_cancels_reconnect_sleep():
    async def scenario():
        transport = FakeTransport(fail_opens=100)
        slow = BackoffPolicy(base_delay=30.0, max_delay=30.0)
        sub = make_subscriber(transport, [], backoff=slow)
        sub.start()
        await wait_until(lambda: sub.attempts == 1)
        sub.unsubscribe()
        await asyncio.wait_for(sub.wait_closed(), timeout=1.0)
        return sub, transport

    sub, transport = asyncio.run(scenario())

    assert sub.finished
    assert len(transport.opened) == 1


def test_callback_errors_do_not_break_the_stream():
    async def scenario():
        transport = FakeTransport()
        received = []

        def callback(item):
            if item == 1:
                raise RuntimeError("consumer bug")
            received.append(item)

        sub = StreamSubscriber(transport, "prices", parse, callback, backoff=FAST)
        sub.start()
        await wait_until(lambda: sub.state is StreamState.OPEN)
        conn = transport.connection("prices")
        conn.push("1")
        conn.push("2")
        await wait_until(lambda: received == [2])
        sub.unsubscribe()
        await sub.wait_closed()
        return sub

    sub = asyncio.run(scenario())

    assert sub.state is StreamState.CLOSED
    assert len(sub.get_metrics()) > 0


def test_parser_exceptions_drop_the_message_not_the_connection():
    def fragile_parse(raw):
        if raw == "null-field":
            raise AttributeError("'NoneType' object has no attribute 'replace'")
        return parse(raw)

    async def scenario():
        transport = FakeTransport()
        received = []
        sub = StreamSubscriber(transport, "prices", fragile_parse, received.append, backoff=FAST)
        sub.start()
        await wait_until(lambda: sub.state is StreamState.OPEN)
        conn = transport.connection("prices")
        for raw in ["1", "null-field", "1.5", "2"]:
            conn.push(raw)
        await wait_until(lambda: received == [1, 2])
        state = sub.state
        sub.unsubscribe()
        await sub.wait_closed()
        return transport, sub, state, conn

    transport, sub, state, conn = asyncio.run(scenario())

    assert state is StreamState.OPEN
    assert transport.opened == ["prices"]
    assert sub.messages_dropped == 2
    assert sub.attempts == 0
    assert conn.closed


def test_unsubscribe_before_start_is_terminal():
    async def scenario():
        transport = FakeTransport()
        sub = make_subscriber(transport, [])
        sub.unsubscribe()
        sub.start()
        await asyncio.sleep(0.01)
        return transport, sub

    transport, sub = asyncio.run(scenario())

    assert transport.opened == []
    assert sub.state is StreamState.CLOSED
