"""
Tests for the NATS client wrapper, with nats.connect replaced by a stub.
"""

import asyncio

import pytest

from dataflow.adapters import nats_client
from dataflow.adapters.nats_client import NatsClient, NatsConfig, Topics


class StubConnection:
    def __init__(self):
        self.is_connected = True
        self.is_closed = False
        self.subjects: list[str] = []
        self.drains = 0

    async def subscribe(self, subject: str):
        self.subjects.append(subject)
        return object()

    async def drain(self) -> None:
        self.drains += 1
        self.is_connected = False
        self.is_closed = True


@pytest.fixture
def connections(monkeypatch):
    made = []

    async def fake_connect(**kwargs):
        await asyncio.sleep(0.01)
        conn = StubConnection()
        made.append(conn)
        return conn

    monkeypatch.setattr(nats_client.nats, "connect", fake_connect)
    return made


def test_concurrent_subscribes_share_one_connection(connections):
    async def scenario():
        client = NatsClient(NatsConfig(servers=["nats://test:4222"]))
        await asyncio.gather(
            client.subscribe(Topics.candles("ES", "5m")),
            client.subscribe(Topics.all_tickers()),
        )
        return client

    client = asyncio.run(scenario())

    assert len(connections) == 1
    assert sorted(connections[0].subjects) == ["candles.ES.5m", "tickers.*"]
    assert client.is_connected


def test_close_drains_once(connections):
    async def scenario():
        client = NatsClient()
        await client.connect()
        await client.close()
        await client.close()
        return client

    client = asyncio.run(scenario())

    assert connections[0].drains == 1
    assert not client.is_connected


def test_close_skips_drain_when_connection_already_closed(connections):
    async def scenario():
        client = NatsClient()
        await client.connect()
        connections[0].is_closed = True
        await client.close()
        return client

    client = asyncio.run(scenario())

    assert connections[0].drains == 0
    assert not client.is_connected


def test_close_without_connect_is_noop(connections):
    asyncio.run(NatsClient().close())

    assert connections == []


def test_topic_names_are_sanitized():
    assert Topics.candles("ES.H24", "5m") == "candles.ES_H24.5m"
    assert Topics.tickers("BTC/USDT") == "tickers.BTC_USDT"
