"""
Tests for light-client event parsing and the in-process event feed.
"""

from __future__ import annotations

import asyncio
import json

import pytest
from pydantic import ValidationError

from satwallet.backends.events import (
    BlockConnected,
    BlockDisconnected,
    ConnectionStatus,
    EventFeed,
    TransactionData,
    TransactionSeen,
    parse_event,
)

HASH_A = "aa" * 32
HASH_B = "bb" * 32


class TestParseEvent:
    def test_block_connected(self):
        event = parse_event(
            json.dumps(
                {
                    "type": "block_connected",
                    "height": 100,
                    "hash": HASH_A.upper(),
                    "parent_hash": HASH_B,
                    "transactions": [
                        {
                            "txid": HASH_B,
                            "inputs": [{"txid": HASH_A, "vout": 1}],
                            "outputs": [{"value": 5000, "script": "0014" + "AB" * 20}],
                        }
                    ],
                }
            )
        )
        assert isinstance(event, BlockConnected)
        assert event.hash == HASH_A
        assert event.transactions[0].inputs[0].vout == 1
        assert event.transactions[0].outputs[0].script == "0014" + "ab" * 20

    def test_block_disconnected(self):
        event = parse_event({"type": "block_disconnected", "height": 100, "hash": HASH_A})
        assert isinstance(event, BlockDisconnected)

    def test_transaction_seen(self):
        event = parse_event(
            {"type": "transaction_seen", "txid": HASH_A, "outputs": [{"value": 1, "script": "51"}]}
        )
        assert isinstance(event, TransactionSeen)
        assert event.inputs == []

    def test_connection_status(self):
        event = parse_event(b'{"type": "connection_status", "connected": false}')
        assert isinstance(event, ConnectionStatus)
        assert event.peers == 0
        assert event.reason is None

    def test_unknown_type(self):
        with pytest.raises(ValidationError):
            parse_event({"type": "reorg", "height": 1})

    def test_bad_hash(self):
        with pytest.raises(ValidationError):
            parse_event({"type": "block_disconnected", "height": 1, "hash": "xyz"})

    def test_negative_value(self):
        with pytest.raises(ValidationError):
            parse_event(
                {
                    "type": "transaction_seen",
                    "txid": HASH_A,
                    "outputs": [{"value": -1, "script": ""}],
                }
            )

    def test_invalid_json(self):
        with pytest.raises(ValueError):
            parse_event("{not json")


class TestTransactionData:
    @pytest.mark.asyncio
    async def test_from_raw(self, finalized):
        data = TransactionData.from_raw(finalized.hex)
        assert data.txid == finalized.txid
        assert [o.value for o in data.outputs] == [40_000, 9_000]
        assert len(data.inputs) == 1


class TestEventFeed:
    @pytest.mark.asyncio
    async def test_iterates_until_closed(self):
        feed = EventFeed()
        events = [
            ConnectionStatus(connected=True, peers=3),
            BlockDisconnected(height=5, hash=HASH_A),
        ]
        for event in events:
            await feed.put(event)
        feed.close()

        received = [event async for event in feed]
        assert received == events
        assert feed.closed

    @pytest.mark.asyncio
    async def test_consumer_waits_for_producer(self):
        feed = EventFeed()
        received: list = []

        async def consume() -> None:
            async for event in feed:
                received.append(event)

        task = asyncio.create_task(consume())
        await asyncio.sleep(0)
        feed.put_nowait(ConnectionStatus(connected=True))
        await asyncio.sleep(0)
        feed.close()
        await asyncio.wait_for(task, timeout=1)

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_put_after_close(self):
        feed = EventFeed()
        feed.close()
        feed.close()
        with pytest.raises(RuntimeError):
            await feed.put(ConnectionStatus(connected=False))
        with pytest.raises(RuntimeError):
            feed.put_nowait(ConnectionStatus(connected=False))
