"""
Light-client event models.

Events are delivered by the external light-client engine, in causal order,
either in-process through an EventFeed or as JSON lines carrying a "type"
discriminator.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter, field_validator
from satcore.tx import Transaction, deserialize_transaction


def _validate_hash(v: str) -> str:
    v = v.lower()
    if len(v) != 64:
        raise ValueError("Hash must be 64 hex characters")
    bytes.fromhex(v)
    return v


class TxInputRef(BaseModel):
    """Outpoint consumed by a transaction input."""

    txid: str
    vout: int = Field(..., ge=0)

    @field_validator("txid")
    @classmethod
    def validate_txid(cls, v: str) -> str:
        return _validate_hash(v)


class TxOutputData(BaseModel):
    value: int = Field(..., ge=0)
    script: str = Field(..., description="scriptPubKey hex")

    @field_validator("script")
    @classmethod
    def validate_script(cls, v: str) -> str:
        bytes.fromhex(v)
        return v.lower()


class TransactionData(BaseModel):
    txid: str
    inputs: list[TxInputRef] = Field(default_factory=list)
    outputs: list[TxOutputData] = Field(default_factory=list)

    @field_validator("txid")
    @classmethod
    def validate_txid(cls, v: str) -> str:
        return _validate_hash(v)

    @classmethod
    def from_transaction(cls, tx: Transaction) -> TransactionData:
        return cls(
            txid=tx.txid,
            inputs=[TxInputRef(txid=i.txid, vout=i.vout) for i in tx.inputs],
            outputs=[TxOutputData(value=o.value, script=o.script_pubkey.hex()) for o in tx.outputs],
        )

    @classmethod
    def from_raw(cls, raw_hex: str) -> TransactionData:
        return cls.from_transaction(deserialize_transaction(bytes.fromhex(raw_hex)))


class BlockConnected(BaseModel):
    type: Literal["block_connected"] = "block_connected"
    height: int = Field(..., ge=0)
    hash: str
    parent_hash: str
    transactions: list[TransactionData] = Field(default_factory=list)

    @field_validator("hash", "parent_hash")
    @classmethod
    def validate_hashes(cls, v: str) -> str:
        return _validate_hash(v)


class BlockDisconnected(BaseModel):
    type: Literal["block_disconnected"] = "block_disconnected"
    height: int = Field(..., ge=0)
    hash: str

    @field_validator("hash")
    @classmethod
    def validate_hash(cls, v: str) -> str:
        return _validate_hash(v)


class TransactionSeen(TransactionData):
    """A transaction accepted into the light client's mempool view."""

    type: Literal["transaction_seen"] = "transaction_seen"


class ConnectionStatus(BaseModel):
    type: Literal["connection_status"] = "connection_status"
    connected: bool
    peers: int = Field(default=0, ge=0)
    reason: str | None = None


LightClientEvent = Annotated[
    BlockConnected | BlockDisconnected | TransactionSeen | ConnectionStatus,
    Field(discriminator="type"),
]

_event_adapter: TypeAdapter[Any] = TypeAdapter(LightClientEvent)


def parse_event(data: str | bytes | dict[str, Any]) -> LightClientEvent:
    """Parse one event from a JSON document or an already-decoded dict."""
    if isinstance(data, (str, bytes)):
        data = json.loads(data)
    return _event_adapter.validate_python(data)


class EventFeed:
    """
    In-process event channel between the light-client engine and the wallet.

    The producer calls `put()`; the wallet's single consumer task iterates
    with `async for`. Iteration ends after `close()` once queued events drain.
    """

    _CLOSED = object()

    def __init__(self, maxsize: int = 0):
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    async def put(self, event: LightClientEvent) -> None:
        if self._closed:
            raise RuntimeError("Event feed is closed")
        await self._queue.put(event)

    def put_nowait(self, event: LightClientEvent) -> None:
        if self._closed:
            raise RuntimeError("Event feed is closed")
        self._queue.put_nowait(event)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(self._CLOSED)

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aiter__(self) -> AsyncIterator[LightClientEvent]:
        while True:
            item = await self._queue.get()
            if item is self._CLOSED:
                return
            yield item
