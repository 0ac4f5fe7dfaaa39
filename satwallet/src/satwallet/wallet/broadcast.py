"""
Broadcast and confirmation tracking for finalized transactions.

Submission goes through the light-client relay. Once the relay accepts, the
transaction is applied to the tracker optimistically (its inputs become
locked, its change becomes pending). The loop then waits, purely on tracker
status events, until the network announces the transaction in its mempool or
a block confirms it. Events are watched from before submission, since the
light client may announce the transaction while the relay is still answering.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from contextlib import contextmanager

from loguru import logger

from satwallet.backends.base import LightClientRelay
from satwallet.backends.events import TransactionData
from satwallet.errors import BroadcastRejected, BroadcastTimeout
from satwallet.wallet.models import TxStatus, TxStatusChange
from satwallet.wallet.signing import FinalizedTransaction
from satwallet.wallet.tracker import UtxoTracker


class Broadcaster:
    def __init__(self, relay: LightClientRelay, tracker: UtxoTracker, timeout: float = 60.0):
        self.relay = relay
        self.tracker = tracker
        self.timeout = timeout
        # Txids whose optimistic apply is running; that PENDING is not an acknowledgement
        self._optimistic: set[str] = set()

    async def submit(self, finalized: FinalizedTransaction) -> None:
        """
        Hand the transaction to the relay and apply it optimistically.

        Raises:
            BroadcastRejected: the relay refused the transaction
            BroadcastError: the relay could not be reached
        """
        result = await self.relay.submit(finalized.hex)
        if not result.accepted:
            raise BroadcastRejected(finalized.txid, result.reason or "unknown reason")
        if result.txid and result.txid != finalized.txid:
            logger.warning(f"Relay reported txid {result.txid}, expected {finalized.txid}")

        self._optimistic.add(finalized.txid)
        try:
            self.tracker.apply_mempool_transaction(
                TransactionData.from_transaction(finalized.transaction)
            )
        finally:
            self._optimistic.discard(finalized.txid)
        logger.info(f"Transaction {finalized.txid} submitted to the network")

    async def broadcast(
        self, finalized: FinalizedTransaction, timeout: float | None = None
    ) -> TxStatusChange:
        """
        Submit and wait for the network to acknowledge the transaction.

        Returns the first PENDING (seen in mempool) or CONFIRMED status change.

        Raises:
            BroadcastRejected: the relay refused the transaction
            BroadcastTimeout: no acknowledgement within the timeout; the
                optimistic wallet state is kept
        """
        timeout = self.timeout if timeout is None else timeout
        with self._watch(finalized.txid) as seen:
            await self.submit(finalized)
            return await self._wait(finalized.txid, seen, timeout)

    @contextmanager
    def _watch(self, txid: str) -> Iterator[asyncio.Future[TxStatusChange]]:
        seen: asyncio.Future[TxStatusChange] = asyncio.get_running_loop().create_future()

        def on_status(change: TxStatusChange) -> None:
            if change.txid != txid or seen.done() or txid in self._optimistic:
                return
            if change.status in (TxStatus.PENDING, TxStatus.CONFIRMED):
                seen.set_result(change)

        self.tracker.subscribe(on_status)
        try:
            yield seen
        finally:
            self.tracker.unsubscribe(on_status)

    async def _wait(
        self, txid: str, seen: asyncio.Future[TxStatusChange], timeout: float
    ) -> TxStatusChange:
        try:
            change = await asyncio.wait_for(seen, timeout=timeout)
        except asyncio.TimeoutError as e:
            logger.warning(f"Transaction {txid} not seen by the network after {timeout:g}s")
            raise BroadcastTimeout(txid, timeout) from e

        if change.status == TxStatus.CONFIRMED:
            logger.info(f"Transaction {txid} confirmed at height {change.height}")
        else:
            logger.info(f"Transaction {txid} accepted into the mempool")
        return change
