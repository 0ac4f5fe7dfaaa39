"""
UTXO tracker: applies light-client events to the coin store.

Every event is applied as one store batch together with the matching chain
cursor update, so a crash or write failure leaves the previous block's state
intact and the same event can simply be delivered again.

Rollback policy: a coin whose confirming block is disconnected goes back to
pending (birth height None) while its transaction is still in the node's
mempool view, and is deleted otherwise. The same goes for spends confirmed in
a disconnected block: the coin stays locked by a spender that is back in the
mempool, and is released otherwise.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager

from loguru import logger
from satcore.constants import DEFAULT_REORG_WINDOW

from satwallet.backends.events import BlockConnected, BlockDisconnected, TransactionData
from satwallet.errors import RecoverableSyncError
from satwallet.storage.coin_store import CoinStore
from satwallet.wallet.cursor import ChainCursor, CursorState, HeaderSource, Rollback
from satwallet.wallet.keychain import Keychain
from satwallet.wallet.models import (
    Balance,
    Coin,
    Outpoint,
    TxRecord,
    TxStatus,
    TxStatusChange,
)

RESCAN_HEIGHT_KEY = "rescan_height"

# Answers whether the node still holds a transaction in its mempool (None = unknown)
MempoolView = Callable[[str], bool | None]
StatusListener = Callable[[TxStatusChange], None]


class UtxoTracker:
    def __init__(
        self,
        store: CoinStore,
        keychain: Keychain,
        window: int = DEFAULT_REORG_WINDOW,
        mempool_view: MempoolView | None = None,
        header_source: HeaderSource | None = None,
    ):
        self.store = store
        self.keychain = keychain
        self.mempool_view = mempool_view
        self.header_source = header_source
        self.cursor = ChainCursor(window=window, headers=store.load_headers())
        self.sync_error: RecoverableSyncError | None = None
        pending_rescan = store.get_meta(RESCAN_HEIGHT_KEY)
        if pending_rescan is not None:
            self.sync_error = RecoverableSyncError(
                "Rescan required by an earlier sync error", rescan_height=int(pending_rescan)
            )

        # Unconfirmed wallet transactions announced by the light client
        self._mempool: set[str] = {r.txid for r in store.list_txs() if r.height is None}
        self._listeners: list[StatusListener] = []

        tip = self.cursor.tip
        if tip is not None:
            logger.info(f"Tracker resumed at height {tip.height} ({tip.hash})")

    @property
    def tip_height(self) -> int | None:
        return self.cursor.height

    @property
    def rescan_required(self) -> bool:
        return self.sync_error is not None

    def subscribe(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: StatusListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, changes: list[TxStatusChange]) -> None:
        for change in changes:
            logger.debug(f"Transaction {change.txid} is now {change.status.value}")
            for listener in list(self._listeners):
                listener(change)

    @contextmanager
    def _update(self) -> Iterator[None]:
        """One atomic store batch; the in-memory cursor and keychain are restored if it fails."""
        with self.store.snapshot():
            saved = self.cursor.headers
            used = self.keychain.checkpoint()
            try:
                with self.store.batch():
                    yield
            except BaseException:
                self.cursor.restore(saved)
                self.keychain.restore(used)
                raise

    # Event application

    def apply_block(self, event: BlockConnected) -> None:
        """
        Connect a block: advance the cursor (rolling back first on a fork) and
        record every wallet output created and every tracked coin spent.

        Raises:
            RecoverableSyncError: the block cannot be connected without a rescan
            StoreIoError: nothing was applied; deliver the block again
        """
        if self.sync_error is not None:
            logger.warning(
                f"Ignoring block {event.height}: rescan from height "
                f"{self.sync_error.rescan_height} required"
            )
            return

        if self.cursor.is_known(event.height, event.hash):
            logger.debug(f"Block {event.hash} at height {event.height} already applied")
            return

        if self.cursor.is_stale(event.height):
            logger.warning(
                f"Ignoring block {event.hash} at height {event.height}: "
                f"below the reorg window (floor {self.cursor.floor})"
            )
            return

        changes: list[TxStatusChange] = []
        try:
            with self._update():
                rollback = self.cursor.advance(
                    event.height, event.hash, event.parent_hash, self.header_source
                )
                if rollback is not None and rollback.disconnected:
                    changes.extend(self._apply_rollback(rollback))

                for tx in event.transactions:
                    change = self._apply_transaction(tx, event.height)
                    if change is not None:
                        changes.append(change)

                self.store.save_header(event.height, event.hash)
                self.store.prune_headers(event.height - self.cursor.window + 1)
        except RecoverableSyncError as e:
            self.sync_error = e
            self.store.set_meta(RESCAN_HEIGHT_KEY, str(e.rescan_height))
            logger.error(f"Chain sync error: {e} (rescan from height {e.rescan_height})")
            raise

        for change in changes:
            if change.status == TxStatus.CONFIRMED:
                self._mempool.discard(change.txid)

        logger.info(
            f"Block {event.height} connected ({event.hash}), "
            f"{len(event.transactions)} transaction(s)"
        )
        self._notify(changes)

    def apply_mempool_transaction(self, tx: TransactionData) -> bool:
        """
        Record an unconfirmed transaction. Returns True if it touches the wallet.
        """
        with self._update():
            change = self._apply_transaction(tx, None)

        if change is None:
            return False

        self._mempool.add(tx.txid)
        self._notify([change])
        return True

    def disconnect_block(self, event: BlockDisconnected) -> None:
        changes: list[TxStatusChange] = []
        with self._update():
            rollback = self.cursor.disconnect(event.height, event.hash)
            if rollback is None:
                return
            changes = self._apply_rollback(rollback)
        logger.info(f"Block {event.height} disconnected ({event.hash})")
        self._notify(changes)

    def rollback(self, height: int) -> None:
        """Roll the wallet back so that `height` is the new tip."""
        changes: list[TxStatusChange] = []
        with self._update():
            rollback = self.cursor.reconcile(height)
            changes = self._apply_rollback(rollback)
        self._notify(changes)

    def begin_rescan(self, start_height: int) -> None:
        """
        Prepare for the light client to replay blocks from start_height.

        Chain state at or above start_height is reverted (coins go back to
        pending), the cursor forgets those headers and block processing resumes.
        """
        changes: list[TxStatusChange] = []
        with self._update():
            reverted = [h for h in self.cursor.headers if h.height >= start_height]
            rollback = Rollback(ancestor_height=start_height - 1, disconnected=reverted[::-1])
            changes = self._apply_rollback(rollback)
            self.cursor.restore([h for h in self.cursor.headers if h.height < start_height])
            self.store.delete_meta(RESCAN_HEIGHT_KEY)

        self.sync_error = None
        logger.info(f"Rescan started from height {start_height}")
        self._notify(changes)

    # Internals (run inside a store batch)

    def _apply_rollback(self, rollback: Rollback) -> list[TxStatusChange]:
        height = rollback.rollback_height
        self.cursor.state = CursorState.ROLLING_BACK

        reverted_txs = [
            r for r in self.store.list_txs() if r.height is not None and r.height >= height
        ]
        reverted_coins, unconfirmed_spends = self.store.rollback(height)

        kept: set[str] = set()
        dropped: set[str] = set()
        for txid in {c.outpoint.txid for c in reverted_coins} | {r.txid for r in reverted_txs}:
            if self._still_in_mempool(txid):
                kept.add(txid)
            else:
                dropped.add(txid)

        for coin in reverted_coins:
            if coin.outpoint.txid in dropped:
                self.store.delete(coin.outpoint)
                logger.debug(f"Coin {coin.outpoint} removed by rollback")
            else:
                logger.debug(f"Coin {coin.outpoint} returned to pending by rollback")

        for coin in unconfirmed_spends:
            if coin.spent_txid in dropped:
                self.store.clear_spent(coin.outpoint)
                logger.debug(f"Spend of {coin.outpoint} by {coin.spent_txid} cleared by rollback")
            else:
                logger.debug(f"Spend of {coin.outpoint} by {coin.spent_txid} back to pending")

        changes: list[TxStatusChange] = []
        for txid in sorted(kept):
            self._mempool.add(txid)
            changes.append(TxStatusChange(txid=txid, status=TxStatus.PENDING))
        for txid in sorted(dropped):
            self.store.delete_tx(txid)
            self._mempool.discard(txid)
            changes.append(TxStatusChange(txid=txid, status=TxStatus.REVERTED))

        self.cursor.resume()
        for tip in rollback.disconnected:
            logger.debug(f"Rolled back block {tip.hash} at height {tip.height}")
        return changes

    def _still_in_mempool(self, txid: str) -> bool:
        if self.mempool_view is not None:
            present = self.mempool_view(txid)
            if present is not None:
                return present
        # Transactions from disconnected blocks return to the node's mempool
        return True

    def _apply_transaction(self, tx: TransactionData, height: int | None) -> TxStatusChange | None:
        received = 0
        sent = 0
        relevant = False

        for vout, output in enumerate(tx.outputs):
            info = self.keychain.lookup(output.script)
            if info is None:
                continue
            relevant = True
            received += output.value
            self._record_output(tx.txid, vout, output.value, output.script, height)

        for inp in tx.inputs:
            coin = self.store.get(Outpoint(inp.txid, inp.vout))
            if coin is None:
                continue
            relevant = True
            sent += coin.value
            self._record_spend(coin, tx.txid, height)

        if not relevant:
            return None

        previous = self.store.get_tx(tx.txid)
        record_height = height
        if height is None and previous is not None and previous.height is not None:
            # A mempool re-announcement never unconfirms a transaction
            record_height = previous.height
        self.store.put_tx(
            TxRecord(txid=tx.txid, height=record_height, received=received, sent=sent)
        )

        if height is not None:
            if previous is None or previous.height is None:
                return TxStatusChange(txid=tx.txid, status=TxStatus.CONFIRMED, height=height)
            return None
        if record_height is None:
            return TxStatusChange(txid=tx.txid, status=TxStatus.PENDING)
        return None

    def _record_output(
        self, txid: str, vout: int, value: int, script: str, height: int | None
    ) -> None:
        outpoint = Outpoint(txid, vout)
        existing = self.store.get(outpoint)

        if existing is None:
            info = self.keychain.lookup(script)
            if info is None:
                raise ValueError(f"Script {script} is not watched by this wallet")
            coin = Coin(
                outpoint=outpoint,
                value=value,
                script=info.script,
                address=info.address,
                spend_script_template=self.keychain.spend_script_template(info),
                derivation_path=info.derivation_path,
                birth_height=height,
                is_change=info.is_change,
            )
            self.store.put(coin)
            self.keychain.mark_used(info.script)
            logger.debug(f"New coin {outpoint} ({value} sats) at height {height}")
            return

        if height is None or existing.birth_height == height:
            return

        if existing.birth_height is None:
            existing.birth_height = height
            self.store.put(existing)
            logger.debug(f"Coin {outpoint} confirmed at height {height}")
            return

        logger.warning(
            f"Coin {outpoint} already confirmed at height {existing.birth_height}; "
            f"ignoring height {height} without a rollback"
        )

    def _record_spend(self, coin: Coin, spending_txid: str, height: int | None) -> None:
        if coin.spent_txid is None:
            self.store.mark_spent(coin.outpoint, spending_txid, height)
            logger.debug(f"Coin {coin.outpoint} spent by {spending_txid} at height {height}")
            return

        if coin.spent_txid == spending_txid:
            if height is not None and coin.spent_height is None:
                self.store.mark_spent(coin.outpoint, spending_txid, height)
            return

        if height is None:
            logger.warning(
                f"Conflicting unconfirmed spend of {coin.outpoint} by {spending_txid} "
                f"(already spent by {coin.spent_txid}); keeping first seen"
            )
            return

        # A block confirmed a different spender: the earlier one was replaced
        logger.warning(
            f"Coin {coin.outpoint} spent by {spending_txid} in block {height}, "
            f"replacing {coin.spent_txid}"
        )
        self._drop_replaced(coin.spent_txid)
        self.store.mark_spent(coin.outpoint, spending_txid, height)

    def _drop_replaced(self, txid: str) -> None:
        """Forget an unconfirmed transaction that lost a double-spend race."""
        record = self.store.get_tx(txid)
        if record is not None and record.height is not None:
            return
        for created in self.store.coins_created_by(txid):
            if created.birth_height is None:
                self.store.delete(created.outpoint)
        for spent in self.store.coins_spent_by(txid):
            self.store.clear_spent(spent.outpoint)
        self.store.delete_tx(txid)
        self._mempool.discard(txid)

    # Read views

    def spendable(self, min_confirmations: int) -> list[Coin]:
        with self.store.snapshot():
            height = self.cursor.height
            if height is None:
                return []
            return self.store.list_spendable(min_confirmations, height)

    def balance(self, min_confirmations: int) -> Balance:
        balance = Balance()
        with self.store.snapshot():
            height = self.cursor.height
            coins = self.store.list_coins(include_spent=True)

        for coin in coins:
            if coin.is_spent:
                if coin.spent_height is None:
                    balance.locked += coin.value
                continue
            if coin.birth_height is None:
                balance.pending += coin.value
            elif height is not None and coin.is_spendable(min_confirmations, height):
                balance.confirmed += coin.value
            else:
                balance.immature += coin.value
        return balance

    @property
    def pending_txids(self) -> set[str]:
        return set(self._mempool)
