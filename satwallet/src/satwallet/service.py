"""
Wallet service.

Wires the coin store, keychain, tracker, selector, builder, signing
coordinator and broadcaster together. One task consumes light-client events
through `run()`; user operations (balance, history, send) read consistent
store snapshots and may run concurrently with it.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from loguru import logger

from satwallet.backends.base import LightClientRelay
from satwallet.backends.events import (
    BlockConnected,
    BlockDisconnected,
    ConnectionStatus,
    EventFeed,
    LightClientEvent,
    TransactionSeen,
)
from satwallet.backends.neutrino import fallback_fee_rate
from satwallet.config import WalletSettings
from satwallet.errors import RecoverableSyncError, WalletError
from satwallet.signers.base import ExternalSigner
from satwallet.storage.coin_store import CoinStore
from satwallet.wallet.broadcast import Broadcaster
from satwallet.wallet.builder import TransactionBuilder, UnsignedProposal
from satwallet.wallet.keychain import Keychain
from satwallet.wallet.models import Balance, TxRecord, TxStatusChange
from satwallet.wallet.selector import CoinSelector
from satwallet.wallet.signing import FinalizedTransaction, SigningCoordinator
from satwallet.wallet.tracker import UtxoTracker


@dataclass
class WalletStatus:
    network: str
    tip_height: int | None
    tip_hash: str | None
    cursor_state: str
    connected: bool
    peers: int
    rescan_required: bool
    rescan_height: int | None
    pending_transactions: int
    coin_count: int
    engine: dict[str, object] = field(default_factory=dict)


@dataclass
class SendResult:
    txid: str
    fee: int
    status: TxStatusChange | None  # None when not waiting for the network


class WalletService:
    def __init__(
        self,
        settings: WalletSettings,
        relay: LightClientRelay | None = None,
        signer: ExternalSigner | None = None,
        store: CoinStore | None = None,
    ):
        if not settings.xpub:
            raise WalletError("No account xpub configured (set SATWALLET_XPUB)")

        self.settings = settings
        self.relay = relay
        self.signer = signer

        if store is None:
            if settings.db_path is None:
                raise WalletError("No database path configured (set SATWALLET_DATA_DIR)")
            store = CoinStore(settings.db_path)
        self.store = store
        self.keychain = Keychain.from_xpub(
            settings.xpub,
            account_path=settings.account_path,
            network=settings.network,
            gap_limit=settings.gap_limit,
            store=self.store,
        )

        # Answers prefetched from the relay before an event that may roll back
        self._mempool_answers: dict[str, bool | None] = {}
        self._header_answers: dict[int, str | None] = {}

        self.tracker = UtxoTracker(
            self.store,
            self.keychain,
            window=settings.reorg_window,
            mempool_view=self._mempool_answers.get,
            header_source=self._header_answers.get if relay is not None else None,
        )
        self.selector = CoinSelector(
            fee_policy=settings.fee_policy, dust_threshold=settings.dust_threshold
        )
        self.builder = TransactionBuilder(
            self.tracker,
            self.keychain,
            selector=self.selector,
            fee_policy=settings.fee_policy,
            min_confirmations=settings.min_confirmations,
        )
        self.coordinator = (
            SigningCoordinator(signer, network=settings.network) if signer is not None else None
        )
        self.broadcaster = (
            Broadcaster(relay, self.tracker, timeout=settings.broadcast_timeout_sec)
            if relay is not None
            else None
        )

        self.connected = False
        self.peers = 0

    # Event consumption

    async def handle_event(self, event: LightClientEvent) -> None:
        """
        Apply one light-client event.

        Raises:
            RecoverableSyncError: the chain can only be recovered by a rescan
            StoreIoError: nothing was applied; the event may be delivered again
        """
        if isinstance(event, BlockConnected):
            await self._prefetch_for_block(event)
            self.tracker.apply_block(event)
        elif isinstance(event, BlockDisconnected):
            await self._prefetch_mempool(event.height)
            self.tracker.disconnect_block(event)
        elif isinstance(event, TransactionSeen):
            self.tracker.apply_mempool_transaction(event)
        elif isinstance(event, ConnectionStatus):
            self._update_connection(event)

    async def run(self, feed: EventFeed) -> None:
        """Consume events until the feed is closed."""
        async for event in feed:
            try:
                await self.handle_event(event)
            except RecoverableSyncError as e:
                # Reported through status(); block events are ignored until a rescan
                logger.error(f"Sync halted, rescan from height {e.rescan_height} required: {e}")
        logger.info("Event feed closed")

    def _update_connection(self, event: ConnectionStatus) -> None:
        if event.connected != self.connected:
            if event.connected:
                logger.info(f"Light client connected ({event.peers} peer(s))")
            else:
                logger.warning(f"Light client disconnected: {event.reason or 'no reason given'}")
        self.connected = event.connected
        self.peers = event.peers

    async def _prefetch_for_block(self, event: BlockConnected) -> None:
        self._header_answers.clear()
        self._mempool_answers.clear()
        cursor = self.tracker.cursor
        tip = cursor.tip
        if self.relay is None or tip is None or event.height > tip.height + 1:
            return
        if cursor.is_known(event.height, event.hash) or cursor.is_stale(event.height):
            return
        if event.height == tip.height + 1 and event.parent_hash == tip.hash:
            return

        if cursor.hash_at(event.height - 1) == event.parent_hash:
            # Replaces the blocks from its own height up
            await self._prefetch_mempool(event.height)
            return

        # Forks deeper: best-chain headers let the cursor find the common ancestor
        floor = cursor.floor or 0
        for height in range(event.height - 2, floor - 1, -1):
            block_hash = await self.relay.get_block_hash(height)
            self._header_answers[height] = block_hash
            if block_hash is not None and block_hash == cursor.hash_at(height):
                break

    async def _prefetch_mempool(self, from_height: int) -> None:
        """Ask the relay which confirmations at or above from_height are back in its mempool."""
        self._mempool_answers.clear()
        if self.relay is None:
            return
        for record in self.store.list_txs():
            if record.height is not None and record.height >= from_height:
                self._mempool_answers[record.txid] = await self.relay.in_mempool(record.txid)

    # Queries

    def balance(self) -> Balance:
        return self.tracker.balance(self.settings.min_confirmations)

    def history(self) -> list[TxRecord]:
        return self.store.list_txs()

    def receive_address(self) -> str:
        return self.keychain.next_receive().address

    async def status(self) -> WalletStatus:
        tip = self.tracker.cursor.tip
        sync_error = self.tracker.sync_error
        engine = await self.relay.get_status() if self.relay is not None else {}
        return WalletStatus(
            network=self.settings.network,
            tip_height=tip.height if tip else None,
            tip_hash=tip.hash if tip else None,
            cursor_state=self.tracker.cursor.state.value,
            connected=self.connected,
            peers=self.peers,
            rescan_required=sync_error is not None,
            rescan_height=sync_error.rescan_height if sync_error else None,
            pending_transactions=len(self.tracker.pending_txids),
            coin_count=len(self.store.list_coins()),
            engine=engine,
        )

    async def estimate_fee_rate(self, target_blocks: int | None = None) -> float:
        target = target_blocks or self.settings.fee_target_blocks
        if self.relay is None:
            rate: float = fallback_fee_rate(target)
        else:
            rate = await self.relay.estimate_fee(target)
        return max(rate, self.settings.fee_policy.min_fee_rate)

    # Sending

    async def build_payment(
        self, address: str, amount: int, fee_rate: float | None = None
    ) -> UnsignedProposal:
        if fee_rate is None:
            fee_rate = await self.estimate_fee_rate()
        return self.builder.build(address, amount, fee_rate)

    async def sign(self, proposal: UnsignedProposal) -> FinalizedTransaction:
        if self.coordinator is None:
            raise WalletError("No signer configured")
        return await self.coordinator.sign(proposal)

    async def send(
        self,
        address: str,
        amount: int,
        fee_rate: float | None = None,
        wait: bool = True,
    ) -> SendResult:
        """
        Build, sign and broadcast a payment.

        Raises:
            TransactionBuildError: the payment cannot be built; nothing changed
            SigningError: signing failed; the proposal is discarded
            BroadcastRejected: the relay refused the transaction
            BroadcastTimeout: the network has not acknowledged the transaction;
                the wallet keeps treating it as pending
        """
        if self.broadcaster is None:
            raise WalletError("No light-client relay configured")

        proposal = await self.build_payment(address, amount, fee_rate)
        finalized = await self.sign(proposal)

        if not wait:
            await self.broadcaster.submit(finalized)
            return SendResult(txid=finalized.txid, fee=finalized.fee, status=None)

        status = await self.broadcaster.broadcast(finalized)
        return SendResult(txid=finalized.txid, fee=finalized.fee, status=status)

    # Recovery

    async def rescan(self, start_height: int | None = None) -> int:
        """
        Revert chain state from start_height and ask the engine to replay it.

        Defaults to the height reported by the last sync error, or 0.
        Returns the height the rescan starts from.
        """
        if start_height is None:
            sync_error = self.tracker.sync_error
            start_height = sync_error.rescan_height if sync_error else 0

        self.tracker.begin_rescan(start_height)
        if self.relay is not None:
            await self.relay.request_rescan(start_height, self.keychain.watched_addresses)
        return start_height

    async def close(self) -> None:
        if self.relay is not None:
            await self.relay.close()
        if self.signer is not None:
            await self.signer.close()
        self.store.close()
