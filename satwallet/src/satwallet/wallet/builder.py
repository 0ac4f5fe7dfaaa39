"""
Unsigned transaction builder.

Turns a payment request into an UnsignedProposal:
- inputs in coin selection order, all P2WPKH, RBF-signalling
- outputs ordered payment first, then the optional change output
- per-input signing context (amount, script, scriptCode, derivation path)
"""

from __future__ import annotations

from dataclasses import dataclass, field

from loguru import logger
from satcore.address import address_to_scriptpubkey
from satcore.constants import SEQUENCE_RBF, TX_VERSION
from satcore.tx import Transaction, TxIn, TxOut

from satwallet.config import FeePolicy
from satwallet.errors import (
    AmountBelowDust,
    FeeTooLow,
    InsufficientFunds,
    ProposalConsumedError,
)
from satwallet.wallet.keychain import Keychain
from satwallet.wallet.models import Coin, CoinSelection, Outpoint
from satwallet.wallet.selector import CoinSelector
from satwallet.wallet.tracker import UtxoTracker


@dataclass
class ProposalOutput:
    address: str
    value: int
    script: str  # scriptPubKey hex
    is_change: bool = False


@dataclass
class SigningInput:
    """What the signer needs to produce one input's signature."""

    outpoint: Outpoint
    amount: int
    script: str
    script_code: str
    derivation_path: str
    pubkey: str


@dataclass
class UnsignedProposal:
    inputs: list[Coin]
    outputs: list[ProposalOutput]
    fee: int
    fee_rate: float
    signing_context: list[SigningInput]
    transaction: Transaction
    dust_change_folded: int = 0
    consumed: bool = field(default=False, repr=False)

    @property
    def txid(self) -> str:
        # SegWit txids do not commit to witness data, so this is the final txid
        return self.transaction.txid

    @property
    def input_value(self) -> int:
        return sum(c.value for c in self.inputs)

    @property
    def output_value(self) -> int:
        return sum(o.value for o in self.outputs)

    @property
    def change_output(self) -> ProposalOutput | None:
        for output in self.outputs:
            if output.is_change:
                return output
        return None

    def consume(self) -> None:
        """Mark the proposal as handed to the signer. A proposal is signed at most once."""
        if self.consumed:
            raise ProposalConsumedError(f"Proposal {self.txid} was already submitted for signing")
        self.consumed = True


class TransactionBuilder:
    def __init__(
        self,
        tracker: UtxoTracker,
        keychain: Keychain,
        selector: CoinSelector | None = None,
        fee_policy: FeePolicy | None = None,
        min_confirmations: int = 1,
    ):
        self.tracker = tracker
        self.keychain = keychain
        self.fee_policy = fee_policy or FeePolicy()
        self.selector = selector or CoinSelector(fee_policy=self.fee_policy)
        self.min_confirmations = min_confirmations

    @property
    def dust_threshold(self) -> int:
        return self.selector.dust_threshold

    def build(
        self,
        address: str,
        amount: int,
        fee_rate: float,
        min_confirmations: int | None = None,
    ) -> UnsignedProposal:
        """
        Build an unsigned payment of `amount` sats to `address`.

        Raises:
            FeeTooLow: fee_rate is below the policy's minimum relay fee rate
            AmountBelowDust: the payment itself would be a dust output
            InsufficientFunds: spendable coins cannot cover amount + fee
            ValueError: the address cannot be decoded
        """
        if min_confirmations is None:
            min_confirmations = self.min_confirmations

        if fee_rate < self.fee_policy.min_fee_rate:
            raise FeeTooLow(
                f"Fee rate {fee_rate} sat/vB is below the minimum of "
                f"{self.fee_policy.min_fee_rate} sat/vB"
            )
        if amount < self.dust_threshold:
            raise AmountBelowDust(
                f"Payment of {amount} sats is below the dust threshold of "
                f"{self.dust_threshold} sats"
            )

        payment_script = address_to_scriptpubkey(address, self.keychain.network)

        # One consistent view of tip height and spendable coins
        with self.tracker.store.snapshot():
            height = self.tracker.tip_height
            coins = self.tracker.spendable(min_confirmations)
        if height is None:
            raise InsufficientFunds(required=amount, available=0)

        selection = self.selector.select(
            amount, fee_rate, coins, height, min_confirmations=min_confirmations
        )
        selection, fee, change, folded = self._finalize_amounts(
            selection, amount, fee_rate, coins, height, min_confirmations
        )

        outputs = [ProposalOutput(address=address, value=amount, script=payment_script.hex())]
        if change > 0:
            change_info = self.keychain.next_change()
            outputs.append(
                ProposalOutput(
                    address=change_info.address,
                    value=change,
                    script=change_info.script,
                    is_change=True,
                )
            )

        proposal = self._assemble(selection.coins, outputs, fee, fee_rate)
        proposal.dust_change_folded = folded

        logger.info(
            f"Built proposal {proposal.txid}: {len(proposal.inputs)} input(s), "
            f"pay {amount} sats to {address}, fee {fee} sats"
            + (f", change {change} sats" if change else "")
        )
        return proposal

    def _finalize_amounts(
        self,
        selection: CoinSelection,
        amount: int,
        fee_rate: float,
        coins: list[Coin],
        height: int,
        min_confirmations: int,
    ) -> tuple[CoinSelection, int, int, int]:
        """
        Recompute the exact fee for the final shape and settle the change.

        Returns (selection, fee, change, dust folded into the fee). Re-selects at
        most once when the final fee leaves the inputs short.
        """
        for attempt in range(2):
            num_outputs = 2 if selection.has_change else 1
            fee = self.fee_policy.estimate_fee(len(selection.coins), num_outputs, fee_rate)
            change = selection.total_value - amount - fee

            if change >= 0:
                if not selection.has_change:
                    # Whatever is left over goes to the fee
                    return selection, selection.total_value - amount, 0, change
                if change < self.dust_threshold:
                    logger.debug(f"Change of {change} sats is dust; folded into the fee")
                    return selection, selection.total_value - amount, 0, change
                return selection, fee, change, 0

            if attempt == 0:
                logger.debug(
                    f"Final fee {fee} leaves inputs {-change} sats short; re-selecting coins"
                )
                selection = self.selector.select(
                    amount - change,
                    fee_rate,
                    coins,
                    height,
                    min_confirmations=min_confirmations,
                )

        raise InsufficientFunds(required=amount + fee, available=selection.total_value)

    def _assemble(
        self,
        coins: list[Coin],
        outputs: list[ProposalOutput],
        fee: int,
        fee_rate: float,
    ) -> UnsignedProposal:
        tx_inputs = [
            TxIn(txid=c.outpoint.txid, vout=c.outpoint.vout, sequence=SEQUENCE_RBF) for c in coins
        ]
        tx_outputs = [TxOut(value=o.value, script_pubkey=bytes.fromhex(o.script)) for o in outputs]
        transaction = Transaction(inputs=tx_inputs, outputs=tx_outputs, version=TX_VERSION)

        signing_context: list[SigningInput] = []
        for coin in coins:
            info = self.keychain.lookup(coin.script)
            if info is None:
                raise ValueError(f"Coin {coin.outpoint} does not belong to this keychain")
            signing_context.append(
                SigningInput(
                    outpoint=coin.outpoint,
                    amount=coin.value,
                    script=coin.script,
                    script_code=coin.spend_script_template,
                    derivation_path=coin.derivation_path,
                    pubkey=info.pubkey,
                )
            )

        return UnsignedProposal(
            inputs=list(coins),
            outputs=outputs,
            fee=fee,
            fee_rate=fee_rate,
            signing_context=signing_context,
            transaction=transaction,
        )
