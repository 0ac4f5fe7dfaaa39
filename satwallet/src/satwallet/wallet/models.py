"""
Wallet data models.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


@dataclass(frozen=True, order=True)
class Outpoint:
    """Transaction id (RPC byte order) plus output index."""

    txid: str
    vout: int

    def __str__(self) -> str:
        return f"{self.txid}:{self.vout}"

    @classmethod
    def parse(cls, value: str) -> Outpoint:
        txid, _, vout = value.rpartition(":")
        if len(txid) != 64 or not vout.isdigit():
            raise ValueError(f"Invalid outpoint: {value}")
        return cls(txid=txid.lower(), vout=int(vout))


@dataclass
class Coin:
    """A wallet-owned transaction output and its chain state."""

    outpoint: Outpoint
    value: int
    script: str  # scriptPubKey hex
    address: str
    spend_script_template: str  # BIP143 scriptCode hex
    derivation_path: str
    birth_height: int | None = None  # None while unconfirmed
    spent_txid: str | None = None
    spent_height: int | None = None  # None while the spend is unconfirmed
    is_change: bool = False

    @property
    def is_spent(self) -> bool:
        return self.spent_txid is not None

    @property
    def is_confirmed(self) -> bool:
        return self.birth_height is not None

    def depth(self, current_height: int) -> int:
        """Blocks mined on top of the block that confirmed this coin (-1 if unconfirmed)."""
        if self.birth_height is None:
            return -1
        return current_height - self.birth_height

    def confirmations(self, current_height: int) -> int:
        return self.depth(current_height) + 1

    def is_spendable(self, min_confirmations: int, current_height: int) -> bool:
        return (
            not self.is_spent
            and self.birth_height is not None
            and current_height - self.birth_height >= min_confirmations
        )


class TxStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"


@dataclass
class TxRecord:
    """Wallet-relevant transaction as seen in the history."""

    txid: str
    height: int | None
    received: int  # value paid to wallet scripts
    sent: int  # value of wallet coins spent

    @property
    def net(self) -> int:
        return self.received - self.sent

    @property
    def status(self) -> TxStatus:
        return TxStatus.PENDING if self.height is None else TxStatus.CONFIRMED


@dataclass
class TxStatusChange:
    """Emitted by the tracker when a wallet transaction changes state."""

    txid: str
    status: TxStatus
    height: int | None = None


@dataclass
class CoinSelection:
    """Result of coin selection"""

    coins: list[Coin]
    total_value: int
    change_value: int
    fee: int

    @property
    def has_change(self) -> bool:
        return self.change_value > 0


@dataclass
class Balance:
    confirmed: int = 0  # spendable at the configured minimum confirmations
    immature: int = 0  # confirmed but below the minimum confirmations
    pending: int = 0  # unconfirmed incoming
    locked: int = 0  # spent by an unconfirmed transaction

    @property
    def total(self) -> int:
        return self.confirmed + self.immature + self.pending


@dataclass
class ChainTip:
    height: int
    hash: str


@dataclass
class ScriptInfo:
    """Keychain metadata for a wallet-owned scriptPubKey."""

    script: str
    address: str
    derivation_path: str
    pubkey: str
    is_change: bool
    index: int
    used: bool = False
