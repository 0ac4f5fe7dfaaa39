"""
Wallet error taxonomy.

Sync errors are recoverable and reported; construction and signing errors are
local to one send attempt and never touch tracked coin state.
"""

from __future__ import annotations


class WalletError(Exception):
    """Base class for all wallet errors."""


class RecoverableSyncError(WalletError):
    """Chain data could not be reconciled; a rescan from `rescan_height` is required."""

    def __init__(self, message: str, rescan_height: int):
        super().__init__(message)
        self.rescan_height = rescan_height


class ReorgWindowExceeded(RecoverableSyncError):
    pass


class ChainGapError(RecoverableSyncError):
    pass


class StoreIoError(WalletError):
    """A storage write failed; the whole update was rolled back."""


class TransactionBuildError(WalletError):
    pass


class InsufficientFunds(TransactionBuildError):
    def __init__(self, required: int, available: int):
        super().__init__(f"Insufficient funds: need {required} sats, have {available} sats")
        self.required = required
        self.available = available


class FeeTooLow(TransactionBuildError):
    pass


class AmountBelowDust(TransactionBuildError):
    pass


class SigningError(WalletError):
    pass


class SigningIncomplete(SigningError):
    pass


class SignerRefused(SigningError):
    pass


class SignerUnavailable(SigningError):
    pass


class ProposalConsumedError(SigningError):
    """A proposal was submitted for signing more than once."""


class BroadcastError(WalletError):
    pass


class BroadcastRejected(BroadcastError):
    def __init__(self, txid: str, reason: str):
        super().__init__(f"Transaction {txid} rejected: {reason}")
        self.txid = txid
        self.reason = reason


class BroadcastTimeout(BroadcastError):
    def __init__(self, txid: str, timeout: float):
        super().__init__(f"Transaction {txid} not seen by the network after {timeout:g}s")
        self.txid = txid
        self.timeout = timeout
