"""
satwallet - watch-only Bitcoin wallet state engine

Tracks wallet coins from light-client events, builds unsigned payments and
hands them to an external signer before broadcasting.
"""

__version__ = "0.4.0"

from satwallet.config import FeePolicy, WalletSettings, get_settings
from satwallet.errors import (
    AmountBelowDust,
    BroadcastRejected,
    BroadcastTimeout,
    ChainGapError,
    FeeTooLow,
    InsufficientFunds,
    RecoverableSyncError,
    ReorgWindowExceeded,
    SignerRefused,
    SignerUnavailable,
    SigningIncomplete,
    StoreIoError,
    WalletError,
)
from satwallet.service import SendResult, WalletService, WalletStatus

__all__ = [
    "AmountBelowDust",
    "BroadcastRejected",
    "BroadcastTimeout",
    "ChainGapError",
    "FeePolicy",
    "FeeTooLow",
    "InsufficientFunds",
    "RecoverableSyncError",
    "ReorgWindowExceeded",
    "SendResult",
    "SignerRefused",
    "SignerUnavailable",
    "SigningIncomplete",
    "StoreIoError",
    "WalletError",
    "WalletService",
    "WalletSettings",
    "WalletStatus",
    "get_settings",
]
