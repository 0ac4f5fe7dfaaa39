"""
Light-client adapters.

- LightClientRelay: outbound interface (submit, mempool and header queries, fees)
- NeutrinoRelay: REST client for a neutrino (BIP157/BIP158) daemon
- EventFeed: inbound block/transaction/connection events
"""

from satwallet.backends.base import LightClientRelay, RelayResult
from satwallet.backends.events import (
    BlockConnected,
    BlockDisconnected,
    ConnectionStatus,
    EventFeed,
    LightClientEvent,
    TransactionData,
    TransactionSeen,
    TxInputRef,
    TxOutputData,
    parse_event,
)
from satwallet.backends.neutrino import NeutrinoRelay

__all__ = [
    "BlockConnected",
    "BlockDisconnected",
    "ConnectionStatus",
    "EventFeed",
    "LightClientEvent",
    "LightClientRelay",
    "NeutrinoRelay",
    "RelayResult",
    "TransactionData",
    "TransactionSeen",
    "TxInputRef",
    "TxOutputData",
    "parse_event",
]
