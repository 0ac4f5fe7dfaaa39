"""
Bitcoin protocol constants and wallet policy defaults.

The dust threshold default follows Bitcoin Core's relay rule for P2PKH outputs
(546 sats at the default 3 sat/vB dust relay fee). Native SegWit outputs have a
lower network limit, but the wallet keeps the conservative value so that change
it creates is always relayable.
"""

from __future__ import annotations

# Standard P2PKH dust limit in Bitcoin Core
STANDARD_DUST_LIMIT = 546  # satoshis

DEFAULT_DUST_THRESHOLD = STANDARD_DUST_LIMIT

# Transaction serialization
TX_VERSION = 2
SEQUENCE_FINAL = 0xFFFFFFFF
# Signals opt-in replace-by-fee (BIP125)
SEQUENCE_RBF = 0xFFFFFFFD
SIGHASH_ALL = 0x01

# Virtual size estimates for P2WPKH spends (BIP141 weight / 4, rounded up)
TX_OVERHEAD_VBYTES = 11
P2WPKH_INPUT_BASE_VBYTES = 41  # outpoint + empty scriptSig + sequence
P2WPKH_SIGNATURE_VBYTES = 27  # witness: DER sig (<=72) + pubkey (33) + counts, / 4
P2WPKH_OUTPUT_VBYTES = 31

MIN_RELAY_FEE_RATE = 1  # sat/vB

# Chain tracking
DEFAULT_REORG_WINDOW = 100
DEFAULT_GAP_LIMIT = 20

# BIP32 extended key version bytes (public)
XPUB_VERSIONS: dict[bytes, str] = {
    bytes.fromhex("0488b21e"): "mainnet",  # xpub
    bytes.fromhex("04b24746"): "mainnet",  # zpub
    bytes.fromhex("043587cf"): "testnet",  # tpub
    bytes.fromhex("045f1cf6"): "testnet",  # vpub
}

BECH32_HRP: dict[str, str] = {
    "mainnet": "bc",
    "testnet": "tb",
    "signet": "tb",
    "regtest": "bcrt",
}
