"""
satcore - Bitcoin primitives for the satwallet wallet engine

Provides address codecs, transaction serialization, signature hashing
and watch-only key derivation.
"""

__version__ = "0.4.0"

from satcore.address import (
    address_to_scriptpubkey,
    create_p2wpkh_script_code,
    hash160,
    pubkey_to_p2wpkh_address,
    pubkey_to_p2wpkh_script,
    scriptpubkey_to_address,
)
from satcore.constants import DEFAULT_DUST_THRESHOLD, STANDARD_DUST_LIMIT
from satcore.keys import ExtendedPublicKey, verify_raw_ecdsa
from satcore.tx import (
    Transaction,
    TransactionParseError,
    TxIn,
    TxOut,
    compute_sighash_segwit,
    deserialize_transaction,
    hash256,
)

__all__ = [
    "DEFAULT_DUST_THRESHOLD",
    "ExtendedPublicKey",
    "STANDARD_DUST_LIMIT",
    "Transaction",
    "TransactionParseError",
    "TxIn",
    "TxOut",
    "address_to_scriptpubkey",
    "compute_sighash_segwit",
    "create_p2wpkh_script_code",
    "deserialize_transaction",
    "hash160",
    "hash256",
    "pubkey_to_p2wpkh_address",
    "pubkey_to_p2wpkh_script",
    "scriptpubkey_to_address",
    "verify_raw_ecdsa",
]
