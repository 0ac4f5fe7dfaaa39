"""
Address and scriptPubKey conversions.

Payment destinations may be P2PKH, P2SH or segwit v0 (P2WPKH, P2WSH). The
wallet itself only derives P2WPKH scripts.
"""

from __future__ import annotations

import hashlib

import base58
import bech32

from satcore.constants import BECH32_HRP

# Base58 version bytes: (P2PKH, P2SH)
_BASE58_VERSIONS: dict[str, tuple[int, int]] = {
    "mainnet": (0x00, 0x05),
    "testnet": (0x6F, 0xC4),
    "signet": (0x6F, 0xC4),
    "regtest": (0x6F, 0xC4),
}

# (witness version, program length) -> script prefix
_WITNESS_PREFIXES: dict[tuple[int, int], bytes] = {
    (0, 20): b"\x00\x14",  # P2WPKH
    (0, 32): b"\x00\x20",  # P2WSH
}

_P2PKH_PREFIX = b"\x76\xa9\x14"  # OP_DUP OP_HASH160 PUSH20
_P2PKH_SUFFIX = b"\x88\xac"  # OP_EQUALVERIFY OP_CHECKSIG
_P2SH_PREFIX = b"\xa9\x14"  # OP_HASH160 PUSH20
_P2SH_SUFFIX = b"\x87"  # OP_EQUAL


def hash160(data: bytes) -> bytes:
    return hashlib.new("ripemd160", hashlib.sha256(data).digest()).digest()


def get_bech32_hrp(network: str) -> str:
    try:
        return BECH32_HRP[network]
    except KeyError:
        raise ValueError(f"Unknown network: {network}") from None


def address_to_scriptpubkey(address: str, network: str | None = None) -> bytes:
    """
    Decode an address into its output script.

    With `network` set, addresses belonging to another network are rejected.
    """
    hrp = address.lower().rsplit("1", 1)[0] if "1" in address else ""
    if hrp in BECH32_HRP.values():
        if network is not None and hrp != get_bech32_hrp(network):
            raise ValueError(f"Address {address} is not a {network} address")
        witver, witprog = bech32.decode(hrp, address)
        if witver is None or witprog is None:
            raise ValueError(f"Invalid bech32 address: {address}")
        prefix = _WITNESS_PREFIXES.get((witver, len(witprog)))
        if prefix is None:
            raise ValueError(
                f"Unsupported witness program: version {witver}, {len(witprog)} bytes"
            )
        return prefix + bytes(witprog)

    try:
        decoded = base58.b58decode_check(address)
    except ValueError as e:
        raise ValueError(f"Invalid base58 address: {address}") from e
    if len(decoded) != 21:
        raise ValueError(f"Invalid address payload length: {len(decoded) - 1}")

    version, payload = decoded[0], decoded[1:]
    networks = [network] if network is not None else list(_BASE58_VERSIONS)
    for name in networks:
        p2pkh, p2sh = _BASE58_VERSIONS[name]
        if version == p2pkh:
            return _P2PKH_PREFIX + payload + _P2PKH_SUFFIX
        if version == p2sh:
            return _P2SH_PREFIX + payload + _P2SH_SUFFIX

    if network is not None:
        raise ValueError(f"Address {address} is not a {network} address")
    raise ValueError(f"Unknown address version: {version}")


def scriptpubkey_to_address(scriptpubkey: bytes, network: str = "mainnet") -> str:
    for (witver, length), prefix in _WITNESS_PREFIXES.items():
        if len(scriptpubkey) == length + 2 and scriptpubkey.startswith(prefix):
            encoded = bech32.encode(get_bech32_hrp(network), witver, scriptpubkey[2:])
            if encoded is None:
                raise ValueError(f"Failed to encode witness address: {scriptpubkey.hex()}")
            return encoded

    if network not in _BASE58_VERSIONS:
        raise ValueError(f"Unknown network: {network}")
    p2pkh, p2sh = _BASE58_VERSIONS[network]

    if (
        len(scriptpubkey) == 25
        and scriptpubkey.startswith(_P2PKH_PREFIX)
        and scriptpubkey.endswith(_P2PKH_SUFFIX)
    ):
        return base58.b58encode_check(bytes([p2pkh]) + scriptpubkey[3:23]).decode("ascii")

    if (
        len(scriptpubkey) == 23
        and scriptpubkey.startswith(_P2SH_PREFIX)
        and scriptpubkey.endswith(_P2SH_SUFFIX)
    ):
        return base58.b58encode_check(bytes([p2sh]) + scriptpubkey[2:22]).decode("ascii")

    raise ValueError(f"Unsupported scriptPubKey: {scriptpubkey.hex()}")


def pubkey_to_p2wpkh_script(pubkey: bytes) -> bytes:
    if len(pubkey) != 33:
        raise ValueError(f"Invalid compressed pubkey length: {len(pubkey)}")
    return _WITNESS_PREFIXES[(0, 20)] + hash160(pubkey)


def pubkey_to_p2wpkh_address(pubkey: bytes, network: str = "mainnet") -> str:
    return scriptpubkey_to_address(pubkey_to_p2wpkh_script(pubkey), network)


def create_p2wpkh_script_code(pubkey: bytes) -> bytes:
    """
    BIP143 scriptCode for a P2WPKH input: the P2PKH script of the key hash,
    without the length prefix.
    """
    return _P2PKH_PREFIX + hash160(pubkey) + _P2PKH_SUFFIX


def is_p2wpkh(scriptpubkey: bytes) -> bool:
    return len(scriptpubkey) == 22 and scriptpubkey.startswith(_WITNESS_PREFIXES[(0, 20)])
