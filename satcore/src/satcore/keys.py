"""
Watch-only BIP32 public key derivation and ECDSA verification.

The wallet never holds private keys: it derives receive and change scripts
from an account-level extended public key and only verifies the signatures
an external signer returns.
"""

from __future__ import annotations

import hashlib
import hmac

import base58
from coincurve import PublicKey

from satcore.address import hash160
from satcore.constants import XPUB_VERSIONS

# secp256k1 curve order
SECP256K1_N = int("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)

HARDENED_OFFSET = 0x80000000


class ExtendedPublicKey:
    """
    BIP32 extended public key.
    Supports non-hardened (public) child derivation only.
    """

    def __init__(
        self,
        public_key: PublicKey,
        chain_code: bytes,
        depth: int = 0,
        network: str = "mainnet",
        parent_fingerprint: bytes = b"\x00\x00\x00\x00",
        child_number: int = 0,
    ):
        self.public_key = public_key
        self.chain_code = chain_code
        self.depth = depth
        self.network = network
        self.parent_fingerprint = parent_fingerprint
        self.child_number = child_number

    @classmethod
    def from_string(cls, xpub: str) -> ExtendedPublicKey:
        """Parse a base58check-encoded xpub/tpub/zpub/vpub."""
        try:
            raw = base58.b58decode_check(xpub)
        except ValueError as e:
            raise ValueError(f"Invalid extended public key encoding: {e}") from e

        if len(raw) != 78:
            raise ValueError(f"Invalid extended public key length: {len(raw)}")

        version = raw[:4]
        network = XPUB_VERSIONS.get(version)
        if network is None:
            raise ValueError(f"Unsupported extended key version: {version.hex()}")

        key_bytes = raw[45:78]
        if key_bytes[0] not in (0x02, 0x03):
            raise ValueError("Extended key does not contain a compressed public key")

        return cls(
            public_key=PublicKey(key_bytes),
            chain_code=raw[13:45],
            depth=raw[4],
            network=network,
            parent_fingerprint=raw[5:9],
            child_number=int.from_bytes(raw[9:13], "big"),
        )

    def to_string(self, version: bytes | None = None) -> str:
        if version is None:
            version = bytes.fromhex("0488b21e" if self.network == "mainnet" else "043587cf")
        raw = (
            version
            + bytes([self.depth])
            + self.parent_fingerprint
            + self.child_number.to_bytes(4, "big")
            + self.chain_code
            + self.public_key_bytes
        )
        return base58.b58encode_check(raw).decode("ascii")

    @property
    def public_key_bytes(self) -> bytes:
        return self.public_key.format(compressed=True)

    @property
    def fingerprint(self) -> bytes:
        return hash160(self.public_key_bytes)[:4]

    def derive(self, path: str) -> ExtendedPublicKey:
        """
        Derive a child key from a relative path (e.g. "0/5" or "m/0/5").
        Hardened steps cannot be derived from a public key.
        """
        parts = [p for p in path.split("/") if p and p != "m"]
        key = self

        for part in parts:
            if part.endswith(("'", "h")):
                raise ValueError(f"Cannot derive hardened child {part} from a public key")
            key = key._derive_child(int(part))

        return key

    def _derive_child(self, index: int) -> ExtendedPublicKey:
        if index < 0 or index >= HARDENED_OFFSET:
            raise ValueError(f"Invalid non-hardened child index: {index}")

        data = self.public_key_bytes + index.to_bytes(4, "big")
        hmac_result = hmac.new(self.chain_code, data, hashlib.sha512).digest()
        key_offset = hmac_result[:32]
        child_chain = hmac_result[32:]

        if int.from_bytes(key_offset, "big") >= SECP256K1_N:
            raise ValueError("Invalid child key")

        child_key = self.public_key.add(key_offset)

        return ExtendedPublicKey(
            public_key=child_key,
            chain_code=child_chain,
            depth=self.depth + 1,
            network=self.network,
            parent_fingerprint=self.fingerprint,
            child_number=index,
        )


def verify_raw_ecdsa(message_hash: bytes, signature_der: bytes, pubkey_bytes: bytes) -> bool:
    """
    Verify an ECDSA signature on a pre-hashed message.

    Args:
        message_hash: The message hash (already SHA256d)
        signature_der: DER-encoded signature without the sighash type byte
        pubkey_bytes: Compressed public key (33 bytes)

    Returns:
        True if signature is valid
    """
    if not signature_der:
        return False
    try:
        pubkey = PublicKey(pubkey_bytes)
        return pubkey.verify(signature_der, message_hash, hasher=None)
    except (ValueError, TypeError):
        return False
