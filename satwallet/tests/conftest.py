"""
Test configuration for wallet tests.

Provides a software signer holding the private keys behind the test account
xpub, so signing is exercised with real signatures, and builders for block and
transaction events.
"""

from __future__ import annotations

import hashlib
import hmac

import pytest
import pytest_asyncio
from coincurve import PrivateKey

from satcore.address import address_to_scriptpubkey, pubkey_to_p2wpkh_address
from satcore.keys import ExtendedPublicKey
from satcore.tx import compute_sighash_segwit, deserialize_transaction
from satwallet.backends.events import (
    BlockConnected,
    BlockDisconnected,
    TransactionData,
    TransactionSeen,
    TxInputRef,
    TxOutputData,
)
from satwallet.config import FeePolicy
from satwallet.errors import SignerRefused
from satwallet.signers.base import ExternalSigner, InputSignature, SignRequest, SignResponse
from satwallet.storage.coin_store import CoinStore
from satwallet.wallet.builder import TransactionBuilder
from satwallet.wallet.keychain import RECEIVE, Keychain
from satwallet.wallet.selector import CoinSelector
from satwallet.wallet.signing import FinalizedTransaction, SigningCoordinator
from satwallet.wallet.tracker import UtxoTracker

SECP256K1_N = int("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)
TEST_SEED = bytes(range(32))
ACCOUNT_PATH = "m/84'/0'/0'"

# A destination outside the wallet (P2WPKH of the generator point)
EXTERNAL_ADDRESS = pubkey_to_p2wpkh_address(
    bytes.fromhex("0279be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798")
)


class HDPrivateKey:
    """Private BIP32 derivation, test-only."""

    def __init__(
        self,
        private_key: PrivateKey,
        chain_code: bytes,
        depth: int = 0,
        parent_fingerprint: bytes = b"\x00\x00\x00\x00",
        child_number: int = 0,
    ):
        self.private_key = private_key
        self.chain_code = chain_code
        self.depth = depth
        self.parent_fingerprint = parent_fingerprint
        self.child_number = child_number

    @classmethod
    def from_seed(cls, seed: bytes) -> HDPrivateKey:
        digest = hmac.new(b"Bitcoin seed", seed, hashlib.sha512).digest()
        return cls(PrivateKey(digest[:32]), digest[32:])

    @property
    def public_key_bytes(self) -> bytes:
        return self.private_key.public_key.format(compressed=True)

    def derive(self, path: str) -> HDPrivateKey:
        key = self
        for part in path.split("/"):
            if not part or part == "m":
                continue
            hardened = part.endswith(("'", "h"))
            index = int(part.rstrip("'h")) + (0x80000000 if hardened else 0)
            key = key._child(index)
        return key

    def _child(self, index: int) -> HDPrivateKey:
        if index >= 0x80000000:
            data = b"\x00" + self.private_key.secret + index.to_bytes(4, "big")
        else:
            data = self.public_key_bytes + index.to_bytes(4, "big")
        digest = hmac.new(self.chain_code, data, hashlib.sha512).digest()
        child_int = (
            int.from_bytes(digest[:32], "big") + int.from_bytes(self.private_key.secret, "big")
        ) % SECP256K1_N
        fingerprint = hashlib.new(
            "ripemd160", hashlib.sha256(self.public_key_bytes).digest()
        ).digest()[:4]
        return HDPrivateKey(
            PrivateKey(child_int.to_bytes(32, "big")),
            digest[32:],
            depth=self.depth + 1,
            parent_fingerprint=fingerprint,
            child_number=index,
        )

    def neuter(self, network: str = "mainnet") -> ExtendedPublicKey:
        return ExtendedPublicKey(
            public_key=self.private_key.public_key,
            chain_code=self.chain_code,
            depth=self.depth,
            network=network,
            parent_fingerprint=self.parent_fingerprint,
            child_number=self.child_number,
        )


class SoftwareSigner(ExternalSigner):
    """
    Signs with keys derived from TEST_SEED.

    drop: number of trailing signatures to leave out
    corrupt_index: input whose signature is made over the wrong message
    refuse: reason to refuse every request with
    """

    def __init__(
        self,
        master: HDPrivateKey,
        drop: int = 0,
        corrupt_index: int | None = None,
        refuse: str | None = None,
    ):
        self.master = master
        self.drop = drop
        self.corrupt_index = corrupt_index
        self.refuse = refuse
        self.requests: list[SignRequest] = []
        self.closed = False

    async def sign(self, request: SignRequest) -> SignResponse:
        self.requests.append(request)
        if self.refuse is not None:
            raise SignerRefused(self.refuse)

        tx = deserialize_transaction(bytes.fromhex(request.unsigned_tx))
        signatures = []
        for index, inp in enumerate(request.inputs):
            key = self.master.derive(inp.derivation_path).private_key
            sighash = compute_sighash_segwit(tx, index, bytes.fromhex(inp.script_code), inp.amount)
            if index == self.corrupt_index:
                sighash = hashlib.sha256(b"not the sighash").digest()
            signature = key.sign(sighash, hasher=None) + b"\x01"
            signatures.append(
                InputSignature(
                    index=index,
                    signature=signature.hex(),
                    pubkey=key.public_key.format().hex(),
                )
            )

        if self.drop:
            signatures = signatures[: len(signatures) - self.drop]
        return SignResponse(signatures=signatures)

    async def close(self) -> None:
        self.closed = True


def block_hash(height: int, branch: str = "main") -> str:
    return hashlib.sha256(f"{branch}:{height}".encode()).hexdigest()


def fake_txid(label: str) -> str:
    return hashlib.sha256(f"tx:{label}".encode()).hexdigest()


class ChainBuilder:
    """Builds light-client events with deterministic hashes per branch."""

    def hash(self, height: int, branch: str = "main") -> str:
        return block_hash(height, branch)

    def block(
        self,
        height: int,
        transactions: list[TransactionData] | None = None,
        branch: str = "main",
        parent_branch: str | None = None,
    ) -> BlockConnected:
        return BlockConnected(
            height=height,
            hash=block_hash(height, branch),
            parent_hash=block_hash(height - 1, parent_branch or branch),
            transactions=transactions or [],
        )

    def disconnect(self, height: int, branch: str = "main") -> BlockDisconnected:
        return BlockDisconnected(height=height, hash=block_hash(height, branch))

    def tx(
        self,
        label: str,
        outputs: list[tuple[str, int]],
        inputs: list[tuple[str, int]] | None = None,
    ) -> TransactionData:
        """outputs: (scriptPubKey hex, value); inputs: (txid, vout)."""
        return TransactionData(
            txid=fake_txid(label),
            inputs=[TxInputRef(txid=txid, vout=vout) for txid, vout in inputs or []],
            outputs=[TxOutputData(value=value, script=script) for script, value in outputs],
        )

    def seen(self, tx: TransactionData) -> TransactionSeen:
        return TransactionSeen(**tx.model_dump())


@pytest.fixture
def master_key() -> HDPrivateKey:
    return HDPrivateKey.from_seed(TEST_SEED)


@pytest.fixture
def account_xpub(master_key: HDPrivateKey) -> str:
    return master_key.derive(ACCOUNT_PATH).neuter().to_string()


@pytest.fixture
def store():
    s = CoinStore()
    yield s
    s.close()


@pytest.fixture
def keychain(store: CoinStore, account_xpub: str) -> Keychain:
    return Keychain.from_xpub(account_xpub, account_path=ACCOUNT_PATH, gap_limit=5, store=store)


@pytest.fixture
def tracker(store: CoinStore, keychain: Keychain) -> UtxoTracker:
    return UtxoTracker(store, keychain, window=10)


@pytest.fixture
def chain() -> ChainBuilder:
    return ChainBuilder()


@pytest.fixture
def signer(master_key: HDPrivateKey) -> SoftwareSigner:
    return SoftwareSigner(master_key)


@pytest.fixture
def flat_fee_policy() -> FeePolicy:
    """100 vbytes per input and nothing else: 1000 sats per input at 10 sat/vB."""
    return FeePolicy(overhead_vbytes=0, input_base_vbytes=100, signature_vbytes=0, output_vbytes=0)


@pytest.fixture
def external_script() -> str:
    return address_to_scriptpubkey(EXTERNAL_ADDRESS).hex()


@pytest.fixture
def make_signer(master_key: HDPrivateKey):
    def _make(**kwargs) -> SoftwareSigner:
        return SoftwareSigner(master_key, **kwargs)

    return _make


@pytest.fixture
def external_address() -> str:
    return EXTERNAL_ADDRESS


@pytest.fixture
def funding(tracker: UtxoTracker, keychain: Keychain, chain: ChainBuilder) -> TransactionData:
    """Two confirmed coins of 50,000 and 30,000 sats, tip at 102."""
    tx = chain.tx(
        "funding",
        [
            (keychain.derive(RECEIVE, 0).script, 50_000),
            (keychain.derive(RECEIVE, 1).script, 30_000),
        ],
    )
    tracker.apply_block(chain.block(100, [tx]))
    tracker.apply_block(chain.block(101))
    tracker.apply_block(chain.block(102))
    return tx


@pytest.fixture
def builder(
    tracker: UtxoTracker, keychain: Keychain, flat_fee_policy: FeePolicy
) -> TransactionBuilder:
    return TransactionBuilder(
        tracker,
        keychain,
        selector=CoinSelector(fee_policy=flat_fee_policy, dust_threshold=546),
        fee_policy=flat_fee_policy,
        min_confirmations=1,
    )


@pytest_asyncio.fixture
async def finalized(
    builder: TransactionBuilder, funding: TransactionData, signer: SoftwareSigner
) -> FinalizedTransaction:
    """A signed 40,000 sat payment spending the 50,000 sat funding coin."""
    proposal = builder.build(EXTERNAL_ADDRESS, 40_000, 10)
    return await SigningCoordinator(signer).sign(proposal)
