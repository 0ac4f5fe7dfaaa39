"""
Signing coordinator.

Hands a detached UnsignedProposal to the external signer and only returns a
FinalizedTransaction when every input carries a signature that verifies
against that input's script and BIP143 signature hash.
"""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger
from satcore.address import pubkey_to_p2wpkh_script
from satcore.constants import SIGHASH_ALL
from satcore.keys import verify_raw_ecdsa
from satcore.tx import Transaction, TxIn, compute_sighash_segwit

from satwallet.errors import SigningIncomplete
from satwallet.signers.base import (
    ExternalSigner,
    InputSignature,
    SignInput,
    SignOutput,
    SignRequest,
    SignResponse,
)
from satwallet.wallet.builder import UnsignedProposal


@dataclass
class FinalizedTransaction:
    txid: str
    transaction: Transaction
    fee: int

    @property
    def hex(self) -> str:
        return self.transaction.hex()


class SigningCoordinator:
    def __init__(self, signer: ExternalSigner, network: str = "mainnet"):
        self.signer = signer
        self.network = network

    def build_request(self, proposal: UnsignedProposal) -> SignRequest:
        inputs = [
            SignInput(
                txid=ctx.outpoint.txid,
                vout=ctx.outpoint.vout,
                amount=ctx.amount,
                script=ctx.script,
                script_code=ctx.script_code,
                derivation_path=ctx.derivation_path,
            )
            for ctx in proposal.signing_context
        ]
        outputs = [
            SignOutput(address=o.address, amount=o.value, is_change=o.is_change)
            for o in proposal.outputs
        ]
        return SignRequest(
            unsigned_tx=proposal.transaction.hex(),
            inputs=inputs,
            outputs=outputs,
            fee=proposal.fee,
            network=self.network,
        )

    async def sign(self, proposal: UnsignedProposal) -> FinalizedTransaction:
        """
        Sign a proposal with the external signer.

        The proposal is consumed whether or not signing succeeds; after any
        failure the caller must build a new proposal.

        Raises:
            ProposalConsumedError: the proposal was already submitted
            SignerRefused: the device or its user declined
            SignerUnavailable: the device could not be reached
            SigningIncomplete: an input is unsigned or a signature is invalid
        """
        proposal.consume()
        request = self.build_request(proposal)
        response = await self.signer.sign(request)
        return self.finalize(proposal, response)

    def finalize(self, proposal: UnsignedProposal, response: SignResponse) -> FinalizedTransaction:
        num_inputs = len(proposal.signing_context)
        by_index: dict[int, InputSignature] = {}
        for sig in response.signatures:
            if sig.index in by_index:
                raise SigningIncomplete(f"Duplicate signature for input {sig.index}")
            if sig.index >= num_inputs:
                raise SigningIncomplete(f"Signature for unknown input {sig.index}")
            by_index[sig.index] = sig

        if len(by_index) != num_inputs:
            missing = sorted(set(range(num_inputs)) - set(by_index))
            raise SigningIncomplete(
                f"Signer returned {len(by_index)} of {num_inputs} signatures "
                f"(missing inputs {missing})"
            )

        unsigned = proposal.transaction
        witnesses: list[list[bytes]] = []
        for index, ctx in enumerate(proposal.signing_context):
            sig = by_index[index]
            signature = _decode_hex(sig.signature, f"signature for input {index}")
            pubkey = bytes.fromhex(ctx.pubkey)

            if sig.pubkey is not None and _decode_hex(sig.pubkey, "pubkey") != pubkey:
                raise SigningIncomplete(f"Input {index} signed with an unexpected key")
            if pubkey_to_p2wpkh_script(pubkey) != bytes.fromhex(ctx.script):
                raise SigningIncomplete(f"Input {index} key does not match its script")
            if len(signature) < 2 or signature[-1] != SIGHASH_ALL:
                raise SigningIncomplete(f"Input {index} signature is not SIGHASH_ALL")

            sighash = compute_sighash_segwit(
                unsigned, index, bytes.fromhex(ctx.script_code), ctx.amount, SIGHASH_ALL
            )
            if not verify_raw_ecdsa(sighash, signature[:-1], pubkey):
                raise SigningIncomplete(f"Signature for input {index} ({ctx.outpoint}) is invalid")

            witnesses.append([signature, pubkey])

        signed = Transaction(
            inputs=[
                TxIn(
                    txid=inp.txid,
                    vout=inp.vout,
                    sequence=inp.sequence,
                    script_sig=inp.script_sig,
                    witness=witness,
                )
                for inp, witness in zip(unsigned.inputs, witnesses, strict=True)
            ],
            outputs=list(unsigned.outputs),
            version=unsigned.version,
            locktime=unsigned.locktime,
        )

        finalized = FinalizedTransaction(txid=signed.txid, transaction=signed, fee=proposal.fee)
        logger.info(f"Transaction {finalized.txid} fully signed ({num_inputs} input(s))")
        return finalized


def _decode_hex(value: str, what: str) -> bytes:
    try:
        return bytes.fromhex(value)
    except ValueError as e:
        raise SigningIncomplete(f"Malformed {what}: {value!r}") from e
