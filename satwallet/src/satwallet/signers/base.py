"""
External signer contract.

The wallet never holds private keys. A signer receives the unsigned
transaction plus, per input, the amount, script and derivation path it needs
to sign, and per output the address and amount it shows for confirmation.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from pydantic import BaseModel, Field


class SignInput(BaseModel):
    txid: str
    vout: int = Field(..., ge=0)
    amount: int = Field(..., gt=0)
    script: str = Field(..., description="scriptPubKey hex of the coin being spent")
    script_code: str = Field(..., description="BIP143 scriptCode hex")
    derivation_path: str


class SignOutput(BaseModel):
    address: str
    amount: int = Field(..., gt=0)
    is_change: bool = False
    derivation_path: str | None = None


class SignRequest(BaseModel):
    unsigned_tx: str = Field(..., description="Serialized unsigned transaction hex")
    inputs: list[SignInput]
    outputs: list[SignOutput]
    fee: int = Field(..., ge=0)
    network: str = "mainnet"


class InputSignature(BaseModel):
    index: int = Field(..., ge=0)
    signature: str = Field(..., description="DER signature with sighash type byte, hex")
    pubkey: str | None = None


class SignResponse(BaseModel):
    signatures: list[InputSignature] = Field(default_factory=list)


class ExternalSigner(ABC):
    """
    Round-trip to a signing device.

    Implementations raise SignerRefused when the device or user declines and
    SignerUnavailable when the device cannot be reached or errors out.
    """

    @abstractmethod
    async def sign(self, request: SignRequest) -> SignResponse:
        """Ask the device to sign every input of the request"""

    async def close(self) -> None:
        """Release any connection held by the signer"""
