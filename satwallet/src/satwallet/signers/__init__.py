"""
External signer adapters.
"""

from satwallet.signers.base import (
    ExternalSigner,
    InputSignature,
    SignInput,
    SignOutput,
    SignRequest,
    SignResponse,
)
from satwallet.signers.http import HttpSigner

__all__ = [
    "ExternalSigner",
    "HttpSigner",
    "InputSignature",
    "SignInput",
    "SignOutput",
    "SignRequest",
    "SignResponse",
]
