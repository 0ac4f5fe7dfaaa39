"""
Configuration management using pydantic-settings.
"""

from __future__ import annotations

import math
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from satcore.constants import (
    DEFAULT_DUST_THRESHOLD,
    DEFAULT_GAP_LIMIT,
    DEFAULT_REORG_WINDOW,
    MIN_RELAY_FEE_RATE,
    P2WPKH_INPUT_BASE_VBYTES,
    P2WPKH_OUTPUT_VBYTES,
    P2WPKH_SIGNATURE_VBYTES,
    TX_OVERHEAD_VBYTES,
)


class FeePolicy(BaseModel):
    """Transaction size model used for fee estimation."""

    overhead_vbytes: int = Field(default=TX_OVERHEAD_VBYTES, ge=0)
    input_base_vbytes: int = Field(default=P2WPKH_INPUT_BASE_VBYTES, ge=0)
    signature_vbytes: int = Field(
        default=P2WPKH_SIGNATURE_VBYTES, ge=0, description="Expected witness size per input"
    )
    output_vbytes: int = Field(default=P2WPKH_OUTPUT_VBYTES, ge=0)
    min_fee_rate: float = Field(
        default=MIN_RELAY_FEE_RATE, ge=0, description="Minimum relay fee rate in sat/vB"
    )

    def estimate_vsize(self, num_inputs: int, num_outputs: int) -> int:
        return (
            self.overhead_vbytes
            + num_inputs * (self.input_base_vbytes + self.signature_vbytes)
            + num_outputs * self.output_vbytes
        )

    def estimate_fee(self, num_inputs: int, num_outputs: int, fee_rate: float) -> int:
        """Fee in sats for the given shape, rounded up to a whole satoshi."""
        return math.ceil(self.estimate_vsize(num_inputs, num_outputs) * fee_rate)


class WalletSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SATWALLET_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    network: Literal["mainnet", "testnet", "signet", "regtest"] = "mainnet"
    data_dir: Path = Path.home() / ".satwallet"
    db_path: Path | None = None

    # Watch-only account key; the signer holds the private keys
    xpub: str = ""
    account_path: str = "m/84'/0'/0'"
    gap_limit: int = Field(default=DEFAULT_GAP_LIMIT, ge=1)

    # Coin policy
    min_confirmations: int = Field(default=1, ge=0)
    dust_threshold: int = Field(default=DEFAULT_DUST_THRESHOLD, ge=0)
    reorg_window: int = Field(default=DEFAULT_REORG_WINDOW, ge=1)
    fee_policy: FeePolicy = Field(default_factory=FeePolicy)
    fee_target_blocks: int = Field(default=6, ge=1)

    # External collaborators
    light_client_url: str = "http://127.0.0.1:8334"
    signer_url: str = "http://127.0.0.1:8335"
    signer_timeout_sec: float = Field(default=120.0, gt=0)
    broadcast_timeout_sec: float = Field(default=60.0, gt=0)

    log_level: str = "INFO"

    @model_validator(mode="after")
    def set_db_path_default(self) -> WalletSettings:
        """If db_path is not set, place the database in data_dir."""
        if self.db_path is None:
            object.__setattr__(self, "db_path", self.data_dir / f"wallet-{self.network}.sqlite")
        return self


def get_settings(**overrides: object) -> WalletSettings:
    return WalletSettings(**overrides)
