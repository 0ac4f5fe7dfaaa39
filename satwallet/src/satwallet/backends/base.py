"""
Light-client relay interface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass
class RelayResult:
    txid: str
    accepted: bool
    reason: str | None = None


class LightClientRelay(ABC):
    """
    Outbound side of the light-client engine.

    Blocks and mempool transactions arrive through the event feed; the relay
    only submits transactions and answers point queries.
    """

    @abstractmethod
    async def submit(self, tx_hex: str) -> RelayResult:
        """Hand a signed transaction to the network"""

    @abstractmethod
    async def in_mempool(self, txid: str) -> bool | None:
        """Whether the node's mempool holds txid (None if unknown)"""

    @abstractmethod
    async def estimate_fee(self, target_blocks: int) -> int:
        """Estimate fee in sat/vbyte for target confirmation blocks"""

    @abstractmethod
    async def get_block_hash(self, block_height: int) -> str | None:
        """Best-chain block hash at a height"""

    async def get_status(self) -> dict[str, object]:
        """Engine sync and peer status"""
        return {}

    async def request_rescan(self, start_height: int, addresses: list[str]) -> None:
        """Ask the engine to replay blocks from start_height for the given addresses"""

    async def close(self) -> None:
        """Close any open connections"""
