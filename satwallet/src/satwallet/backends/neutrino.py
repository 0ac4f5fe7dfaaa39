"""
Neutrino (BIP157/BIP158) light client relay.

The neutrino daemon runs as a separate process maintaining P2P connections
and compact block filters. This relay talks to its REST API to broadcast
transactions, check mempool membership, look up block hashes and estimate
fees.
"""

from __future__ import annotations

from typing import Any

import httpx
from loguru import logger

from satwallet.backends.base import LightClientRelay, RelayResult
from satwallet.errors import BroadcastError, WalletError

# Fallback fee rates (sat/vB) by confirmation target, used when estimation fails
FALLBACK_FEE_RATES: list[tuple[int, int]] = [(1, 20), (3, 10), (6, 5)]
FALLBACK_FEE_RATE_FLOOR = 2


def fallback_fee_rate(target_blocks: int) -> int:
    for max_target, rate in FALLBACK_FEE_RATES:
        if target_blocks <= max_target:
            return rate
    return FALLBACK_FEE_RATE_FLOOR


class NeutrinoRelay(LightClientRelay):
    def __init__(
        self,
        neutrino_url: str = "http://127.0.0.1:8334",
        network: str = "mainnet",
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ):
        """
        Args:
            neutrino_url: base URL of the daemon's REST API
            network: network the daemon follows, used in log context only
            timeout: per-request timeout in seconds
            client: HTTP client to use instead of a fresh one
        """
        self.base_url = neutrino_url.rstrip("/")
        self.network = network
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def _api_call(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
    ) -> Any:
        """JSON request against the daemon; HTTP errors propagate as httpx exceptions."""
        response = await self.client.request(
            method, f"{self.base_url}/{endpoint}", params=params, json=data
        )
        if response.is_error:
            logger.debug(f"{method} {endpoint} returned HTTP {response.status_code}")
        response.raise_for_status()
        return response.json()

    async def submit(self, tx_hex: str) -> RelayResult:
        """
        Broadcast a transaction to connected peers.

        Returns a rejected result when the daemon refuses the transaction.

        Raises:
            BroadcastError: the daemon could not be reached
        """
        try:
            result = await self._api_call("POST", "v1/tx/broadcast", data={"tx_hex": tx_hex})
        except httpx.HTTPStatusError as e:
            if e.response.status_code < 500:
                reason = _error_reason(e.response)
                logger.warning(f"Transaction rejected by neutrino: {reason}")
                return RelayResult(txid="", accepted=False, reason=reason)
            raise BroadcastError(f"Broadcast failed: {e}") from e
        except httpx.HTTPError as e:
            raise BroadcastError(f"Broadcast failed: {e}") from e

        txid = result.get("txid", "")
        logger.info(f"Neutrino accepted transaction {txid or '(no txid returned)'}")
        return RelayResult(txid=txid, accepted=True)

    async def in_mempool(self, txid: str) -> bool | None:
        try:
            result = await self._api_call("GET", f"v1/tx/{txid}")
        except httpx.HTTPStatusError as e:
            # 404: the daemon has never seen it
            return False if e.response.status_code == 404 else None
        except httpx.HTTPError:
            return None

        if not isinstance(result, dict) or not result.get("txid"):
            return False
        confirmed_at = result.get("block_height") or 0
        return confirmed_at <= 0

    async def estimate_fee(self, target_blocks: int) -> int:
        """Fee rate in whole sat/vB for the target, or the fallback table's rate."""
        try:
            result = await self._api_call(
                "GET",
                "v1/fees/estimate",
                params={"target_blocks": target_blocks},
            )
            rate = result.get("fee_rate", 0)
        except httpx.HTTPError as e:
            logger.warning(f"Neutrino fee estimate unavailable, using fallback: {e}")
        else:
            if rate > 0:
                return int(rate)
            logger.debug(f"Neutrino returned no fee estimate for {target_blocks} blocks")

        return fallback_fee_rate(target_blocks)

    async def get_block_hash(self, block_height: int) -> str | None:
        """Block hash at a height, or None if the daemon does not know it."""
        try:
            result = await self._api_call("GET", f"v1/block/{block_height}/header")
        except httpx.HTTPError as e:
            logger.warning(f"Failed to fetch block hash for height {block_height}: {e}")
            return None
        return result.get("hash") or None

    async def get_status(self) -> dict[str, object]:
        try:
            return await self._api_call("GET", "v1/status")
        except httpx.HTTPError as e:
            logger.warning(f"Failed to fetch neutrino status: {e}")
            return {}

    async def request_rescan(self, start_height: int, addresses: list[str]) -> None:
        """
        Rescan compact block filters from start_height for the wallet addresses.

        The daemon replays matching blocks through the event feed.
        """
        if not addresses:
            logger.warning("No wallet addresses to rescan for")
            return

        try:
            await self._api_call(
                "POST",
                "v1/rescan",
                data={"start_height": start_height, "addresses": addresses},
            )
        except httpx.HTTPError as e:
            raise WalletError(f"Rescan request failed: {e}") from e
        logger.info(f"Neutrino rescanning from {start_height} for {len(addresses)} address(es)")

    async def close(self) -> None:
        await self.client.aclose()


def _error_reason(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        return str(body.get("error") or body.get("message") or body)
    return str(body)
