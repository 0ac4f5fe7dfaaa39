"""
Deterministic greedy coin selection.

Candidates are sorted by descending value, ties broken by greater
confirmation depth and then by outpoint, and accumulated until they cover
the target plus the fee for the inputs taken so far. Coins below the dust
threshold are never considered.
"""

from __future__ import annotations

from loguru import logger

from satwallet.config import FeePolicy
from satwallet.errors import InsufficientFunds
from satwallet.wallet.models import Coin, CoinSelection


class CoinSelector:
    def __init__(self, fee_policy: FeePolicy | None = None, dust_threshold: int = 546):
        self.fee_policy = fee_policy or FeePolicy()
        self.dust_threshold = dust_threshold

    def sort_candidates(self, coins: list[Coin], current_height: int) -> list[Coin]:
        eligible = [c for c in coins if c.value >= self.dust_threshold]
        return sorted(
            eligible,
            key=lambda c: (-c.value, -c.depth(current_height), c.outpoint),
        )

    def select(
        self,
        target: int,
        fee_rate: float,
        coins: list[Coin],
        current_height: int,
        min_confirmations: int = 0,
        num_payment_outputs: int = 1,
    ) -> CoinSelection:
        """
        Select coins paying `target` plus fee at `fee_rate` (sat/vB).

        The change output is omitted when the remainder after the fee is below
        the dust threshold; that remainder goes to the fee instead.

        Raises:
            InsufficientFunds: all eligible coins together cannot cover target + fee
        """
        if target <= 0:
            raise ValueError(f"Target must be positive, got {target}")

        candidates = [
            c
            for c in self.sort_candidates(coins, current_height)
            if c.is_spendable(min_confirmations, current_height)
        ]

        selected: list[Coin] = []
        total = 0

        for coin in candidates:
            selected.append(coin)
            total += coin.value

            fee_no_change = self.fee_policy.estimate_fee(
                len(selected), num_payment_outputs, fee_rate
            )
            fee_with_change = self.fee_policy.estimate_fee(
                len(selected), num_payment_outputs + 1, fee_rate
            )

            change = total - target - fee_with_change
            if change >= self.dust_threshold:
                logger.debug(
                    f"Selected {len(selected)} coin(s) totalling {total} sats, "
                    f"fee {fee_with_change}, change {change}"
                )
                return CoinSelection(
                    coins=selected, total_value=total, change_value=change, fee=fee_with_change
                )

            remainder = total - target - fee_no_change
            if remainder >= 0:
                # Exact cover: remainder is too small for a change output
                logger.debug(
                    f"Selected {len(selected)} coin(s) totalling {total} sats without change, "
                    f"{remainder} sats added to fee"
                )
                return CoinSelection(
                    coins=selected, total_value=total, change_value=0, fee=total - target
                )

        required = target + self.fee_policy.estimate_fee(
            max(len(candidates), 1), num_payment_outputs, fee_rate
        )
        raise InsufficientFunds(required=required, available=total)
