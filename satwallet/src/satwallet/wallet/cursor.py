"""
Chain cursor: the wallet's view of the best chain.

Keeps a bounded window of recent (height, hash) pairs. Blocks extend the
cursor only when their parent matches the stored hash one height below;
anything else is resolved by finding the common ancestor inside the window
and rolling back every height above it. A fork deeper than the window cannot
be reconciled locally and requires a rescan, as does a fork block arriving
without the new branch blocks below it.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum

from loguru import logger
from satcore.constants import DEFAULT_REORG_WINDOW

from satwallet.errors import ChainGapError, ReorgWindowExceeded
from satwallet.wallet.models import ChainTip

# Returns the best-chain block hash at a height, as seen by the light client
HeaderSource = Callable[[int], str | None]


class CursorState(str, Enum):
    UNINITIALIZED = "uninitialized"
    SYNCED = "synced"
    ROLLING_BACK = "rolling_back"


@dataclass
class Rollback:
    """Heights strictly above ancestor_height were removed from the cursor."""

    ancestor_height: int
    disconnected: list[ChainTip] = field(default_factory=list)  # highest first

    @property
    def rollback_height(self) -> int:
        """Lowest invalidated height."""
        return self.ancestor_height + 1


class ChainCursor:
    def __init__(self, window: int = DEFAULT_REORG_WINDOW, headers: Iterable[ChainTip] = ()):
        if window < 1:
            raise ValueError("Reorg window must be at least 1")
        self.window = window
        self._headers: deque[ChainTip] = deque(maxlen=window)
        self.state = CursorState.UNINITIALIZED
        self.restore(headers)

    def restore(self, headers: Iterable[ChainTip]) -> None:
        """Reset the window to the given headers (ascending heights)."""
        self._headers.clear()
        for header in sorted(headers, key=lambda h: h.height):
            self._headers.append(header)
        self.state = CursorState.SYNCED if self._headers else CursorState.UNINITIALIZED

    @property
    def tip(self) -> ChainTip | None:
        return self._headers[-1] if self._headers else None

    @property
    def height(self) -> int | None:
        return self._headers[-1].height if self._headers else None

    @property
    def floor(self) -> int | None:
        """Lowest height still inside the window."""
        return self._headers[0].height if self._headers else None

    @property
    def headers(self) -> list[ChainTip]:
        return list(self._headers)

    def hash_at(self, height: int) -> str | None:
        if not self._headers:
            return None
        index = height - self._headers[0].height
        if index < 0 or index >= len(self._headers):
            return None
        return self._headers[index].hash

    def is_known(self, height: int, block_hash: str) -> bool:
        return self.hash_at(height) == block_hash

    def is_stale(self, height: int) -> bool:
        """True for a height below the window, where no block can be compared."""
        floor = self.floor
        return floor is not None and height < floor

    def advance(
        self,
        height: int,
        block_hash: str,
        parent_hash: str,
        header_source: HeaderSource | None = None,
    ) -> Rollback | None:
        """
        Connect a block.

        Returns the rollback that had to happen first when the block does not
        extend the current tip, or None for a plain extension. A block older
        than the window is ignored: it can only be a re-delivery or part of a
        fork that is already out of reach.

        Raises:
            ChainGapError: block is more than one height above the tip, or forks
                below its parent and the blocks in between were not delivered, or
                forks inside the window with no header source to locate it
            ReorgWindowExceeded: no common ancestor inside the window
        """
        if self.state == CursorState.ROLLING_BACK:
            raise RuntimeError("Cannot advance while a rollback is in progress")

        tip = self.tip
        if tip is None:
            self._push(height, block_hash)
            logger.debug(f"Cursor anchored at height {height} ({block_hash})")
            return None

        if self.is_known(height, block_hash):
            return None

        if self.is_stale(height):
            logger.warning(f"Ignoring block {block_hash} at height {height} below the window")
            return None

        if height == tip.height + 1 and parent_hash == tip.hash:
            self._push(height, block_hash)
            return None

        if height > tip.height + 1:
            raise ChainGapError(
                f"Block {block_hash} at height {height} does not connect to tip "
                f"{tip.height}; missing blocks",
                rescan_height=tip.height + 1,
            )

        ancestor = self._find_common_ancestor(height, parent_hash, header_source)
        if ancestor < height - 1:
            # The new branch's blocks between the ancestor and this one were never delivered
            raise ChainGapError(
                f"Block {block_hash} at height {height} forks after height {ancestor}; "
                f"blocks {ancestor + 1}..{height - 1} of the new branch are missing",
                rescan_height=ancestor + 1,
            )
        rollback = self.reconcile(ancestor)
        self.resume()
        self._push(height, block_hash)
        return rollback

    def _find_common_ancestor(
        self, height: int, parent_hash: str, header_source: HeaderSource | None
    ) -> int:
        if self.hash_at(height - 1) == parent_hash:
            return height - 1

        floor = self.floor if self.floor is not None else height
        if header_source is None:
            if height - 1 >= floor:
                # Forks somewhere inside the window; replaying it covers the new branch
                raise ChainGapError(
                    f"Block at height {height} forks below its parent and no header "
                    f"source is available to locate the fork",
                    rescan_height=floor,
                )
        else:
            for candidate in range(height - 2, floor - 1, -1):
                if header_source(candidate) == self.hash_at(candidate):
                    return candidate

        raise ReorgWindowExceeded(
            f"No common ancestor for block at height {height} within the last "
            f"{self.window} blocks",
            rescan_height=0,
        )

    def reconcile(self, common_ancestor_height: int) -> Rollback:
        """
        Drop every header above common_ancestor_height.

        Leaves the cursor in ROLLING_BACK until `resume()` is called, after the
        coin state has been rolled back to match.
        """
        tip = self.tip
        if tip is None or common_ancestor_height >= tip.height:
            return Rollback(ancestor_height=common_ancestor_height)

        floor = self._headers[0].height
        if common_ancestor_height < floor - 1:
            raise ReorgWindowExceeded(
                f"Rollback to {common_ancestor_height} is below the cursor window "
                f"(floor {floor})",
                rescan_height=0,
            )

        self.state = CursorState.ROLLING_BACK
        disconnected: list[ChainTip] = []
        while self._headers and self._headers[-1].height > common_ancestor_height:
            disconnected.append(self._headers.pop())

        logger.info(
            f"Chain rollback to height {common_ancestor_height}: "
            f"{len(disconnected)} block(s) disconnected"
        )
        return Rollback(ancestor_height=common_ancestor_height, disconnected=disconnected)

    def resume(self) -> None:
        self.state = CursorState.SYNCED if self._headers else CursorState.UNINITIALIZED

    def disconnect(self, height: int, block_hash: str) -> Rollback | None:
        """Handle an explicit block-disconnected notification."""
        if not self.is_known(height, block_hash):
            logger.warning(f"Ignoring disconnect of unknown block {block_hash} at {height}")
            return None
        return self.reconcile(height - 1)

    def _push(self, height: int, block_hash: str) -> None:
        self._headers.append(ChainTip(height=height, hash=block_hash))
        self.state = CursorState.SYNCED
