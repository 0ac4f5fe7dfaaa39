"""
Watch-only BIP84 keychain.

Derivation path: {account_path}/{change}/{index}
- change: 0 (external/receive), 1 (internal/change)
- index: address index

Scripts are derived ahead of the highest used index by the gap limit so the
tracker recognises payments to any address handed out.
"""

from __future__ import annotations

from loguru import logger
from satcore.address import (
    create_p2wpkh_script_code,
    pubkey_to_p2wpkh_address,
    pubkey_to_p2wpkh_script,
)
from satcore.keys import ExtendedPublicKey

from satwallet.storage.coin_store import CoinStore
from satwallet.wallet.models import ScriptInfo

RECEIVE = 0
CHANGE = 1


class Keychain:
    def __init__(
        self,
        account_key: ExtendedPublicKey,
        account_path: str = "m/84'/0'/0'",
        network: str = "mainnet",
        gap_limit: int = 20,
        store: CoinStore | None = None,
    ):
        self.account_key = account_key
        self.account_path = account_path.rstrip("/")
        self.network = network
        self.gap_limit = gap_limit
        self.store = store

        self._chains = {
            RECEIVE: account_key.derive(str(RECEIVE)),
            CHANGE: account_key.derive(str(CHANGE)),
        }
        self._scripts: dict[str, ScriptInfo] = {}
        self._derived: dict[int, int] = {RECEIVE: 0, CHANGE: 0}
        self._highest_used: dict[int, int] = {RECEIVE: -1, CHANGE: -1}

        if store is not None:
            for chain in (RECEIVE, CHANGE):
                value = store.get_meta(f"keychain_highest_used_{chain}")
                if value is not None:
                    self._highest_used[chain] = int(value)

        self._ensure_lookahead()
        logger.info(
            f"Keychain ready: {len(self._scripts)} scripts watched "
            f"(gap limit {gap_limit}, {network})"
        )

    @classmethod
    def from_xpub(
        cls,
        xpub: str,
        account_path: str = "m/84'/0'/0'",
        network: str = "mainnet",
        gap_limit: int = 20,
        store: CoinStore | None = None,
    ) -> Keychain:
        return cls(
            ExtendedPublicKey.from_string(xpub),
            account_path=account_path,
            network=network,
            gap_limit=gap_limit,
            store=store,
        )

    def derive(self, change: int, index: int) -> ScriptInfo:
        """Get script info for given path"""
        if change not in (RECEIVE, CHANGE):
            raise ValueError(f"Invalid chain {change}")

        key = self._chains[change].derive(str(index))
        pubkey = key.public_key_bytes
        script = pubkey_to_p2wpkh_script(pubkey).hex()

        info = self._scripts.get(script)
        if info is None:
            info = ScriptInfo(
                script=script,
                address=pubkey_to_p2wpkh_address(pubkey, self.network),
                derivation_path=f"{self.account_path}/{change}/{index}",
                pubkey=pubkey.hex(),
                is_change=change == CHANGE,
                index=index,
                used=index <= self._highest_used[change],
            )
            self._scripts[script] = info
        return info

    def _ensure_lookahead(self) -> None:
        for chain in (RECEIVE, CHANGE):
            target = self._highest_used[chain] + 1 + self.gap_limit
            while self._derived[chain] < target:
                self.derive(chain, self._derived[chain])
                self._derived[chain] += 1

    def lookup(self, script: str) -> ScriptInfo | None:
        return self._scripts.get(script.lower())

    def is_mine(self, script: str) -> bool:
        return script.lower() in self._scripts

    def spend_script_template(self, info: ScriptInfo) -> str:
        return create_p2wpkh_script_code(bytes.fromhex(info.pubkey)).hex()

    def mark_used(self, script: str) -> None:
        """Record that a script received funds and extend the lookahead window."""
        info = self.lookup(script)
        if info is None or info.used:
            return

        info.used = True
        chain = CHANGE if info.is_change else RECEIVE
        if info.index > self._highest_used[chain]:
            self._highest_used[chain] = info.index
            if self.store is not None:
                self.store.set_meta(f"keychain_highest_used_{chain}", str(info.index))
            self._ensure_lookahead()
            logger.debug(f"Script {info.address} used; lookahead extended on chain {chain}")

    def checkpoint(self) -> tuple[dict[int, int], set[str]]:
        """Used-index state, for undoing mark_used() when a store batch fails."""
        used = {script for script, info in self._scripts.items() if info.used}
        return dict(self._highest_used), used

    def restore(self, checkpoint: tuple[dict[int, int], set[str]]) -> None:
        highest_used, used = checkpoint
        self._highest_used = dict(highest_used)
        for script, info in self._scripts.items():
            info.used = script in used

    def _next_unused(self, chain: int) -> ScriptInfo:
        index = self._highest_used[chain] + 1
        while True:
            info = self.derive(chain, index)
            if not info.used:
                return info
            index += 1

    def next_receive(self) -> ScriptInfo:
        return self._next_unused(RECEIVE)

    def next_change(self) -> ScriptInfo:
        return self._next_unused(CHANGE)

    @property
    def watched_scripts(self) -> list[str]:
        return list(self._scripts)

    @property
    def watched_addresses(self) -> list[str]:
        return [info.address for info in self._scripts.values()]
