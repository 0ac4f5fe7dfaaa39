"""
Tests for the sqlite coin store.
"""

import pytest

from satwallet.errors import StoreIoError
from satwallet.storage.coin_store import CoinStore
from satwallet.wallet.models import Coin, Outpoint, TxRecord


def _coin(n: int, value: int = 10_000, birth: int | None = 100, **kwargs) -> Coin:
    return Coin(
        outpoint=Outpoint(f"{n:064x}", 0),
        value=value,
        script="0014" + "ab" * 20,
        address="bc1qtest",
        spend_script_template="76a914" + "ab" * 20 + "88ac",
        derivation_path=f"m/84'/0'/0'/0/{n}",
        birth_height=birth,
        **kwargs,
    )


class TestCoins:
    def test_put_and_get(self, store: CoinStore):
        coin = _coin(1, is_change=True)
        store.put(coin)
        assert store.get(coin.outpoint) == coin

    def test_get_unknown(self, store: CoinStore):
        assert store.get(Outpoint("00" * 32, 3)) is None

    def test_put_is_upsert(self, store: CoinStore):
        coin = _coin(1)
        store.put(coin)
        store.put(coin)
        coin.birth_height = 105
        store.put(coin)

        coins = store.list_coins()
        assert len(coins) == 1
        assert coins[0].birth_height == 105

    def test_mark_spent(self, store: CoinStore):
        coin = _coin(1)
        store.put(coin)

        assert store.mark_spent(coin.outpoint, "ff" * 32, 120)
        spent = store.get(coin.outpoint)
        assert spent is not None
        assert spent.spent_txid == "ff" * 32
        assert spent.spent_height == 120
        assert store.list_coins() == []
        assert len(store.list_coins(include_spent=True)) == 1

    def test_mark_spent_unknown(self, store: CoinStore):
        assert not store.mark_spent(Outpoint("00" * 32, 0), "ff" * 32, None)

    def test_clear_spent(self, store: CoinStore):
        coin = _coin(1)
        store.put(coin)
        store.mark_spent(coin.outpoint, "ff" * 32, None)
        store.clear_spent(coin.outpoint)
        assert store.get(coin.outpoint).spent_txid is None

    def test_coins_created_and_spent_by(self, store: CoinStore):
        a, b = _coin(1), _coin(2)
        store.put(a)
        store.put(b)
        store.mark_spent(a.outpoint, "ee" * 32, None)

        assert [c.outpoint for c in store.coins_created_by(a.outpoint.txid)] == [a.outpoint]
        assert [c.outpoint for c in store.coins_spent_by("ee" * 32)] == [a.outpoint]


class TestSpendable:
    def test_depth_filter(self, store: CoinStore):
        store.put(_coin(1, birth=100))
        store.put(_coin(2, birth=104))
        store.put(_coin(3, birth=None))

        # tip 105: depths 5 and 1
        assert {c.outpoint.txid[-1] for c in store.list_spendable(2, 105)} == {"1"}
        assert {c.outpoint.txid[-1] for c in store.list_spendable(1, 105)} == {"1", "2"}

    def test_zero_confirmations_excludes_unconfirmed(self, store: CoinStore):
        store.put(_coin(1, birth=105))
        store.put(_coin(2, birth=None))
        assert [c.outpoint.txid[-1] for c in store.list_spendable(0, 105)] == ["1"]

    def test_spent_excluded(self, store: CoinStore):
        coin = _coin(1, birth=90)
        store.put(coin)
        store.mark_spent(coin.outpoint, "ff" * 32, None)
        assert store.list_spendable(0, 105) == []


class TestRollback:
    def test_reverts_births_and_spends_at_or_above(self, store: CoinStore):
        old, new, spent_old = _coin(1, birth=100), _coin(2, birth=110), _coin(3, birth=90)
        for c in (old, new, spent_old):
            store.put(c)
        store.mark_spent(spent_old.outpoint, "ff" * 32, 112)
        store.mark_spent(old.outpoint, "ee" * 32, 105)

        reverted, spends = store.rollback(110)

        assert [c.outpoint for c in reverted] == [new.outpoint]
        assert [c.outpoint for c in spends] == [spent_old.outpoint]
        assert store.get(new.outpoint).birth_height is None
        assert store.get(spent_old.outpoint).spent_txid == "ff" * 32
        assert store.get(spent_old.outpoint).spent_height is None
        # Below the rollback point nothing changes
        assert store.get(old.outpoint).birth_height == 100
        assert store.get(old.outpoint).spent_height == 105

    def test_rolls_back_history_and_headers(self, store: CoinStore):
        store.put_tx(TxRecord(txid="aa" * 32, height=109, received=1, sent=0))
        store.put_tx(TxRecord(txid="bb" * 32, height=110, received=1, sent=0))
        for h in range(105, 112):
            store.save_header(h, f"{h:064x}")

        store.rollback(110)

        assert store.get_tx("aa" * 32).height == 109
        assert store.get_tx("bb" * 32).height is None
        assert [h.height for h in store.load_headers()] == list(range(105, 110))


class TestBatch:
    def test_exception_rolls_back_everything(self, store: CoinStore):
        with pytest.raises(RuntimeError):
            with store.batch():
                store.put(_coin(1))
                store.save_header(100, "aa" * 32)
                raise RuntimeError("crash mid-block")

        assert store.list_coins() == []
        assert store.load_headers() == []

    def test_sqlite_error_becomes_store_io_error(self, store: CoinStore):
        with pytest.raises(StoreIoError):
            with store.batch():
                store.put(_coin(1))
                store.conn.execute("INSERT INTO missing_table VALUES (1)")

        assert store.list_coins() == []
        assert not store.in_batch

    def test_nested_batches_commit_once(self, store: CoinStore):
        with store.batch():
            store.put(_coin(1))
            with store.batch():
                store.put(_coin(2))
            assert store.in_batch
        assert len(store.list_coins()) == 2


class TestPersistence:
    def test_reopen(self, tmp_path):
        path = tmp_path / "wallet.sqlite"
        first = CoinStore(path)
        first.put(_coin(1))
        first.save_header(100, "aa" * 32)
        first.put_tx(TxRecord(txid="bb" * 32, height=None, received=5, sent=0))
        first.set_meta("keychain_highest_used_0", "4")
        first.close()

        second = CoinStore(path)
        try:
            assert len(second.list_coins()) == 1
            assert second.load_headers()[0].hash == "aa" * 32
            assert second.get_tx("bb" * 32).height is None
            assert second.get_meta("keychain_highest_used_0") == "4"
        finally:
            second.close()

    def test_creates_parent_directory(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "wallet.sqlite"
        store = CoinStore(path)
        store.close()
        assert path.exists()


class TestHistory:
    def test_pending_first_then_newest(self, store: CoinStore):
        store.put_tx(TxRecord(txid="aa" * 32, height=100, received=1, sent=0))
        store.put_tx(TxRecord(txid="bb" * 32, height=None, received=1, sent=0))
        store.put_tx(TxRecord(txid="cc" * 32, height=105, received=0, sent=1))

        assert [r.txid[:2] for r in store.list_txs()] == ["bb", "cc", "aa"]

    def test_meta_delete(self, store: CoinStore):
        store.set_meta("rescan_height", "7")
        store.delete_meta("rescan_height")
        assert store.get_meta("rescan_height") is None
