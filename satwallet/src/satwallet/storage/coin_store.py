"""
Durable coin store backed by sqlite.

One record per outpoint plus the chain cursor's header window and the wallet
transaction history. Every logical update (one block, one mempool transaction,
one rollback) runs inside `batch()`, which commits as a unit: readers holding
the store lock never observe half of a batch, and a failed write rolls the
whole batch back before StoreIoError is raised.
"""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from loguru import logger

from satwallet.errors import StoreIoError
from satwallet.wallet.models import ChainTip, Coin, Outpoint, TxRecord

SCHEMA_VERSION = 1

_COIN_COLUMNS = (
    "txid, vout, value, script, address, spend_script_template, derivation_path, "
    "birth_height, spend_txid, spend_height, is_change"
)


def _row_to_coin(row: sqlite3.Row) -> Coin:
    return Coin(
        outpoint=Outpoint(row["txid"], row["vout"]),
        value=row["value"],
        script=row["script"],
        address=row["address"],
        spend_script_template=row["spend_script_template"],
        derivation_path=row["derivation_path"],
        birth_height=row["birth_height"],
        spent_txid=row["spend_txid"],
        spent_height=row["spend_height"],
        is_change=bool(row["is_change"]),
    )


def _row_to_tx(row: sqlite3.Row) -> TxRecord:
    return TxRecord(
        txid=row["txid"],
        height=row["height"],
        received=row["received"],
        sent=row["sent"],
    )


class CoinStore:
    def __init__(self, db_path: Path | str = ":memory:") -> None:
        self.db_path = db_path
        if isinstance(db_path, Path):
            db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._batch_depth = 0
        try:
            # Autocommit mode: transactions are opened explicitly by batch()
            self.conn = sqlite3.connect(
                str(db_path), check_same_thread=False, isolation_level=None
            )
            self.conn.row_factory = sqlite3.Row
            self._init_schema()
        except sqlite3.Error as e:
            raise StoreIoError(f"Failed to open coin store at {db_path}: {e}") from e

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    def _init_schema(self) -> None:
        self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS coins (
              txid TEXT NOT NULL,
              vout INTEGER NOT NULL,
              value INTEGER NOT NULL,
              script TEXT NOT NULL,
              address TEXT NOT NULL,
              spend_script_template TEXT NOT NULL,
              derivation_path TEXT NOT NULL,
              birth_height INTEGER NULL,
              spend_txid TEXT NULL,
              spend_height INTEGER NULL,
              is_change INTEGER NOT NULL,
              PRIMARY KEY (txid, vout)
            );

            CREATE INDEX IF NOT EXISTS coins_spend_txid ON coins (spend_txid);

            CREATE TABLE IF NOT EXISTS headers (
              height INTEGER PRIMARY KEY,
              hash TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS transactions (
              txid TEXT PRIMARY KEY,
              height INTEGER NULL,
              received INTEGER NOT NULL,
              sent INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS meta (
              key TEXT PRIMARY KEY,
              value TEXT NOT NULL
            );
            """
        )
        self.conn.execute(
            "INSERT OR IGNORE INTO meta (key, value) VALUES ('schema_version', ?)",
            (str(SCHEMA_VERSION),),
        )

    @contextmanager
    def batch(self) -> Iterator[CoinStore]:
        """
        Group writes into one atomic update.

        Nested batches join the outermost one. Any exception rolls back every
        write made since the outermost batch began.
        """
        with self._lock:
            if self._batch_depth > 0:
                self._batch_depth += 1
                try:
                    yield self
                finally:
                    self._batch_depth -= 1
                return

            try:
                self.conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StoreIoError(f"Failed to begin store update: {e}") from e

            self._batch_depth = 1
            try:
                yield self
            except sqlite3.Error as e:
                self._rollback_batch()
                raise StoreIoError(f"Store update failed and was rolled back: {e}") from e
            except BaseException:
                self._rollback_batch()
                raise
            else:
                try:
                    self.conn.execute("COMMIT")
                except sqlite3.Error as e:
                    self._rollback_batch()
                    raise StoreIoError(f"Failed to commit store update: {e}") from e
            finally:
                self._batch_depth = 0

    def _rollback_batch(self) -> None:
        try:
            self.conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            logger.error(f"Coin store rollback failed: {e}")

    @property
    def in_batch(self) -> bool:
        return self._batch_depth > 0

    # Coins

    def put(self, coin: Coin) -> None:
        """Insert or replace the record for coin.outpoint."""
        with self.batch():
            self.conn.execute(
                f"""
                INSERT INTO coins ({_COIN_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(txid, vout) DO UPDATE SET
                  value = excluded.value,
                  script = excluded.script,
                  address = excluded.address,
                  spend_script_template = excluded.spend_script_template,
                  derivation_path = excluded.derivation_path,
                  birth_height = excluded.birth_height,
                  spend_txid = excluded.spend_txid,
                  spend_height = excluded.spend_height,
                  is_change = excluded.is_change
                """,
                (
                    coin.outpoint.txid,
                    coin.outpoint.vout,
                    coin.value,
                    coin.script,
                    coin.address,
                    coin.spend_script_template,
                    coin.derivation_path,
                    coin.birth_height,
                    coin.spent_txid,
                    coin.spent_height,
                    1 if coin.is_change else 0,
                ),
            )

    def get(self, outpoint: Outpoint) -> Coin | None:
        with self._lock:
            row = self.conn.execute(
                f"SELECT {_COIN_COLUMNS} FROM coins WHERE txid = ? AND vout = ?",
                (outpoint.txid, outpoint.vout),
            ).fetchone()
        return _row_to_coin(row) if row is not None else None

    def delete(self, outpoint: Outpoint) -> None:
        with self.batch():
            self.conn.execute(
                "DELETE FROM coins WHERE txid = ? AND vout = ?", (outpoint.txid, outpoint.vout)
            )

    def mark_spent(self, outpoint: Outpoint, spending_txid: str, height: int | None) -> bool:
        """Record that outpoint is spent by spending_txid. Returns False if the coin is unknown."""
        with self.batch():
            cursor = self.conn.execute(
                "UPDATE coins SET spend_txid = ?, spend_height = ? WHERE txid = ? AND vout = ?",
                (spending_txid, height, outpoint.txid, outpoint.vout),
            )
        return cursor.rowcount > 0

    def clear_spent(self, outpoint: Outpoint) -> None:
        with self.batch():
            self.conn.execute(
                "UPDATE coins SET spend_txid = NULL, spend_height = NULL "
                "WHERE txid = ? AND vout = ?",
                (outpoint.txid, outpoint.vout),
            )

    def list_coins(self, include_spent: bool = False) -> list[Coin]:
        query = f"SELECT {_COIN_COLUMNS} FROM coins"
        if not include_spent:
            query += " WHERE spend_txid IS NULL"
        query += " ORDER BY txid, vout"
        with self._lock:
            rows = self.conn.execute(query).fetchall()
        return [_row_to_coin(row) for row in rows]

    def list_spendable(self, min_confirmations: int, current_height: int) -> list[Coin]:
        """Unspent confirmed coins buried at least min_confirmations blocks deep."""
        with self._lock:
            rows = self.conn.execute(
                f"""
                SELECT {_COIN_COLUMNS} FROM coins
                WHERE spend_txid IS NULL
                  AND birth_height IS NOT NULL
                  AND ? - birth_height >= ?
                ORDER BY txid, vout
                """,
                (current_height, min_confirmations),
            ).fetchall()
        return [_row_to_coin(row) for row in rows]

    def coins_created_by(self, txid: str) -> list[Coin]:
        with self._lock:
            rows = self.conn.execute(
                f"SELECT {_COIN_COLUMNS} FROM coins WHERE txid = ? ORDER BY vout", (txid,)
            ).fetchall()
        return [_row_to_coin(row) for row in rows]

    def coins_spent_by(self, txid: str) -> list[Coin]:
        with self._lock:
            rows = self.conn.execute(
                f"SELECT {_COIN_COLUMNS} FROM coins WHERE spend_txid = ? ORDER BY txid, vout",
                (txid,),
            ).fetchall()
        return [_row_to_coin(row) for row in rows]

    def rollback(self, height: int) -> tuple[list[Coin], list[Coin]]:
        """
        Revert chain state at or above height.

        Coins born at or above height become unconfirmed, and so do spends
        confirmed at or above height (the spender is kept). Returns
        (unconfirmed_coins, unconfirmed_spends) as they were before the revert.
        """
        with self.batch():
            reverted = [
                _row_to_coin(row)
                for row in self.conn.execute(
                    f"SELECT {_COIN_COLUMNS} FROM coins WHERE birth_height >= ?", (height,)
                ).fetchall()
            ]
            spends = [
                _row_to_coin(row)
                for row in self.conn.execute(
                    f"SELECT {_COIN_COLUMNS} FROM coins WHERE spend_height >= ?", (height,)
                ).fetchall()
            ]
            self.conn.execute(
                "UPDATE coins SET birth_height = NULL WHERE birth_height >= ?", (height,)
            )
            self.conn.execute(
                "UPDATE coins SET spend_height = NULL WHERE spend_height >= ?",
                (height,),
            )
            self.conn.execute(
                "UPDATE transactions SET height = NULL WHERE height >= ?", (height,)
            )
            self.conn.execute("DELETE FROM headers WHERE height >= ?", (height,))

        logger.debug(
            f"Store rollback to {height}: {len(reverted)} coins unconfirmed, "
            f"{len(spends)} spends unconfirmed"
        )
        return reverted, spends

    # Header window

    def save_header(self, height: int, block_hash: str) -> None:
        with self.batch():
            self.conn.execute(
                "INSERT INTO headers (height, hash) VALUES (?, ?) "
                "ON CONFLICT(height) DO UPDATE SET hash = excluded.hash",
                (height, block_hash),
            )

    def prune_headers(self, below_height: int) -> None:
        with self.batch():
            self.conn.execute("DELETE FROM headers WHERE height < ?", (below_height,))

    def clear_headers(self) -> None:
        with self.batch():
            self.conn.execute("DELETE FROM headers")

    def load_headers(self) -> list[ChainTip]:
        with self._lock:
            rows = self.conn.execute("SELECT height, hash FROM headers ORDER BY height").fetchall()
        return [ChainTip(height=row["height"], hash=row["hash"]) for row in rows]

    # Transaction history

    def put_tx(self, record: TxRecord) -> None:
        with self.batch():
            self.conn.execute(
                """
                INSERT INTO transactions (txid, height, received, sent)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(txid) DO UPDATE SET
                  height = excluded.height,
                  received = excluded.received,
                  sent = excluded.sent
                """,
                (record.txid, record.height, record.received, record.sent),
            )

    def get_tx(self, txid: str) -> TxRecord | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT txid, height, received, sent FROM transactions WHERE txid = ?", (txid,)
            ).fetchone()
        return _row_to_tx(row) if row is not None else None

    def delete_tx(self, txid: str) -> None:
        with self.batch():
            self.conn.execute("DELETE FROM transactions WHERE txid = ?", (txid,))

    def list_txs(self) -> list[TxRecord]:
        """History ordered newest first, pending transactions on top."""
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT txid, height, received, sent FROM transactions
                ORDER BY height IS NOT NULL, height DESC, txid
                """
            ).fetchall()
        return [_row_to_tx(row) for row in rows]

    # Metadata

    def get_meta(self, key: str, default: str | None = None) -> str | None:
        with self._lock:
            row = self.conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row is not None else default

    def set_meta(self, key: str, value: str) -> None:
        with self.batch():
            self.conn.execute(
                "INSERT INTO meta (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )

    def delete_meta(self, key: str) -> None:
        with self.batch():
            self.conn.execute("DELETE FROM meta WHERE key = ?", (key,))

    @contextmanager
    def snapshot(self) -> Iterator[CoinStore]:
        """Hold the store lock so several reads observe the same committed state."""
        with self._lock:
            yield self
