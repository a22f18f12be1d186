import asyncio
import sqlite3
import time
from datetime import datetime
from typing import List, Optional, Set, Tuple

import aiosqlite

from chainmirror.errors import StoreError, StoreWriteError
from chainmirror.models import Transaction


class TransactionRepo:
    """Insert-if-absent writes and queries for transactions and their transfers."""

    def __init__(self, db: aiosqlite.Connection, write_lock: Optional[asyncio.Lock] = None):
        self._db = db
        self._write_lock = write_lock or asyncio.Lock()

    async def upsert(self, tx: Transaction, resolved_time: datetime) -> bool:
        """Insert the transaction and its transfers atomically.

        A transaction whose (block_height, index) already exists is left
        untouched, transfers included. Returns True if a row was inserted.
        """
        now = time.time()
        async with self._write_lock:
            try:
                await self._db.execute("BEGIN IMMEDIATE")
                cursor = await self._db.execute(
                    "INSERT OR IGNORE INTO transactions "
                    "(block_height, tx_index, time, transfer_count, created_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (tx.block_height, tx.index, resolved_time.isoformat(), len(tx.transfers), now),
                )
                inserted = cursor.rowcount > 0
                if inserted:
                    await self._db.executemany(
                        "INSERT OR IGNORE INTO transfers "
                        "(block_height, tx_index, position, amount, from_address, to_address) "
                        "VALUES (?, ?, ?, ?, ?, ?)",
                        [
                            (tx.block_height, tx.index, pos, t.amount, t.from_address, t.to_address)
                            for pos, t in enumerate(tx.transfers)
                        ],
                    )
                await self._db.commit()
            except sqlite3.Error as e:
                try:
                    await self._db.execute("ROLLBACK")
                except sqlite3.Error:
                    pass  # no transaction left open
                raise StoreWriteError(f"transaction {tx.block_height}/{tx.index}: {e}") from e
        return inserted

    async def existing_keys(self, from_height: int, to_height: int) -> Set[Tuple[int, int]]:
        try:
            async with self._db.execute(
                "SELECT block_height, tx_index FROM transactions "
                "WHERE block_height BETWEEN ? AND ?",
                (from_height, to_height),
            ) as cursor:
                return {(row[0], row[1]) async for row in cursor}
        except sqlite3.Error as e:
            raise StoreError(f"transaction range {from_height}-{to_height}: {e}") from e

    async def max_height(self) -> Optional[int]:
        try:
            async with self._db.execute("SELECT MAX(block_height) FROM transactions") as cursor:
                row = await cursor.fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"max transaction height: {e}") from e
        return row[0] if row else None

    async def list_range(
        self,
        from_height: Optional[int] = None,
        to_height: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[dict]:
        query = (
            "SELECT block_height, tx_index, time, transfer_count FROM transactions WHERE 1 = 1"
        )
        params: tuple = ()
        if from_height is not None:
            query += " AND block_height >= ?"
            params += (from_height,)
        if to_height is not None:
            query += " AND block_height <= ?"
            params += (to_height,)
        query += " ORDER BY block_height, tx_index"
        if limit is not None:
            query += " LIMIT ?"
            params += (limit,)
        results = []
        async with self._db.execute(query, params) as cursor:
            async for row in cursor:
                results.append({
                    "block_height": row[0],
                    "index": row[1],
                    "time": row[2],
                    "transfer_count": row[3],
                    "transfers": [],
                })
        for tx in results:
            tx["transfers"] = await self._transfers_for(tx["block_height"], tx["index"])
        return results

    async def list_for_address(self, address: str, limit: Optional[int] = None) -> List[dict]:
        """Transfers sent or received by ``address``, newest first."""
        query = (
            "SELECT t.block_height, t.tx_index, t.position, t.amount, t.from_address, "
            "t.to_address, x.time "
            "FROM transfers t JOIN transactions x "
            "ON x.block_height = t.block_height AND x.tx_index = t.tx_index "
            "WHERE t.from_address = ? OR t.to_address = ? "
            "ORDER BY t.block_height DESC, t.tx_index DESC, t.position"
        )
        params: tuple = (address, address)
        if limit is not None:
            query += " LIMIT ?"
            params += (limit,)
        results = []
        async with self._db.execute(query, params) as cursor:
            async for row in cursor:
                results.append({
                    "block_height": row[0],
                    "index": row[1],
                    "position": row[2],
                    "amount": row[3],
                    "from_address": row[4],
                    "to_address": row[5],
                    "time": row[6],
                })
        return results

    async def count(self) -> int:
        async with self._db.execute("SELECT COUNT(*) FROM transactions") as cursor:
            row = await cursor.fetchone()
        return row[0] if row else 0

    async def _transfers_for(self, block_height: int, tx_index: int) -> List[dict]:
        results = []
        async with self._db.execute(
            "SELECT amount, from_address, to_address FROM transfers "
            "WHERE block_height = ? AND tx_index = ? ORDER BY position",
            (block_height, tx_index),
        ) as cursor:
            async for row in cursor:
                results.append({
                    "amount": row[0],
                    "from_address": row[1],
                    "to_address": row[2],
                })
        return results
