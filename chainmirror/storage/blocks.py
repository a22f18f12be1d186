import asyncio
import sqlite3
import time
from datetime import datetime
from typing import List, Optional, Set

import aiosqlite

from chainmirror.errors import NotFound, StoreError, StoreWriteError
from chainmirror.models import Block

_COLUMNS = "height, time, version, chain_id, proposer_address_raw, created_at"


def _row_to_dict(row) -> dict:
    return {
        "height": row[0],
        "time": row[1],
        "version": row[2],
        "chain_id": row[3],
        "proposer_address_raw": row[4],
        "created_at": row[5],
    }


class BlockRepo:
    """Insert-if-absent writes and range queries for the blocks table."""

    def __init__(self, db: aiosqlite.Connection, write_lock: Optional[asyncio.Lock] = None):
        self._db = db
        self._write_lock = write_lock or asyncio.Lock()

    async def upsert(self, block: Block) -> bool:
        """Insert the block unless its height exists. Returns True if inserted."""
        async with self._write_lock:
            try:
                cursor = await self._db.execute(
                    "INSERT OR IGNORE INTO blocks (" + _COLUMNS + ") VALUES (?, ?, ?, ?, ?, ?)",
                    (
                        block.height,
                        block.time.isoformat(),
                        block.version,
                        block.chain_id,
                        block.proposer_address_raw,
                        time.time(),
                    ),
                )
                inserted = cursor.rowcount > 0
                await self._db.commit()
            except sqlite3.Error as e:
                raise StoreWriteError(f"block {block.height}: {e}") from e
        return inserted

    async def existing_heights(self, from_height: int, to_height: int) -> Set[int]:
        try:
            async with self._db.execute(
                "SELECT height FROM blocks WHERE height BETWEEN ? AND ?",
                (from_height, to_height),
            ) as cursor:
                return {row[0] async for row in cursor}
        except sqlite3.Error as e:
            raise StoreError(f"block range {from_height}-{to_height}: {e}") from e

    async def max_height(self) -> Optional[int]:
        try:
            async with self._db.execute("SELECT MAX(height) FROM blocks") as cursor:
                row = await cursor.fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"max block height: {e}") from e
        return row[0] if row else None

    async def get_time(self, height: int) -> datetime:
        """Timestamp of the block at ``height``; raises NotFound if not mirrored yet."""
        try:
            async with self._db.execute(
                "SELECT time FROM blocks WHERE height = ?", (height,)
            ) as cursor:
                row = await cursor.fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"block time {height}: {e}") from e
        if row is None:
            raise NotFound(f"block {height} not persisted")
        return datetime.fromisoformat(row[0])

    async def get(self, height: int) -> Optional[dict]:
        async with self._db.execute(
            "SELECT " + _COLUMNS + " FROM blocks WHERE height = ?", (height,)
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_dict(row) if row else None

    async def list_range(
        self,
        from_height: Optional[int] = None,
        to_height: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[dict]:
        query = "SELECT " + _COLUMNS + " FROM blocks WHERE 1 = 1"
        params: tuple = ()
        if from_height is not None:
            query += " AND height >= ?"
            params += (from_height,)
        if to_height is not None:
            query += " AND height <= ?"
            params += (to_height,)
        query += " ORDER BY height"
        if limit is not None:
            query += " LIMIT ?"
            params += (limit,)
        results = []
        async with self._db.execute(query, params) as cursor:
            async for row in cursor:
                results.append(_row_to_dict(row))
        return results

    async def count(self) -> int:
        async with self._db.execute("SELECT COUNT(*) FROM blocks") as cursor:
            row = await cursor.fetchone()
        return row[0] if row else 0
