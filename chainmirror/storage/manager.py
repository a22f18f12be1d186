import asyncio
import logging
import sqlite3
from datetime import datetime
from typing import Optional, Set

import aiosqlite

from chainmirror.errors import StoreError
from chainmirror.models import Block, StreamKind, Transaction

from ._migrate import run_migrations
from .blocks import BlockRepo
from .transactions import TransactionRepo

logger = logging.getLogger("storage")


class StorageManager:
    """Top-level manager: opens the database, runs migrations, exposes repos.

    Also the store adapter used by the reconciliation loops: every method
    taking a ``kind`` dispatches to the repo of that stream. Both loops
    share one connection; writes go through a common lock so a multi-statement
    transaction from one loop is never committed halfway by the other.
    """

    def __init__(self, db_path: str = "chainmirror.db"):
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()
        self.blocks: Optional[BlockRepo] = None
        self.transactions: Optional[TransactionRepo] = None

    async def initialize(self):
        try:
            self._db = await aiosqlite.connect(self.db_path)
            await self._db.execute("PRAGMA journal_mode=WAL")
            await self._db.execute("PRAGMA foreign_keys=ON")
            await run_migrations(self._db, logger)
        except sqlite3.Error as e:
            raise StoreError(f"cannot open store {self.db_path}: {e}") from e

        self.blocks = BlockRepo(self._db, self._write_lock)
        self.transactions = TransactionRepo(self._db, self._write_lock)

        logger.info("Storage initialized: %s", self.db_path)

    async def close(self):
        if self._db:
            await self._db.close()
            self._db = None
            logger.info("Storage closed")

    # -------------------------------------------------------------------
    # Store adapter
    # -------------------------------------------------------------------

    async def existing_keys(self, kind: StreamKind, from_height: int, to_height: int) -> Set:
        """Identity keys persisted for ``kind`` in the inclusive height range."""
        if kind is StreamKind.BLOCKS:
            return await self.blocks.existing_heights(from_height, to_height)
        return await self.transactions.existing_keys(from_height, to_height)

    async def existing_heights(self, kind: StreamKind, from_height: int, to_height: int) -> Set[int]:
        keys = await self.existing_keys(kind, from_height, to_height)
        return {StreamKind.height_of(k) for k in keys}

    async def upsert_block(self, block: Block) -> bool:
        return await self.blocks.upsert(block)

    async def upsert_transaction(self, tx: Transaction, resolved_time: datetime) -> bool:
        return await self.transactions.upsert(tx, resolved_time)

    async def block_time(self, height: int) -> datetime:
        return await self.blocks.get_time(height)

    async def max_persisted_height(self, kind: StreamKind) -> Optional[int]:
        if kind is StreamKind.BLOCKS:
            return await self.blocks.max_height()
        return await self.transactions.max_height()
