"""
test_storage.py - Unit tests for the store adapter.

Covers insert-if-absent idempotency, range existence checks, cursor
seeding from the highest persisted height and parent-time lookups,
using in-memory SQLite.
"""

import pytest

from chainmirror.errors import NotFound, StoreWriteError
from chainmirror.models import StreamKind
from chainmirror.storage import SCHEMA_VERSION, StorageManager

from fakes import GENESIS, make_block, make_tx

pytestmark = pytest.mark.asyncio


async def _table_rows(storage, table):
    async with storage._db.execute(f"SELECT * FROM {table}") as cursor:
        return await cursor.fetchall()


class TestSchema:

    async def test_schema_version_recorded(self, storage):
        async with storage._db.execute("SELECT MAX(version) FROM schema_version") as cursor:
            row = await cursor.fetchone()
        assert row[0] == SCHEMA_VERSION

    async def test_fresh_database_has_address_indexes(self, storage):
        async with storage._db.execute(
            "SELECT name FROM sqlite_master WHERE type = 'index' AND tbl_name = 'transfers'"
        ) as cursor:
            names = {row[0] for row in await cursor.fetchall()}
        assert {"idx_transfers_from", "idx_transfers_to"} <= names
        assert SCHEMA_VERSION == 1

    async def test_reopen_does_not_migrate_twice(self, tmp_path):
        path = str(tmp_path / "mirror.db")
        for _ in range(2):
            sm = StorageManager(path)
            await sm.initialize()
            await sm.close()
        sm = StorageManager(path)
        await sm.initialize()
        rows = await _table_rows(sm, "schema_version")
        await sm.close()
        assert len(rows) == 1


class TestBlockUpsert:

    async def test_insert_new_block(self, storage):
        inserted = await storage.upsert_block(make_block(100))
        assert inserted is True
        block = await storage.blocks.get(100)
        assert block["chain_id"] == "test-1"
        assert block["proposer_address_raw"] == "proposer1"

    async def test_upsert_twice_is_idempotent(self, storage):
        block = make_block(100)
        await storage.upsert_block(block)
        before = await _table_rows(storage, "blocks")
        again = await storage.upsert_block(block)
        after = await _table_rows(storage, "blocks")
        assert again is False
        assert before == after

    async def test_conflict_keeps_first_version(self, storage):
        await storage.upsert_block(make_block(100, version="1"))
        await storage.upsert_block(make_block(100, version="2"))
        block = await storage.blocks.get(100)
        assert block["version"] == "1"

    async def test_write_failure_raises_store_write_error(self, storage):
        await storage._db.execute("DROP TABLE blocks")
        with pytest.raises(StoreWriteError):
            await storage.upsert_block(make_block(1))


class TestTransactionUpsert:

    async def test_insert_with_transfers(self, storage):
        tx = make_tx(50, 0, [("10ugnot", "a", "b"), ("20ugnot", "a", "c")])
        inserted = await storage.upsert_transaction(tx, GENESIS)
        assert inserted is True
        rows = await storage.transactions.list_range(50, 50)
        assert len(rows) == 1
        assert rows[0]["transfer_count"] == 2
        assert [t["to_address"] for t in rows[0]["transfers"]] == ["b", "c"]

    async def test_upsert_twice_is_idempotent(self, storage):
        tx = make_tx(50, 1)
        await storage.upsert_transaction(tx, GENESIS)
        tx_before = await _table_rows(storage, "transactions")
        transfers_before = await _table_rows(storage, "transfers")
        again = await storage.upsert_transaction(tx, GENESIS)
        assert again is False
        assert await _table_rows(storage, "transactions") == tx_before
        assert await _table_rows(storage, "transfers") == transfers_before

    async def test_empty_transfers_allowed(self, storage):
        await storage.upsert_transaction(make_tx(7, 0, []), GENESIS)
        rows = await storage.transactions.list_range(7, 7)
        assert rows[0]["transfer_count"] == 0
        assert rows[0]["transfers"] == []

    async def test_transaction_without_parent_block(self, storage):
        # No FK to blocks: a transaction may land before its block
        await storage.upsert_transaction(make_tx(999), GENESIS)
        assert await storage.transactions.count() == 1
        assert await storage.blocks.count() == 0

    async def test_same_height_different_index(self, storage):
        await storage.upsert_transaction(make_tx(5, 0), GENESIS)
        await storage.upsert_transaction(make_tx(5, 1), GENESIS)
        keys = await storage.existing_keys(StreamKind.TRANSACTIONS, 5, 5)
        assert keys == {(5, 0), (5, 1)}


class TestExistence:

    async def test_existing_block_heights_in_range(self, storage):
        for h in (99, 100, 103, 109, 110):
            await storage.upsert_block(make_block(h))
        keys = await storage.existing_keys(StreamKind.BLOCKS, 100, 109)
        assert keys == {100, 103, 109}

    async def test_existing_heights_for_transactions(self, storage):
        await storage.upsert_transaction(make_tx(10, 0), GENESIS)
        await storage.upsert_transaction(make_tx(10, 1), GENESIS)
        await storage.upsert_transaction(make_tx(12, 0), GENESIS)
        heights = await storage.existing_heights(StreamKind.TRANSACTIONS, 1, 100)
        assert heights == {10, 12}

    async def test_empty_range(self, storage):
        assert await storage.existing_keys(StreamKind.BLOCKS, 1, 10) == set()


class TestMaxPersistedHeight:

    async def test_none_when_empty(self, storage):
        assert await storage.max_persisted_height(StreamKind.BLOCKS) is None
        assert await storage.max_persisted_height(StreamKind.TRANSACTIONS) is None

    async def test_per_kind(self, storage):
        await storage.upsert_block(make_block(40))
        await storage.upsert_block(make_block(42))
        await storage.upsert_transaction(make_tx(17), GENESIS)
        assert await storage.max_persisted_height(StreamKind.BLOCKS) == 42
        assert await storage.max_persisted_height(StreamKind.TRANSACTIONS) == 17


class TestBlockTime:

    async def test_resolves_time(self, storage):
        block = make_block(50)
        await storage.upsert_block(block)
        assert await storage.block_time(50) == block.time

    async def test_missing_block_raises_not_found(self, storage):
        with pytest.raises(NotFound):
            await storage.block_time(50)


class TestQueries:

    async def test_list_blocks_range_and_limit(self, storage):
        for h in range(1, 21):
            await storage.upsert_block(make_block(h))
        rows = await storage.blocks.list_range(5, 15, limit=3)
        assert [r["height"] for r in rows] == [5, 6, 7]

    async def test_transfers_for_address(self, storage):
        await storage.upsert_transaction(make_tx(1, 0, [("1ugnot", "alice", "bob")]), GENESIS)
        await storage.upsert_transaction(make_tx(2, 0, [("2ugnot", "carol", "alice")]), GENESIS)
        await storage.upsert_transaction(make_tx(3, 0, [("3ugnot", "bob", "carol")]), GENESIS)
        rows = await storage.transactions.list_for_address("alice")
        assert [(r["block_height"], r["amount"]) for r in rows] == [(2, "2ugnot"), (1, "1ugnot")]
