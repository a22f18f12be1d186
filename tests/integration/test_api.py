"""
test_api.py - Integration tests for the mirror REST endpoints and the
simulator's query routes.

Uses FastAPI TestClient with real repos backed by in-memory SQLite.
"""

import pytest
import pytest_asyncio

from chainmirror.api import MAX_PAGE, create_app
from chainmirror.ledger_simulator import LedgerSimulator
from chainmirror.synchronizer import Synchronizer

from unit.fakes import GENESIS, FakeLedger, make_block, make_tx

pytestmark = pytest.mark.asyncio


@pytest_asyncio.fixture
async def seeded(storage):
    for h in range(1, 31):
        await storage.upsert_block(make_block(h))
    await storage.upsert_transaction(make_tx(3, 0, [("10ugnot", "g1alice", "g1bob")]), GENESIS)
    await storage.upsert_transaction(make_tx(3, 1, [("5ugnot", "g1bob", "g1carol")]), GENESIS)
    await storage.upsert_transaction(make_tx(9, 0, [("1ugnot", "g1carol", "g1alice")]), GENESIS)
    return storage


@pytest.fixture
def synchronizer(storage, fast_config):
    return Synchronizer(storage, FakeLedger(), fast_config)


@pytest.fixture
def client(seeded, synchronizer):
    from fastapi.testclient import TestClient
    return TestClient(create_app(seeded, synchronizer))


class TestStatus:

    async def test_status(self, client):
        resp = client.get("/api/status")
        assert resp.status_code == 200
        data = resp.json()
        assert data["running"] is False
        assert data["stored_blocks"] == 30
        assert data["stored_transactions"] == 3
        assert set(data["streams"]) == {"blocks", "transactions"}
        assert data["streams"]["blocks"]["state"] == "PLANNING"
        assert data["streams"]["blocks"]["window"] == 10

    async def test_status_without_synchronizer(self, seeded):
        from fastapi.testclient import TestClient
        resp = TestClient(create_app(seeded)).get("/api/status")
        assert resp.json()["streams"] == {}


class TestBlocks:

    async def test_list_range(self, client):
        resp = client.get("/api/blocks", params={"from_height": 10, "to_height": 14})
        assert [b["height"] for b in resp.json()] == [10, 11, 12, 13, 14]

    async def test_limit(self, client):
        resp = client.get("/api/blocks", params={"limit": 5})
        assert len(resp.json()) == 5

    async def test_limit_bounds(self, client):
        assert client.get("/api/blocks", params={"limit": 0}).status_code == 422
        assert client.get("/api/blocks", params={"limit": MAX_PAGE + 1}).status_code == 422

    async def test_get_block(self, client):
        resp = client.get("/api/blocks/7")
        assert resp.status_code == 200
        assert resp.json()["height"] == 7
        assert resp.json()["chain_id"] == "test-1"

    async def test_get_missing_block(self, client):
        assert client.get("/api/blocks/999").status_code == 404


class TestTransactions:

    async def test_list_with_transfers(self, client):
        resp = client.get("/api/transactions", params={"from_height": 3, "to_height": 3})
        txs = resp.json()
        assert [(t["block_height"], t["index"]) for t in txs] == [(3, 0), (3, 1)]
        assert txs[0]["transfers"][0]["amount"] == "10ugnot"

    async def test_address_transfers(self, client):
        resp = client.get("/api/addresses/g1alice/transfers")
        rows = resp.json()
        assert [(r["block_height"], r["index"]) for r in rows] == [(9, 0), (3, 0)]

    async def test_unknown_address(self, client):
        assert client.get("/api/addresses/g1nobody/transfers").json() == []


class TestSimulatorRoutes:

    @pytest.fixture
    def sim_client(self):
        from fastapi import FastAPI
        from fastapi.testclient import TestClient
        sim = LedgerSimulator(seed=1)
        sim.produce_blocks(12)
        app = FastAPI()
        sim.register_routes(app)
        return sim, TestClient(app)

    async def test_tip_query(self, sim_client):
        _, http = sim_client
        resp = http.post("/graphql/query", json={"query": "query { latestBlockHeight }"})
        assert resp.json() == {"data": {"latestBlockHeight": 12}}

    async def test_blocks_query(self, sim_client):
        _, http = sim_client
        query = ("{ blocks(filter: { from_height: 3, to_height: 5 }) "
                 "{ time height version chain_id proposer_address_raw } }")
        blocks = http.post("/graphql/query", json={"query": query}).json()["data"]["blocks"]
        assert [b["height"] for b in blocks] == [3, 4, 5]
        assert blocks[0]["time"].endswith("Z")

    async def test_injected_faults(self, sim_client):
        sim, http = sim_client
        sim.inject_faults("network")
        sim.inject_faults("decode")
        query = {"query": "query { latestBlockHeight }"}
        assert http.post("/graphql/query", json=query).status_code == 503
        resp = http.post("/graphql/query", json=query)
        assert resp.status_code == 200
        assert resp.text.startswith("<html>")

    async def test_unsupported_query(self, sim_client):
        _, http = sim_client
        body = http.post("/graphql/query", json={"query": "{ accounts }"}).json()
        assert body["errors"][0]["message"] == "unsupported query"

    async def test_stats(self, sim_client):
        sim, http = sim_client
        sim.mark_missing(4)
        stats = http.get("/ledger/stats").json()
        assert stats["height"] == 12
        assert stats["missing_heights"] == [4]
