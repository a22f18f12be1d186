"""
Shared fixtures for chainmirror integration tests.

Provides:
 - a LedgerSimulator served over real HTTP (LedgerServer)
 - a started LedgerClient pointed at it
 - a SyncConfig with millisecond intervals so full loops run in tests
"""

import os
import sys

import pytest
import pytest_asyncio

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from chainmirror.config import SyncConfig
from chainmirror.ledger_client import LedgerClient
from chainmirror.ledger_simulator import LedgerSimulator
from chainmirror.storage import StorageManager

from unit.fakes import LedgerServer


@pytest_asyncio.fixture
async def storage():
    sm = StorageManager(":memory:")
    await sm.initialize()
    yield sm
    await sm.close()


@pytest.fixture
def simulator():
    return LedgerSimulator(seed=42)


@pytest_asyncio.fixture
async def ledger_server(simulator):
    server = LedgerServer(simulator)
    await server.start()
    yield server
    await server.close()


@pytest_asyncio.fixture
async def client(ledger_server):
    ledger_client = LedgerClient(ledger_server.url, request_timeout=5.0)
    await ledger_client.start()
    yield ledger_client
    await ledger_client.stop()


@pytest.fixture
def fast_config(ledger_server):
    return SyncConfig(
        endpoint=ledger_server.url,
        db_path=":memory:",
        block_window=10,
        tx_window=20,
        block_start_height=1,
        tx_start_height=1,
        poll_interval=0.01,
        backoff_base=0.01,
        backoff_max=0.05,
        time_lookup_retries=10,
        time_lookup_base=0.01,
        api_port=0,
    )
