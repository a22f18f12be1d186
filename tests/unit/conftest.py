"""Shared fixtures for chainmirror unit tests."""

import pytest
import pytest_asyncio

from chainmirror.config import SyncConfig
from chainmirror.errors import NetworkError
from chainmirror.storage import StorageManager

from fakes import FakeLedger


@pytest_asyncio.fixture
async def storage():
    sm = StorageManager(":memory:")
    await sm.initialize()
    yield sm
    await sm.close()


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def config():
    return SyncConfig(
        endpoint="http://ledger.invalid/graphql/query",
        db_path=":memory:",
        block_start_height=100,
        tx_start_height=1,
        poll_interval=60.0,
        backoff_base=60.0,
        time_lookup_base=60.0,
        api_port=0,
    )


@pytest.fixture
def network_error():
    return NetworkError("connection refused")
