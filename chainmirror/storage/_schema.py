SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied_at REAL NOT NULL
);

-- Blocks: one row per ledger height, write-once
CREATE TABLE IF NOT EXISTS blocks (
    height               INTEGER PRIMARY KEY,
    time                 TEXT NOT NULL,
    version              TEXT NOT NULL DEFAULT '',
    chain_id             TEXT NOT NULL DEFAULT '',
    proposer_address_raw TEXT NOT NULL DEFAULT '',
    created_at           REAL NOT NULL
);

-- Transactions: identity is (block_height, tx_index); no FK to blocks,
-- a transaction may be mirrored before its parent block
CREATE TABLE IF NOT EXISTS transactions (
    block_height   INTEGER NOT NULL,
    tx_index       INTEGER NOT NULL,
    time           TEXT NOT NULL,
    transfer_count INTEGER NOT NULL DEFAULT 0,
    created_at     REAL NOT NULL,
    PRIMARY KEY (block_height, tx_index)
);

-- Transfers: bank send messages of a transaction, in message order
CREATE TABLE IF NOT EXISTS transfers (
    block_height INTEGER NOT NULL,
    tx_index     INTEGER NOT NULL,
    position     INTEGER NOT NULL,
    amount       TEXT NOT NULL DEFAULT '',
    from_address TEXT NOT NULL DEFAULT '',
    to_address   TEXT NOT NULL DEFAULT '',
    PRIMARY KEY (block_height, tx_index, position),
    FOREIGN KEY (block_height, tx_index) REFERENCES transactions(block_height, tx_index)
);

CREATE INDEX IF NOT EXISTS idx_transfers_from ON transfers(from_address);
CREATE INDEX IF NOT EXISTS idx_transfers_to ON transfers(to_address);
"""
