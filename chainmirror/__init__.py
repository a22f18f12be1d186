"""
chainmirror - Incremental ledger mirror.

Continuously copies blocks and bank-send transactions from a remote ledger
query service into a local SQLite store, gap-free and idempotently.
"""

__version__ = "0.1.0"

__all__ = [
    "api",
    "config",
    "errors",
    "ledger_client",
    "ledger_simulator",
    "main",
    "models",
    "planner",
    "reconciler",
    "storage",
    "synchronizer",
]
