from ._schema import SCHEMA_VERSION, SCHEMA_SQL
from .blocks import BlockRepo
from .transactions import TransactionRepo
from .manager import StorageManager

__all__ = [
    "SCHEMA_VERSION",
    "SCHEMA_SQL",
    "BlockRepo",
    "TransactionRepo",
    "StorageManager",
]
