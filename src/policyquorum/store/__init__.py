"""Policy record store backends."""

from .base import PolicyStore, StoreSession
from .sqlite import SQLitePolicyStore, SQLiteSession

__all__ = (
    "PolicyStore",
    "StoreSession",
    "SQLitePolicyStore",
    "SQLiteSession",
)
