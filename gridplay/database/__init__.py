"""Persistence for boards, squares and payment transactions."""
from .connection import close_db, create_session_factory, get_engine, get_session_factory, init_db
from .memory import InMemoryStore
from .models import (
    Base,
    BoardRecord,
    BoardSquareRecord,
    PaymentTransactionRecord,
    TransactionEventRecord,
)
from .repository import SqlAlchemyStore
from .store import GridStore, SquareUpdate

__all__ = [
    "Base",
    "BoardRecord",
    "BoardSquareRecord",
    "GridStore",
    "InMemoryStore",
    "PaymentTransactionRecord",
    "SqlAlchemyStore",
    "SquareUpdate",
    "TransactionEventRecord",
    "close_db",
    "create_session_factory",
    "get_engine",
    "get_session_factory",
    "init_db",
]
