"""Database package for the Payme merchant API."""
from .connection import close_db, create_session_factory, get_session_factory, init_db
from .models import (
    Base,
    CancelReason,
    Order,
    OrderStatus,
    PaymeTransaction,
    PaymeTransactionEvent,
    TransactionState,
)

__all__ = [
    "Base",
    "CancelReason",
    "Order",
    "OrderStatus",
    "PaymeTransaction",
    "PaymeTransactionEvent",
    "TransactionState",
    "close_db",
    "create_session_factory",
    "get_session_factory",
    "init_db",
]
