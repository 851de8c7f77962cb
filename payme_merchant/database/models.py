"""SQLAlchemy database models for the Payme merchant API."""
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")


class OrderStatus(str, Enum):
    """Order lifecycle as seen by the payment core."""

    PENDING = "PENDING"
    PAID = "PAID"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class TransactionState(IntEnum):
    """Payme transaction states."""

    CREATED = 1
    PERFORMED = 2
    CANCELLED = -1
    CANCELLED_AFTER_PERFORMED = -2

    @property
    def is_cancelled(self) -> bool:
        return self < 0


class CancelReason(IntEnum):
    """Reasons Payme sends with CancelTransaction."""

    RECEIVER_NOT_FOUND = 1
    DEBIT_ERROR = 2
    TRANSACTION_ERROR = 3
    TIMEOUT = 4
    REFUND = 5
    UNKNOWN_ERROR = 10


# States that hold an order; at most one such transaction per order.
ACTIVE_STATES = (TransactionState.CREATED, TransactionState.PERFORMED)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Order(Base):
    """
    Orders created by the order-management side before any payment call.

    The payment core only reads them and moves their status once a
    transaction settles.
    """

    __tablename__ = "orders"

    order_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    plan_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=OrderStatus.PENDING.value, index=True
    )
    transaction_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_order_amount"),
        CheckConstraint(
            "status IN ('PENDING', 'PAID', 'CANCELLED', 'FAILED', 'REFUNDED')",
            name="valid_order_status",
        ),
    )

    def __repr__(self) -> str:
        """String representation of Order."""
        return (
            f"<Order(order_id={self.order_id}, amount={self.amount}, "
            f"status={self.status})>"
        )


class PaymeTransaction(Base):
    """
    Payme transactions keyed by the id Payme assigns.

    perform_time and cancel_time are epoch milliseconds, 0 until set,
    and are written exactly once.
    """

    __tablename__ = "payme_transactions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    order_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    account: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    time: Mapped[int] = mapped_column(BigInteger, nullable=False)
    state: Mapped[int] = mapped_column(
        Integer, nullable=False, default=TransactionState.CREATED.value
    )
    create_time: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    perform_time: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    cancel_time: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    reason: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_transaction_amount"),
        CheckConstraint("state IN (1, 2, -1, -2)", name="valid_transaction_state"),
        Index(
            "uq_payme_transactions_active_order",
            "order_id",
            unique=True,
            postgresql_where=text("state IN (1, 2)"),
            sqlite_where=text("state IN (1, 2)"),
        ),
    )

    def __repr__(self) -> str:
        """String representation of PaymeTransaction."""
        return (
            f"<PaymeTransaction(id={self.id}, order_id={self.order_id}, "
            f"amount={self.amount}, state={self.state})>"
        )


class PaymeTransactionEvent(Base):
    """
    Transaction events audit trail table.

    One row per state transition, written in the same database
    transaction as the transition. Immutable once written.
    """

    __tablename__ = "payme_transaction_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transaction_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (Index("idx_payme_transaction_events_type", "event_type"),)

    def __repr__(self) -> str:
        """String representation of PaymeTransactionEvent."""
        return (
            f"<PaymeTransactionEvent(id={self.id}, transaction_id={self.transaction_id}, "
            f"type={self.event_type})>"
        )
