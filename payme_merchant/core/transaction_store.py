"""
Persistent store for Payme transactions.

All writes are single conditional statements:
- insert_if_absent: INSERT ... ON CONFLICT DO NOTHING. Conflicts on the
  primary key (same Payme id) and on the partial unique index over
  order_id for states 1/2 (another id already holds the order).
- compare_and_set_state: UPDATE ... WHERE id = :id AND state = :expected
  RETURNING *. Exactly one concurrent caller wins a transition.
"""
import functools
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, TypeVar

import structlog
from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from payme_merchant.core.errors import TransientStoreError
from payme_merchant.database.models import (
    ACTIVE_STATES,
    PaymeTransaction,
    PaymeTransactionEvent,
    TransactionState,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_INSERT_BY_DIALECT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


@asynccontextmanager
async def translate_store_errors() -> AsyncIterator[None]:
    """Re-raise retryable database failures as TransientStoreError."""
    try:
        yield
    except OperationalError as e:
        raise TransientStoreError(str(e.orig or e)) from e
    except DBAPIError as e:
        if e.connection_invalidated:
            raise TransientStoreError(str(e.orig or e)) from e
        raise


def _transient(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        async with translate_store_errors():
            return await func(*args, **kwargs)

    return wrapper


class TransactionStore:
    """Transaction persistence bound to one database session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _insert(self) -> Callable[..., Any]:
        dialect = self.session.get_bind().dialect.name
        try:
            return _INSERT_BY_DIALECT[dialect]
        except KeyError:
            raise NotImplementedError(f"Unsupported database dialect: {dialect}")

    @_transient
    async def get_by_id(self, transaction_id: str) -> Optional[PaymeTransaction]:
        """
        Load a transaction by its Payme id.

        Always reads from the database so a caller that lost a race sees
        the winner's write.
        """
        return await self.session.get(
            PaymeTransaction, transaction_id, populate_existing=True
        )

    @_transient
    async def find_active_for_order(self, order_id: str) -> Optional[PaymeTransaction]:
        """Find the transaction in state 1 or 2 holding an order, if any."""
        stmt = (
            select(PaymeTransaction)
            .where(
                PaymeTransaction.order_id == order_id,
                PaymeTransaction.state.in_([int(s) for s in ACTIVE_STATES]),
            )
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    @_transient
    async def insert_if_absent(
        self,
        transaction_id: str,
        order_id: str,
        account: Dict[str, Any],
        amount: int,
        time: int,
        create_time: int,
    ) -> bool:
        """
        Insert a new transaction in state 1 unless it conflicts.

        Args:
            transaction_id: Payme transaction id
            order_id: Order the transaction pays for
            account: Account object as sent by Payme
            amount: Amount in tiyin
            time: Payme's creation time (epoch ms)
            create_time: Merchant creation time (epoch ms)

        Returns:
            bool: True if the row was inserted, False on any conflict
        """
        stmt = (
            self._insert()(PaymeTransaction)
            .values(
                id=transaction_id,
                order_id=order_id,
                account=account,
                amount=amount,
                time=time,
                state=int(TransactionState.CREATED),
                create_time=create_time,
                perform_time=0,
                cancel_time=0,
                reason=None,
            )
            .on_conflict_do_nothing()
        )
        result = await self.session.execute(stmt)
        inserted = result.rowcount == 1

        logger.info(
            "payme_transaction_insert",
            transaction_id=transaction_id,
            order_id=order_id,
            inserted=inserted,
        )
        return inserted

    @_transient
    async def compare_and_set_state(
        self,
        transaction_id: str,
        expected_state: TransactionState,
        new_state: TransactionState,
        **fields: Any,
    ) -> Optional[PaymeTransaction]:
        """
        Atomically move a transaction from expected_state to new_state.

        Args:
            transaction_id: Payme transaction id
            expected_state: State the row must currently be in
            new_state: State to move to
            **fields: Extra columns to set with the transition

        Returns:
            Optional[PaymeTransaction]: The updated record, or None if the
            row was not in expected_state
        """
        stmt = (
            update(PaymeTransaction)
            .where(
                PaymeTransaction.id == transaction_id,
                PaymeTransaction.state == int(expected_state),
            )
            .values(state=int(new_state), **fields)
            .returning(PaymeTransaction)
            .execution_options(synchronize_session=False, populate_existing=True)
        )
        result = await self.session.execute(stmt)
        updated = result.scalar_one_or_none()

        logger.info(
            "payme_transaction_compare_and_set",
            transaction_id=transaction_id,
            expected_state=int(expected_state),
            new_state=int(new_state),
            applied=updated is not None,
        )
        return updated

    @_transient
    async def list_by_time_range(self, from_time: int, to_time: int) -> List[PaymeTransaction]:
        """List transactions with create_time in [from_time, to_time], oldest first."""
        stmt = (
            select(PaymeTransaction)
            .where(PaymeTransaction.create_time.between(from_time, to_time))
            .order_by(PaymeTransaction.create_time.asc(), PaymeTransaction.id.asc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def record_event(
        self,
        transaction_id: str,
        event_type: str,
        event_data: Dict[str, Any],
        request_id: Optional[str] = None,
    ) -> None:
        """
        Record a transaction event for audit trail.

        Args:
            transaction_id: Payme transaction id
            event_type: Event type (e.g. 'transaction.performed')
            event_data: Event data
            request_id: Id of the request that caused the event
        """
        event = PaymeTransactionEvent(
            transaction_id=transaction_id,
            event_type=event_type,
            event_data=event_data,
            request_id=request_id,
        )
        self.session.add(event)
