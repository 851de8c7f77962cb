"""Order lookup and status updates used by the transaction state machine."""
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from payme_merchant.database.models import Order, OrderStatus

logger = structlog.get_logger(__name__)

_CLOSING_STATUSES = (OrderStatus.CANCELLED, OrderStatus.FAILED, OrderStatus.REFUNDED)


class OrderRepository:
    """Reads orders and applies the status changes a settled transaction causes."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def find_order(self, order_id: str) -> Optional[Order]:
        """
        Find an order by its identifier.

        Args:
            order_id: Merchant order identifier (``account.orderId``)

        Returns:
            Optional[Order]: The order, or None if it does not exist
        """
        stmt = select(Order).where(Order.order_id == order_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def mark_order_status(self, order_id: str, status: OrderStatus) -> None:
        """
        Move an order to a new status.

        Sets completed_at when the order is paid and cancelled_at when it
        is cancelled, failed or refunded.
        """
        values: Dict[str, Any] = {"status": status.value}
        now = datetime.now(timezone.utc)
        if status == OrderStatus.PAID:
            values["completed_at"] = now
        elif status in _CLOSING_STATUSES:
            values["cancelled_at"] = now

        stmt = update(Order).where(Order.order_id == order_id).values(**values)
        result = await self.session.execute(stmt)
        if result.rowcount == 0:
            logger.warning("order_status_update_missed", order_id=order_id, status=status.value)
            return

        logger.info("order_status_updated", order_id=order_id, status=status.value)

    async def attach_transaction(self, order_id: str, transaction_id: str) -> None:
        """Record which transaction currently holds the order."""
        stmt = (
            update(Order)
            .where(Order.order_id == order_id)
            .values(transaction_id=transaction_id)
        )
        await self.session.execute(stmt)
