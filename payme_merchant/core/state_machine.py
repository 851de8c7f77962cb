"""
Payme transaction state machine.

One handler per merchant API method. Handlers validate params against the
stored order and transaction, apply at most one transition through the
store's compare-and-set, and return the result object Payme expects.

Transaction states move only along 1 -> 2 -> -2 or 1 -> -1.
Validation order inside Check/Create is fixed by the protocol:
account, then amount, then transaction state.
"""
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import structlog

from payme_merchant.config import Settings
from payme_merchant.core.errors import (
    CannotPerformOperationError,
    InvalidAccountError,
    InvalidAmountError,
    InvalidRequestError,
    MethodNotFoundError,
    TransactionNotFoundError,
)
from payme_merchant.core.orders import OrderRepository
from payme_merchant.core.transaction_store import TransactionStore
from payme_merchant.database.models import (
    CancelReason,
    Order,
    OrderStatus,
    PaymeTransaction,
    TransactionState,
)
from payme_merchant.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

Params = Mapping[str, Any]
Result = Dict[str, Any]

SUPPORTED_METHODS = (
    "CheckPerformTransaction",
    "CreateTransaction",
    "PerformTransaction",
    "CancelTransaction",
    "CheckTransaction",
    "GetStatement",
    "ChangePassword",
)


def epoch_millis() -> int:
    """Current time in epoch milliseconds."""
    return int(time.time() * 1000)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


@dataclass(frozen=True)
class OrderPolicy:
    """Which orders accept a new transaction, and how cancellation after payment lands."""

    allow_reattempt: bool = True
    cancel_performed_status: OrderStatus = OrderStatus.REFUNDED

    @classmethod
    def from_settings(cls, settings: Settings) -> "OrderPolicy":
        return cls(
            allow_reattempt=settings.payme_allow_order_reattempt,
            cancel_performed_status=OrderStatus(settings.payme_cancel_performed_order_status),
        )

    def accepts(self, status: str) -> bool:
        """Check whether an order in this status may be paid."""
        if status == OrderStatus.PENDING.value:
            return True
        if self.allow_reattempt:
            return status in (OrderStatus.CANCELLED.value, OrderStatus.FAILED.value)
        return False


class TransactionStateMachine:
    """
    Merchant API method handlers.

    Bound to one database session through its store and order repository.
    Raises PaymeError subclasses for protocol errors.
    """

    def __init__(
        self,
        store: TransactionStore,
        orders: OrderRepository,
        policy: Optional[OrderPolicy] = None,
        clock: Callable[[], int] = epoch_millis,
        request_id: Optional[str] = None,
    ):
        """
        Initialize the state machine.

        Args:
            store: Transaction store
            orders: Order repository
            policy: Order acceptance policy
            clock: Source of epoch-millisecond timestamps
            request_id: Id of the current request, recorded on audit events
        """
        self.store = store
        self.orders = orders
        self.policy = policy or OrderPolicy()
        self.clock = clock
        self.request_id = request_id
        self._handlers: Dict[str, Callable[[Params], Awaitable[Result]]] = {
            "CheckPerformTransaction": self.check_perform_transaction,
            "CreateTransaction": self.create_transaction,
            "PerformTransaction": self.perform_transaction,
            "CancelTransaction": self.cancel_transaction,
            "CheckTransaction": self.check_transaction,
            "GetStatement": self.get_statement,
            "ChangePassword": self.change_password,
        }

    async def dispatch(self, method: str, params: Params) -> Result:
        """Run the handler for a merchant API method."""
        handler = self._handlers.get(method)
        if handler is None:
            raise MethodNotFoundError()
        return await handler(params)

    # ------------------------------------------------------------------
    # Param validation
    # ------------------------------------------------------------------

    @staticmethod
    def _account_order_id(params: Params) -> str:
        account = params.get("account")
        if not isinstance(account, Mapping):
            raise InvalidAccountError("Missing orderId")
        order_id = account.get("orderId")
        if not isinstance(order_id, str) or not order_id.strip():
            raise InvalidAccountError("Missing orderId")
        return order_id

    async def _resolve_order(self, params: Params) -> Order:
        order_id = self._account_order_id(params)
        order = await self.orders.find_order(order_id)
        if order is None:
            logger.info("payme_order_not_found", order_id=order_id)
            raise InvalidAccountError("Order not found")
        return order

    @staticmethod
    def _check_amount(params: Params, expected: int) -> int:
        amount = params.get("amount")
        if not _is_int(amount) or amount != expected:
            logger.info("payme_amount_mismatch", amount=amount, expected=expected)
            raise InvalidAmountError()
        return amount

    @staticmethod
    def _transaction_id(params: Params) -> str:
        transaction_id = params.get("id")
        if not isinstance(transaction_id, str) or not transaction_id:
            raise InvalidRequestError("Missing transaction id")
        return transaction_id

    @staticmethod
    def _int_param(params: Params, name: str) -> int:
        value = params.get(name)
        if not _is_int(value):
            raise InvalidRequestError(f"Invalid {name}")
        return value

    @staticmethod
    def _cancel_reason(params: Params) -> CancelReason:
        reason = params.get("reason")
        if not _is_int(reason):
            raise InvalidRequestError("Invalid reason")
        try:
            return CancelReason(reason)
        except ValueError:
            raise InvalidRequestError("Invalid reason")

    async def _ensure_order_payable(self, order: Order) -> None:
        if not self.policy.accepts(order.status):
            logger.info(
                "payme_order_not_payable", order_id=order.order_id, status=order.status
            )
            raise CannotPerformOperationError()

        active = await self.store.find_active_for_order(order.order_id)
        if active is not None:
            logger.info(
                "payme_order_already_claimed",
                order_id=order.order_id,
                transaction_id=active.id,
                state=active.state,
            )
            raise CannotPerformOperationError()

    async def _load(self, transaction_id: str) -> PaymeTransaction:
        transaction = await self.store.get_by_id(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError()
        return transaction

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def check_perform_transaction(self, params: Params) -> Result:
        """Tell Payme whether the order can be paid with this amount. No side effects."""
        order = await self._resolve_order(params)
        self._check_amount(params, order.amount)
        await self._ensure_order_payable(order)
        return {"allow": True}

    async def create_transaction(self, params: Params) -> Result:
        """
        Open a transaction against an order.

        A repeated call with a known id is a replay: the stored record is
        returned unchanged after checking the account and amount match.
        """
        transaction_id = self._transaction_id(params)

        existing = await self.store.get_by_id(transaction_id)
        if existing is not None:
            return self._replay_create(existing, params)

        order = await self._resolve_order(params)
        amount = self._check_amount(params, order.amount)
        create_time = self._int_param(params, "time")
        await self._ensure_order_payable(order)

        inserted = await self.store.insert_if_absent(
            transaction_id=transaction_id,
            order_id=order.order_id,
            account=dict(params["account"]),
            amount=amount,
            time=create_time,
            create_time=create_time,
        )
        if not inserted:
            # Either the same id landed concurrently, or another id claimed the order.
            existing = await self.store.get_by_id(transaction_id)
            if existing is not None:
                return self._replay_create(existing, params)
            logger.info(
                "payme_order_claim_lost", order_id=order.order_id, transaction_id=transaction_id
            )
            raise CannotPerformOperationError()

        await self.orders.attach_transaction(order.order_id, transaction_id)
        await self.store.record_event(
            transaction_id,
            "transaction.created",
            {"order_id": order.order_id, "amount": amount, "create_time": create_time},
            request_id=self.request_id,
        )
        metrics.record_transition("none", TransactionState.CREATED.name.lower())

        logger.info(
            "payme_transaction_created",
            transaction_id=transaction_id,
            order_id=order.order_id,
            amount=amount,
        )
        return {
            "create_time": create_time,
            "transaction": transaction_id,
            "state": int(TransactionState.CREATED),
        }

    def _replay_create(self, existing: PaymeTransaction, params: Params) -> Result:
        order_id = self._account_order_id(params)
        if order_id != existing.order_id:
            raise InvalidAccountError("Order not found")
        self._check_amount(params, existing.amount)

        logger.info(
            "payme_create_transaction_replay",
            transaction_id=existing.id,
            state=existing.state,
        )
        return {
            "create_time": existing.create_time,
            "transaction": existing.id,
            "state": existing.state,
        }

    async def perform_transaction(self, params: Params) -> Result:
        """
        Confirm payment: move a transaction from CREATED to PERFORMED.

        A performed transaction returns its original perform_time; a
        cancelled one can never be performed.
        """
        transaction_id = self._transaction_id(params)
        transaction = await self._load(transaction_id)

        # A lost compare-and-set means the state has left CREATED for good,
        # so this loop runs at most twice.
        while True:
            state = TransactionState(transaction.state)
            if state == TransactionState.PERFORMED:
                logger.info("payme_perform_transaction_replay", transaction_id=transaction_id)
                return self._perform_result(transaction)
            if state.is_cancelled:
                logger.info(
                    "payme_perform_cancelled_transaction",
                    transaction_id=transaction_id,
                    state=int(state),
                )
                raise CannotPerformOperationError()

            updated = await self.store.compare_and_set_state(
                transaction_id,
                TransactionState.CREATED,
                TransactionState.PERFORMED,
                perform_time=self.clock(),
            )
            if updated is not None:
                await self.orders.mark_order_status(updated.order_id, OrderStatus.PAID)
                await self.store.record_event(
                    transaction_id,
                    "transaction.performed",
                    {"order_id": updated.order_id, "perform_time": updated.perform_time},
                    request_id=self.request_id,
                )
                metrics.record_transition(
                    TransactionState.CREATED.name.lower(), TransactionState.PERFORMED.name.lower()
                )
                logger.info(
                    "payme_transaction_performed",
                    transaction_id=transaction_id,
                    order_id=updated.order_id,
                    perform_time=updated.perform_time,
                )
                return self._perform_result(updated)

            transaction = await self._load(transaction_id)

    @staticmethod
    def _perform_result(transaction: PaymeTransaction) -> Result:
        return {
            "transaction": transaction.id,
            "perform_time": transaction.perform_time,
            "state": transaction.state,
        }

    async def cancel_transaction(self, params: Params) -> Result:
        """
        Cancel a transaction before or after payment.

        CREATED goes to CANCELLED, PERFORMED goes to
        CANCELLED_AFTER_PERFORMED keeping its perform_time. A cancelled
        transaction returns its original cancel_time.
        """
        transaction_id = self._transaction_id(params)
        transaction = await self._load(transaction_id)
        reason = self._cancel_reason(params)

        while True:
            state = TransactionState(transaction.state)
            if state.is_cancelled:
                logger.info("payme_cancel_transaction_replay", transaction_id=transaction_id)
                return self._cancel_result(transaction)

            if state == TransactionState.CREATED:
                target, order_status = TransactionState.CANCELLED, OrderStatus.CANCELLED
            else:
                target = TransactionState.CANCELLED_AFTER_PERFORMED
                order_status = self.policy.cancel_performed_status

            cancel_time = self.clock()
            if state == TransactionState.PERFORMED and transaction.perform_time is not None:
                # cancel_time must follow perform_time even within one millisecond.
                cancel_time = max(cancel_time, transaction.perform_time + 1)

            updated = await self.store.compare_and_set_state(
                transaction_id,
                state,
                target,
                cancel_time=cancel_time,
                reason=int(reason),
            )
            if updated is not None:
                await self.orders.mark_order_status(updated.order_id, order_status)
                await self.store.record_event(
                    transaction_id,
                    "transaction.cancelled",
                    {
                        "order_id": updated.order_id,
                        "from_state": int(state),
                        "state": updated.state,
                        "cancel_time": updated.cancel_time,
                        "reason": updated.reason,
                    },
                    request_id=self.request_id,
                )
                metrics.record_transition(state.name.lower(), target.name.lower())
                logger.info(
                    "payme_transaction_cancelled",
                    transaction_id=transaction_id,
                    order_id=updated.order_id,
                    state=updated.state,
                    reason=updated.reason,
                )
                return self._cancel_result(updated)

            transaction = await self._load(transaction_id)

    @staticmethod
    def _cancel_result(transaction: PaymeTransaction) -> Result:
        return {
            "transaction": transaction.id,
            "cancel_time": transaction.cancel_time,
            "state": transaction.state,
        }

    async def check_transaction(self, params: Params) -> Result:
        """Report a transaction exactly as stored."""
        transaction = await self._load(self._transaction_id(params))
        return {
            "create_time": transaction.create_time,
            "perform_time": transaction.perform_time,
            "cancel_time": transaction.cancel_time,
            "transaction": transaction.id,
            "state": transaction.state,
            "reason": transaction.reason,
        }

    async def get_statement(self, params: Params) -> Result:
        """List transactions created within [from, to] for reconciliation."""
        from_time = self._int_param(params, "from")
        to_time = self._int_param(params, "to")

        transactions = await self.store.list_by_time_range(from_time, to_time)
        logger.info(
            "payme_statement_built",
            from_time=from_time,
            to_time=to_time,
            count=len(transactions),
        )
        return {
            "transactions": [
                {
                    "id": t.id,
                    "time": t.time,
                    "amount": t.amount,
                    "account": t.account,
                    "create_time": t.create_time,
                    "perform_time": t.perform_time,
                    "cancel_time": t.cancel_time,
                    "transaction": t.id,
                    "state": t.state,
                    "reason": t.reason,
                    "receivers": None,
                }
                for t in transactions
            ]
        }

    async def change_password(self, params: Params) -> Result:
        """
        Acknowledge a merchant key change.

        The key itself is deployment configuration; operators rotate
        PAYME_MERCHANT_KEY when this is logged.
        """
        password = params.get("password")
        if not isinstance(password, str) or not password:
            raise InvalidRequestError("Invalid password")

        logger.warning("payme_change_password_requested")
        return {"success": True}
