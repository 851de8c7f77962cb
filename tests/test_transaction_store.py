"""
Tests for the transaction store's conditional writes.
"""
import pytest
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from payme_merchant.core.errors import TransientStoreError
from payme_merchant.core.transaction_store import TransactionStore, translate_store_errors
from payme_merchant.database.models import PaymeTransactionEvent, TransactionState

from tests.support import START_TIME_MS


async def _insert(
    store: TransactionStore, transaction_id: str, order_id: str = "o1", time: int = START_TIME_MS
) -> bool:
    return await store.insert_if_absent(
        transaction_id=transaction_id,
        order_id=order_id,
        account={"orderId": order_id},
        amount=100000,
        time=time,
        create_time=time,
    )


class TestInsertIfAbsent:
    """Test suite for claiming an order."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_insert_new_transaction(self, test_db: AsyncSession) -> None:
        store = TransactionStore(test_db)

        assert await _insert(store, "t1") is True

        transaction = await store.get_by_id("t1")
        assert transaction is not None
        assert transaction.state == TransactionState.CREATED
        assert transaction.create_time == START_TIME_MS

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_same_id_conflicts(self, test_db: AsyncSession) -> None:
        store = TransactionStore(test_db)
        await _insert(store, "t1")

        assert await _insert(store, "t1") is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_second_active_transaction_for_order_conflicts(
        self, test_db: AsyncSession
    ) -> None:
        store = TransactionStore(test_db)
        await _insert(store, "t1")

        assert await _insert(store, "t2") is False
        assert await store.get_by_id("t2") is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancelled_transaction_releases_order(self, test_db: AsyncSession) -> None:
        store = TransactionStore(test_db)
        await _insert(store, "t1")
        await store.compare_and_set_state(
            "t1", TransactionState.CREATED, TransactionState.CANCELLED, cancel_time=1, reason=3
        )

        assert await _insert(store, "t2") is True
        active = await store.find_active_for_order("o1")
        assert active is not None and active.id == "t2"


class TestCompareAndSetState:
    """Test suite for atomic state transitions."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transition_returns_updated_record(self, test_db: AsyncSession) -> None:
        store = TransactionStore(test_db)
        await _insert(store, "t1")
        await store.get_by_id("t1")

        updated = await store.compare_and_set_state(
            "t1", TransactionState.CREATED, TransactionState.PERFORMED, perform_time=123
        )

        assert updated is not None
        assert updated.state == TransactionState.PERFORMED
        assert updated.perform_time == 123

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stale_expected_state_is_refused(self, test_db: AsyncSession) -> None:
        store = TransactionStore(test_db)
        await _insert(store, "t1")
        await store.compare_and_set_state(
            "t1", TransactionState.CREATED, TransactionState.PERFORMED, perform_time=123
        )

        again = await store.compare_and_set_state(
            "t1", TransactionState.CREATED, TransactionState.PERFORMED, perform_time=456
        )

        assert again is None
        transaction = await store.get_by_id("t1")
        assert transaction.perform_time == 123

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_transaction(self, test_db: AsyncSession) -> None:
        store = TransactionStore(test_db)

        assert (
            await store.compare_and_set_state(
                "nope", TransactionState.CREATED, TransactionState.PERFORMED
            )
            is None
        )


class TestQueries:
    """Test suite for reads and audit events."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_list_by_time_range_is_inclusive_and_ordered(
        self, test_db: AsyncSession
    ) -> None:
        store = TransactionStore(test_db)
        await _insert(store, "late", "o3", START_TIME_MS + 20)
        await _insert(store, "early", "o1", START_TIME_MS)
        await _insert(store, "middle", "o2", START_TIME_MS + 10)
        await _insert(store, "outside", "o4", START_TIME_MS + 21)

        transactions = await store.list_by_time_range(START_TIME_MS, START_TIME_MS + 20)

        assert [t.id for t in transactions] == ["early", "middle", "late"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_find_active_ignores_cancelled(self, test_db: AsyncSession) -> None:
        store = TransactionStore(test_db)
        await _insert(store, "t1")
        await store.compare_and_set_state(
            "t1", TransactionState.CREATED, TransactionState.CANCELLED, cancel_time=1, reason=1
        )

        assert await store.find_active_for_order("o1") is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_record_event(self, test_db: AsyncSession) -> None:
        store = TransactionStore(test_db)

        await store.record_event(
            "t1", "transaction.performed", {"perform_time": 1}, request_id="7"
        )
        await test_db.flush()

        event = await test_db.get(PaymeTransactionEvent, 1)
        assert event.event_type == "transaction.performed"
        assert event.event_data == {"perform_time": 1}
        assert event.request_id == "7"


class TestTranslateStoreErrors:
    """Only retryable database failures become TransientStoreError."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_operational_error_is_transient(self) -> None:
        with pytest.raises(TransientStoreError):
            async with translate_store_errors():
                raise OperationalError("UPDATE ...", {}, Exception("database is locked"))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_integrity_error_propagates(self) -> None:
        with pytest.raises(IntegrityError):
            async with translate_store_errors():
                raise IntegrityError("INSERT ...", {}, Exception("constraint failed"))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalidated_connection_is_transient(self) -> None:
        error = DBAPIError(
            "SELECT 1", {}, Exception("connection reset"), connection_invalidated=True
        )

        with pytest.raises(TransientStoreError):
            async with translate_store_errors():
                raise error
