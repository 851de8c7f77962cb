"""
Race condition tests for concurrent Payme calls.

Each call runs in its own session and database transaction, as separate
workers would. Exactly one caller may win any transition.
"""
import asyncio
from typing import Any

import pytest

from payme_merchant.core.errors import CANNOT_PERFORM_OPERATION

from tests.support import START_TIME_MS


def _create(transaction_id: str, order_id: str = "o1", amount: int = 100000) -> dict:
    return {
        "id": transaction_id,
        "time": START_TIME_MS,
        "amount": amount,
        "account": {"orderId": order_id},
    }


class TestRaceConditions:
    """Test suite for race condition scenarios."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_perform_same_transaction(
        self, rpc: Any, orders: Any, load_events: Any, load_order: Any
    ) -> None:
        """All callers see one transition and the same perform_time."""
        await rpc("CreateTransaction", _create("t1"))

        results = await asyncio.gather(
            *[rpc("PerformTransaction", {"id": "t1"}, request_id=i) for i in range(5)]
        )

        perform_times = {r["result"]["perform_time"] for r in results}
        assert len(perform_times) == 1
        assert all(r["result"]["state"] == 2 for r in results)

        performed = [e for e in await load_events("t1") if e.event_type == "transaction.performed"]
        assert len(performed) == 1
        assert (await load_order("o1")).status == "PAID"

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_create_different_ids_same_order(
        self, rpc: Any, orders: Any, load_transactions: Any
    ) -> None:
        """Only one transaction may claim an order."""
        results = await asyncio.gather(
            *[rpc("CreateTransaction", _create(f"t{i}"), request_id=i) for i in range(5)]
        )

        winners = [r for r in results if "result" in r]
        losers = [r for r in results if "error" in r]
        assert len(winners) == 1
        assert all(r["error"]["code"] == CANNOT_PERFORM_OPERATION for r in losers)

        stored = await load_transactions("o1")
        assert [t.id for t in stored] == [winners[0]["result"]["transaction"]]

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_create_same_id(
        self, rpc: Any, orders: Any, load_transactions: Any
    ) -> None:
        """Concurrent replays of one create store a single transaction."""
        results = await asyncio.gather(*[rpc("CreateTransaction", _create("t1")) for _ in range(5)])

        assert all(r["result"] == results[0]["result"] for r in results)
        assert len(await load_transactions("o1")) == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_perform_and_cancel(self, rpc: Any, orders: Any) -> None:
        """Whichever call wins, the final record is consistent."""
        await rpc("CreateTransaction", _create("t1"))

        performed, cancelled = await asyncio.gather(
            rpc("PerformTransaction", {"id": "t1"}),
            rpc("CancelTransaction", {"id": "t1", "reason": 3}),
        )
        check = (await rpc("CheckTransaction", {"id": "t1"}))["result"]

        assert "result" in cancelled
        if "result" in performed:
            assert check["state"] == -2
            assert check["perform_time"] == performed["result"]["perform_time"]
        else:
            assert performed["error"]["code"] == CANNOT_PERFORM_OPERATION
            assert check["state"] == -1
            assert check["perform_time"] == 0
