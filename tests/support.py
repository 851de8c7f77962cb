"""Shared constants and helpers for the test suite."""
import json
from typing import Any, Dict

TEST_MERCHANT_LOGIN = "Paycom"
TEST_MERCHANT_KEY = "test-merchant-key"

START_TIME_MS = 1_700_000_000_000


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, now: int = START_TIME_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, millis: int = 1000) -> int:
        self.now += millis
        return self.now


def rpc_body(method: str, params: Dict[str, Any], request_id: Any = 1) -> bytes:
    """Encode a merchant API call."""
    return json.dumps(
        {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}
    ).encode("utf-8")
