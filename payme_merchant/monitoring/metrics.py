"""
Prometheus metrics for the Payme merchant endpoint.

Tracks:
- RPC calls by method and outcome (ok or the error code)
- RPC handling duration
- Authorization failures
- Transaction state transitions
- Store retries after transient database failures
"""
from prometheus_client import Counter, Histogram

payme_rpc_requests_total = Counter(
    "payme_rpc_requests_total",
    "Total Payme merchant API calls",
    ["method", "outcome"],
)

payme_rpc_duration_seconds = Histogram(
    "payme_rpc_duration_seconds",
    "Payme merchant API call duration in seconds",
    ["method"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

payme_auth_failures_total = Counter(
    "payme_auth_failures_total",
    "Total Payme calls rejected with an authorization error",
)

payme_transaction_transitions_total = Counter(
    "payme_transaction_transitions_total",
    "Total Payme transaction state transitions",
    ["from_state", "to_state"],
)

payme_store_retries_total = Counter(
    "payme_store_retries_total",
    "Total handler retries after a transient store failure",
    ["method"],
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_rpc_call(method: str, outcome: str, duration_seconds: float) -> None:
        """Record a handled merchant API call."""
        payme_rpc_requests_total.labels(method=method, outcome=outcome).inc()
        payme_rpc_duration_seconds.labels(method=method).observe(duration_seconds)

    @staticmethod
    def record_auth_failure() -> None:
        payme_auth_failures_total.inc()

    @staticmethod
    def record_transition(from_state: str, to_state: str) -> None:
        """Record a transaction state transition."""
        payme_transaction_transitions_total.labels(
            from_state=from_state, to_state=to_state
        ).inc()

    @staticmethod
    def record_store_retry(method: str) -> None:
        payme_store_retries_total.labels(method=method).inc()


# Export singleton instance
metrics = MetricsCollector()
