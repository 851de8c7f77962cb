"""
Merchant API request handling.

Turns one raw Payme HTTP call into one JSON-RPC response:
authorize, parse the envelope, run the handler inside a database
transaction, and map every failure onto a Payme error code. Handlers that
hit transient database failures are rerun from scratch in a fresh
transaction.
"""
import time
from typing import Any, Callable, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from payme_merchant.config import Settings
from payme_merchant.core.auth import CredentialValidator, MerchantCredentials
from payme_merchant.core.envelope import (
    RpcRequest,
    decode_body,
    error_response,
    extract_request_id,
    parse_request,
    success_response,
)
from payme_merchant.core.errors import (
    AuthorizationError,
    InternalSystemError,
    ParseError,
    PaymeError,
    TransientStoreError,
)
from payme_merchant.core.orders import OrderRepository
from payme_merchant.core.state_machine import (
    SUPPORTED_METHODS,
    OrderPolicy,
    TransactionStateMachine,
    epoch_millis,
)
from payme_merchant.core.transaction_store import TransactionStore, translate_store_errors
from payme_merchant.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class PaymeMerchantService:
    """
    Entry point for Payme merchant API calls.

    Every call yields a response dict; nothing raises out of handle().
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        validator: CredentialValidator,
        policy: Optional[OrderPolicy] = None,
        clock: Callable[[], int] = epoch_millis,
        retry_attempts: int = 3,
        retry_base_delay: float = 0.05,
    ):
        """
        Initialize merchant service.

        Args:
            session_factory: Factory for database sessions
            validator: Credential validator for the Authorization header
            policy: Order acceptance policy
            clock: Source of epoch-millisecond timestamps
            retry_attempts: Attempts per call on transient store failures
            retry_base_delay: Base delay of the exponential retry backoff (seconds)
        """
        self.session_factory = session_factory
        self.validator = validator
        self.policy = policy or OrderPolicy()
        self.clock = clock
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], int] = epoch_millis,
    ) -> "PaymeMerchantService":
        """Build the service from application settings."""
        return cls(
            session_factory=session_factory,
            validator=CredentialValidator(MerchantCredentials.from_settings(settings)),
            policy=OrderPolicy.from_settings(settings),
            clock=clock,
            retry_attempts=settings.store_retry_max_attempts,
            retry_base_delay=settings.store_retry_base_delay,
        )

    async def handle(self, body: bytes, authorization: Optional[str]) -> Dict[str, Any]:
        """
        Handle one merchant API call.

        Args:
            body: Raw request body
            authorization: Raw Authorization header value

        Returns:
            Dict[str, Any]: JSON-RPC response body
        """
        started = time.perf_counter()
        method = "unknown"

        parse_error: Optional[ParseError] = None
        payload: Any = None
        try:
            payload = decode_body(body)
        except ParseError as e:
            parse_error = e
        request_id = extract_request_id(payload)

        try:
            # Credentials are checked before anything reads the database
            self.validator.validate(authorization, body)
            if parse_error is not None:
                raise parse_error

            request = parse_request(payload)
            method = request.method
            result = await self._execute(request, request_id)
            response = success_response(request_id, result)
            outcome = "ok"

        except AuthorizationError as e:
            metrics.record_auth_failure()
            response = error_response(request_id, e)
            outcome = str(e.code)

        except PaymeError as e:
            logger.info(
                "payme_rpc_error",
                method=method,
                rpc_id=request_id,
                code=e.code,
                message=e.message,
            )
            response = error_response(request_id, e)
            outcome = str(e.code)

        except Exception as e:
            logger.error(
                "payme_rpc_failed",
                method=method,
                rpc_id=request_id,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            error = InternalSystemError()
            response = error_response(request_id, error)
            outcome = str(error.code)

        if method not in SUPPORTED_METHODS:
            method = "unknown"
        metrics.record_rpc_call(method, outcome, time.perf_counter() - started)
        return response

    async def _execute(self, request: RpcRequest, request_id: Any) -> Dict[str, Any]:
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(TransientStoreError),
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_base_delay, max=1),
            before_sleep=self._log_retry(request.method),
            reraise=True,
        )

        result: Dict[str, Any] = {}
        async for attempt in retrying:
            with attempt:
                result = await self._run_once(request, request_id)
        return result

    async def _run_once(self, request: RpcRequest, request_id: Any) -> Dict[str, Any]:
        """Run a handler in its own session and transaction."""
        async with self.session_factory() as session:
            async with translate_store_errors():
                async with session.begin():
                    machine = TransactionStateMachine(
                        store=TransactionStore(session),
                        orders=OrderRepository(session),
                        policy=self.policy,
                        clock=self.clock,
                        request_id=None if request_id is None else str(request_id),
                    )
                    return await machine.dispatch(request.method, request.params)

    @staticmethod
    def _log_retry(method: str) -> Callable[[RetryCallState], None]:
        def before_sleep(retry_state: RetryCallState) -> None:
            metrics.record_store_retry(method)
            exception = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "payme_store_retry",
                method=method,
                attempt=retry_state.attempt_number,
                error=str(exception),
            )

        return before_sleep
