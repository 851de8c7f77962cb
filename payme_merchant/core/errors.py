"""
Payme protocol error taxonomy.

Every error the merchant API reports to Payme is a PaymeError carrying
the numeric code Payme expects. Handlers raise them; the envelope layer
turns them into the JSON-RPC error object. Messages are fixed strings and
never include internal details.
"""
from typing import Any, Dict, Optional

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
AUTHORIZATION_INVALID = -32504
SYSTEM_ERROR = -32400
INVALID_AMOUNT = -31001
TRANSACTION_NOT_FOUND = -31003
CANNOT_PERFORM_OPERATION = -31008
INVALID_ACCOUNT = -31050


class PaymeError(Exception):
    """Base exception for errors reported through the RPC envelope."""

    code: int = SYSTEM_ERROR
    default_message: str = "System error"

    def __init__(self, message: Optional[str] = None, data: Any = None):
        """
        Initialize Payme error.

        Args:
            message: Message sent to Payme (defaults to the class message)
            data: Optional error data, e.g. the offending account field
        """
        self.message = message or self.default_message
        self.data = data
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the JSON-RPC error object."""
        error: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            error["data"] = self.data
        return error


class ParseError(PaymeError):
    code = PARSE_ERROR
    default_message = "Parse error"


class InvalidRequestError(PaymeError):
    code = INVALID_REQUEST
    default_message = "Invalid request"


class MethodNotFoundError(PaymeError):
    code = METHOD_NOT_FOUND
    default_message = "Method not found"


class AuthorizationError(PaymeError):
    """Any credential or signature failure. Never says which check failed."""

    code = AUTHORIZATION_INVALID
    default_message = "Authorization invalid"


class InternalSystemError(PaymeError):
    code = SYSTEM_ERROR
    default_message = "System error"


class InvalidAmountError(PaymeError):
    code = INVALID_AMOUNT
    default_message = "Invalid amount"


class TransactionNotFoundError(PaymeError):
    code = TRANSACTION_NOT_FOUND
    default_message = "Transaction not found"


class CannotPerformOperationError(PaymeError):
    code = CANNOT_PERFORM_OPERATION
    default_message = "Can't perform operation"


class InvalidAccountError(PaymeError):
    """Account errors always point Payme at the orderId field."""

    code = INVALID_ACCOUNT
    default_message = "Order not found"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message, data="orderId")


class TransientStoreError(Exception):
    """Raised by the store layer for failures worth retrying (locks, dropped connections)."""

    pass
