"""
JSON-RPC 2.0 envelope handling for the merchant API.

Payme posts ``{"jsonrpc": "2.0", "id": ..., "method": ..., "params": {...}}``
and expects a body with either ``result`` or ``error`` back, always with
HTTP 200.
"""
import json
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictStr, ValidationError

from payme_merchant.core.errors import (
    InvalidRequestError,
    MethodNotFoundError,
    ParseError,
    PaymeError,
)
from payme_merchant.core.state_machine import SUPPORTED_METHODS

JSONRPC_VERSION = "2.0"


class RpcRequest(BaseModel):
    """A parsed merchant API call."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    id: Any = None
    method: StrictStr = Field(..., min_length=1)
    params: Dict[str, Any]


def decode_body(body: bytes) -> Any:
    """
    Decode a raw request body as JSON.

    Raises:
        ParseError: If the body is not valid UTF-8 JSON
    """
    try:
        return json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise ParseError()


def extract_request_id(payload: Any) -> Any:
    """Return the JSON-RPC id to echo back, or None if there is none."""
    if isinstance(payload, dict):
        request_id = payload.get("id")
        if request_id is None or isinstance(request_id, (str, int, float)):
            return request_id
    return None


def parse_request(payload: Any) -> RpcRequest:
    """
    Validate a decoded body as a merchant API call.

    Args:
        payload: Decoded JSON body

    Returns:
        RpcRequest: The validated call

    Raises:
        InvalidRequestError: If the envelope or params are malformed
        MethodNotFoundError: If the method is not a merchant API method
    """
    if not isinstance(payload, dict):
        raise InvalidRequestError()
    try:
        request = RpcRequest.model_validate(payload)
    except ValidationError:
        raise InvalidRequestError()

    if request.method not in SUPPORTED_METHODS:
        raise MethodNotFoundError()
    return request


def success_response(request_id: Any, result: Dict[str, Any]) -> Dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def error_response(request_id: Optional[Any], error: PaymeError) -> Dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "error": error.to_dict()}
