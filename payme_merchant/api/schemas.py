"""
Pydantic schemas for API response models.

The Payme callback answers with a raw JSON-RPC body whose result shape
depends on the method; PaymeRpcResponse documents the envelope only.
"""
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, Field


class PaymeRpcError(BaseModel):
    """JSON-RPC error object in Payme's format."""

    code: int = Field(..., description="Payme error code, e.g. -31050")
    message: str = Field(..., description="Error message")
    data: Optional[str] = Field(default=None, description="Offending account field, if any")


class PaymeRpcResponse(BaseModel):
    """Response envelope returned to Payme, always with HTTP 200."""

    jsonrpc: str = Field(default="2.0", description="JSON-RPC version")
    id: Optional[Union[int, str]] = Field(default=None, description="Echo of the request id")
    result: Optional[Dict[str, Any]] = Field(default=None, description="Method result")
    error: Optional[PaymeRpcError] = Field(default=None, description="Error, if the call failed")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "jsonrpc": "2.0",
                    "id": 1,
                    "result": {"create_time": 1700000000000, "transaction": "t1", "state": 1},
                },
                {
                    "jsonrpc": "2.0",
                    "id": 2,
                    "error": {"code": -31050, "message": "Order not found", "data": "orderId"},
                },
            ]
        }
    }


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy/alive)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
