"""FastAPI application and routes."""
from .main import app
from .schemas import HealthCheckResponse, PaymeRpcError, PaymeRpcResponse

__all__ = [
    "app",
    "HealthCheckResponse",
    "PaymeRpcError",
    "PaymeRpcResponse",
]
