"""
API routes for the Payme merchant endpoint and monitoring.
"""
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from payme_merchant.config import get_settings
from payme_merchant.core.merchant_service import PaymeMerchantService
from payme_merchant.database.connection import get_session_factory
from payme_merchant.monitoring.health import HealthCheck

from .schemas import HealthCheckResponse, PaymeRpcResponse

logger = structlog.get_logger(__name__)

# Create routers
payme_router = APIRouter(tags=["payme"])
monitoring_router = APIRouter(tags=["monitoring"])

_merchant_service: Optional[PaymeMerchantService] = None


def get_merchant_service() -> PaymeMerchantService:
    """Get or create the merchant service bound to the app's database."""
    global _merchant_service
    if _merchant_service is None:
        _merchant_service = PaymeMerchantService.from_settings(
            get_settings(), get_session_factory()
        )
    return _merchant_service


def get_health_check() -> HealthCheck:
    return HealthCheck()


@payme_router.post(
    get_settings().payme_endpoint_path,
    response_model=None,
    responses={200: {"model": PaymeRpcResponse}},
    summary="Payme merchant API",
    description="JSON-RPC callback for Payme transaction lifecycle calls",
)
async def payme_callback(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    service: PaymeMerchantService = Depends(get_merchant_service),
) -> JSONResponse:
    """
    Handle a Payme merchant API call.

    The raw body is passed through untouched so signature mode can hash
    exactly what Payme sent. Errors travel inside the JSON-RPC body; the
    HTTP status is always 200.
    """
    body = await request.body()
    response = await service.handle(body, authorization)

    if "error" in response:
        logger.info("api_payme_call_rejected", code=response["error"]["code"])
    else:
        logger.info("api_payme_call_handled")

    return JSONResponse(status_code=status.HTTP_200_OK, content=response)


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        result = await health_check.check_all()
        return result
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {
            "status": "unhealthy",
            "checks": {"error": str(e)},
        }


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    try:
        result = await health_check.readiness()
        if result["status"] != "healthy":
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
        return result
    except HTTPException:
        raise
    except Exception as e:
        logger.error("readiness_check_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "unhealthy", "error": str(e)},
        )


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
