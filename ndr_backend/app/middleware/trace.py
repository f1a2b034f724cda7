import time
import uuid
import logging

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from ndr_backend.app.core.logging import correlation_id_ctx, tenant_id_ctx

logger = logging.getLogger(__name__)


class TracingMiddleware(BaseHTTPMiddleware):
    """
    Sets the correlation id (and tenant hint) for every request so that
    every log line and audit entry written while serving it can be joined.
    """
    async def dispatch(self, request: Request, call_next):
        correlation_id = request.headers.get("X-Correlation-ID") or \
                         request.headers.get("X-Trace-ID") or \
                         str(uuid.uuid4())
        correlation_id_ctx.set(correlation_id)

        # Tenant hint before auth; operator endpoints use the token's tenant
        tenant_id = request.headers.get("X-Tenant-ID")
        if tenant_id:
            tenant_id_ctx.set(tenant_id)

        start_time = time.time()

        try:
            response = await call_next(request)
        except Exception as e:
            process_time = time.time() - start_time
            logger.error(
                f"Request failed: {request.method} {request.url.path}",
                extra={
                    "extra_data": {
                        "method": request.method,
                        "path": request.url.path,
                        "status_code": 500,
                        "duration_ms": round(process_time * 1000, 2),
                        "error": str(e),
                    }
                },
                exc_info=True,
            )
            raise

        process_time = time.time() - start_time
        logger.info(
            f"{request.method} {request.url.path} completed",
            extra={
                "extra_data": {
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": round(process_time * 1000, 2),
                }
            },
        )
        response.headers["X-Correlation-ID"] = correlation_id
        return response
