"""
Logging middleware for request/response logging.

Logs all HTTP requests with timing and context, and records request metrics.
"""
import time
import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from marketplace.routes.metrics import track_request

logger = structlog.get_logger()


def _route_template(request: Request) -> str:
    # Label by route template so installation ids don't explode metric cardinality
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log all HTTP requests with timing and context.

    Adds: tenant_id, user_id, route, duration_ms, status to every log.
    """

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()

        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            self._logger(request).error(
                "request_failed",
                path=request.url.path,
                status_code=500,
                duration_ms=round(duration_ms, 2),
                error=str(e)
            )
            track_request(request.method, _route_template(request), 500, duration_ms / 1000)
            raise

        duration_ms = (time.time() - start_time) * 1000

        # tenant_id / user_id are set by the auth dependency during routing
        self._logger(request).info(
            "request_completed",
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(duration_ms, 2)
        )
        track_request(request.method, _route_template(request), response.status_code, duration_ms / 1000)

        return response

    @staticmethod
    def _logger(request: Request):
        tenant_id = getattr(request.state, "tenant_id", None)
        user_id = getattr(request.state, "user_id", None)
        return logger.bind(
            tenant_id=str(tenant_id) if tenant_id else None,
            user_id=str(user_id) if user_id else None,
            route=request.url.path,
            method=request.method,
        )
