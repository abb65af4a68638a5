from __future__ import annotations

import logging
import threading
import time
import uuid
from contextvars import ContextVar
from typing import Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

# Context variables to carry across the request lifecycle
request_id_ctx: ContextVar[str] = ContextVar("request_id", default="-")
tenant_id_ctx: ContextVar[str] = ContextVar("tenant_id", default="-")
route_ctx: ContextVar[str] = ContextVar("route", default="-")

# Process-local counters for quick visibility into the credential lifecycle
_METRICS: Dict[str, float] = {
    "requests_total": 0.0,
    "requests_errors_total": 0.0,
    "installs_total": 0.0,
    "token_refresh_total": 0.0,
    "token_refresh_skipped_total": 0.0,
    "token_refresh_failures_total": 0.0,
    "reactive_refresh_total": 0.0,
    "remote_calls_total": 0.0,
    "remote_call_errors_total": 0.0,
}
_METRICS_LOCK = threading.Lock()


def metrics_snapshot() -> Dict[str, float]:
    """Return a shallow copy of current metrics."""
    with _METRICS_LOCK:
        return dict(_METRICS)


# PUBLIC_INTERFACE
def increment_metric(name: str, inc: float = 1.0) -> None:
    """Increment a named metric counter by inc."""
    with _METRICS_LOCK:
        _METRICS[name] = _METRICS.get(name, 0.0) + inc


def reset_metrics() -> None:
    with _METRICS_LOCK:
        for key in _METRICS:
            _METRICS[key] = 0.0


def bind_tenant(tenant_id: Optional[str]) -> None:
    """Attach a tenant id to the current context so log records carry it."""
    if tenant_id:
        tenant_id_ctx.set(tenant_id)


def mask_secret_value(value: Optional[str], keep: int = 4) -> Optional[str]:
    """Mask a secret for safe logging. Keep last N chars."""
    if value is None:
        return None
    v = str(value)
    if len(v) <= keep:
        return "*" * len(v)
    return "*" * (len(v) - keep) + v[-keep:]


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Middleware to attach a correlation/request ID and tenant id, and emit structured logs + metrics."""

    def __init__(self, app, tenant_query_param: str = "memberId", logger: Optional[logging.Logger] = None):
        super().__init__(app)
        self.tenant_query_param = tenant_query_param
        self.logger = logger or logging.getLogger(__name__)

    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request_id_ctx.set(rid)
        tid = request.query_params.get(self.tenant_query_param) or request.query_params.get("member_id") or "-"
        tenant_id_ctx.set(tid)
        route_ctx.set(request.url.path)

        increment_metric("requests_total", 1.0)

        self.logger.info(
            "request_start",
            extra={
                "method": request.method,
                "path": request.url.path,
                "client": request.client.host if request.client else None,
            },
        )
        status = 500
        try:
            response: Response = await call_next(request)
            status = response.status_code
            if status >= 400:
                increment_metric("requests_errors_total", 1.0)
            response.headers["X-Request-ID"] = rid
            return response
        except Exception as ex:
            increment_metric("requests_errors_total", 1.0)
            # Log exception without leaking potential secrets
            self.logger.exception("request_error", extra={"error": type(ex).__name__})
            raise
        finally:
            dur_ms = (time.perf_counter() - start) * 1000.0
            self.logger.info("request_end", extra={"status_code": status, "duration_ms": round(dur_ms, 2)})


# PUBLIC_INTERFACE
def get_structured_logger(name: Optional[str] = None) -> logging.Logger:
    """Return a structured logger that adds correlation attributes through logging Filters."""
    logger = logging.getLogger(name or __name__)
    if not any(isinstance(f, _ContextFilter) for f in logger.filters):
        logger.addFilter(_ContextFilter())
    return logger


class _ContextFilter(logging.Filter):
    """Inject request context (request_id, tenant_id, route) into records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_ctx.get()
        # an explicit tenant_id passed through `extra` wins over the context value
        if not hasattr(record, "tenant_id"):
            record.tenant_id = tenant_id_ctx.get()
        record.route = route_ctx.get()
        return True
