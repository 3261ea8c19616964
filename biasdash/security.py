"""
biasdash.security — Request middleware for the bias dashboard API.

Provides:
    - RequestIdMiddleware: attaches X-Request-ID and emits one structured
      ``http_request`` log line per request
    - SecurityHeadersMiddleware: OWASP headers plus the no-store cache policy
      for /api/* and the probes
    - RequestSizeLimitMiddleware: rejects oversized bodies (413) / headers (431)
    - apply_security_headers(): the same header policy, for responses built
      outside the middleware stack (the global 500 handler)
"""

from __future__ import annotations

import ipaddress
import json
import logging
import time
import uuid
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

logger = logging.getLogger("biasdash.security")

NO_STORE = "no-store, max-age=0"
API_CSP = "default-src 'none'; frame-ancestors 'none'"
HSTS = "max-age=31536000; includeSubDomains"


# ---------------------------------------------------------------------------
# Request-ID middleware
# ---------------------------------------------------------------------------

class RequestIdMiddleware(BaseHTTPMiddleware):
    """Attach a unique request ID to every request and echo it in response."""

    async def dispatch(self, request: Request, call_next: Any) -> Response:
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex[:16]
        request.state.request_id = request_id
        t0 = time.monotonic()
        response = await call_next(request)
        latency_ms = round((time.monotonic() - t0) * 1000, 1)
        response.headers["X-Request-ID"] = request_id
        _log_request(request, response, latency_ms, request_id)
        return response


# ---------------------------------------------------------------------------
# Security headers
# ---------------------------------------------------------------------------

def is_uncacheable(path: str) -> bool:
    return path == "/api" or path.startswith("/api/") or path in ("/health", "/ready")


def apply_security_headers(response: Response, path: str, *, enable_hsts: bool) -> None:
    """Stamp the header policy onto ``response`` in place.

    /api/*, /health and /ready get ``no-store`` and the strict CSP, and lose
    any ETag. Frontend files keep whatever the file handler set.
    """
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "no-referrer"
    if enable_hsts:
        response.headers["Strict-Transport-Security"] = HSTS

    if is_uncacheable(path):
        response.headers["Cache-Control"] = NO_STORE
        response.headers["Content-Security-Policy"] = API_CSP
        if "etag" in response.headers:
            del response.headers["etag"]


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Apply apply_security_headers() to every response that reaches it."""

    def __init__(self, app: Any, *, enable_hsts: bool = False) -> None:
        super().__init__(app)
        self.enable_hsts = enable_hsts

    async def dispatch(self, request: Request, call_next: Any) -> Response:
        response = await call_next(request)
        apply_security_headers(response, request.url.path, enable_hsts=self.enable_hsts)
        return response


# ---------------------------------------------------------------------------
# Request size limit middleware
# ---------------------------------------------------------------------------

# The largest legitimate body is a /api/predict feature payload of ten numbers.
MAX_BODY_BYTES = 16_384
# A session cookie plus browser defaults fit comfortably.
MAX_HEADER_BYTES = 16_384


class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    """Reject oversized bodies (413) or headers (431) before routing.

    Only the declared Content-Length is checked; the API never accepts
    chunked uploads.
    """

    def __init__(
        self,
        app: Any,
        *,
        max_body_bytes: int = MAX_BODY_BYTES,
        max_header_bytes: int = MAX_HEADER_BYTES,
    ) -> None:
        super().__init__(app)
        self.max_body_bytes = max_body_bytes
        self.max_header_bytes = max_header_bytes

    async def dispatch(self, request: Request, call_next: Any) -> Response:
        header_bytes = sum(len(k) + len(v) for k, v in request.headers.raw)
        if header_bytes > self.max_header_bytes:
            return _rejected(431, "Request headers too large.", request, header_bytes)

        declared = request.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > self.max_body_bytes:
            return _rejected(413, "Request body too large.", request, int(declared))

        return await call_next(request)


def _rejected(status_code: int, detail: str, request: Request, size: int) -> JSONResponse:
    logger.warning(json.dumps({
        "event": "request_rejected",
        "status": status_code,
        "path": request.url.path,
        "bytes": size,
    }))
    return JSONResponse(status_code=status_code, content={"detail": detail})


# ---------------------------------------------------------------------------
# Structured request logging
# ---------------------------------------------------------------------------

def client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def mask_ip(ip: str | None) -> str:
    """Network prefix only: /16 for IPv4, /48 for IPv6. Non-IPs → "unknown"."""
    if not ip:
        return "unknown"
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return "unknown"
    prefix = 16 if addr.version == 4 else 48
    return str(ipaddress.ip_network(f"{addr}/{prefix}", strict=False))


def _log_request(
    request: Request,
    response: Response,
    latency_ms: float,
    request_id: str,
) -> None:
    """One ``http_request`` line; level follows the status class."""
    status = response.status_code
    log_data = {
        "event": "http_request",
        "method": request.method,
        "path": request.url.path,
        "status": status,
        "latency_ms": latency_ms,
        "bytes": response.headers.get("content-length"),
        "client_net": mask_ip(client_ip(request)),
        "request_id": request_id,
    }
    if status >= 500:
        level = logging.ERROR
    elif status >= 400:
        level = logging.WARNING
    else:
        level = logging.INFO
    logger.log(level, json.dumps(log_data))
