"""
HTTP middleware for bilinote: request ids for log correlation and security
headers on every response.
"""

import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from structlog.contextvars import bind_contextvars, clear_contextvars

REQUEST_ID_HEADER = "X-Request-ID"
DOCS_PATHS = ("/docs", "/redoc", "/openapi")
API_PREFIX = "/api/"


class RequestIdMiddleware(BaseHTTPMiddleware):
    """
    Tag each request with an id.

    The id comes from the caller's X-Request-ID header when present,
    otherwise a new UUID4. It is bound into structlog's context so every log
    line of the request carries it, and echoed back on the response.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())

        clear_contextvars()
        bind_contextvars(request_id=request_id, path=request.url.path)

        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


# Applied to every response
BASE_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
}

# The JSON API never serves markup, so nothing may load or frame it
API_CSP = "default-src 'none'; frame-ancestors 'none'"

# Swagger UI and ReDoc pull their bundles from jsDelivr
DOCS_CSP = "; ".join(
    [
        "default-src 'self' 'unsafe-inline'",
        "script-src 'self' 'unsafe-inline' https://cdn.jsdelivr.net",
        "style-src 'self' 'unsafe-inline' https://cdn.jsdelivr.net",
        "img-src 'self' data: https://fastapi.tiangolo.com",
        "worker-src blob:",
    ]
)


def is_docs_path(path: str) -> bool:
    """
    True for the interactive docs and the schema they load.

    >>> is_docs_path("/docs/oauth2-redirect")
    True
    >>> is_docs_path("/api/process")
    False
    """
    return path.startswith(DOCS_PATHS)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Harden every response.

    Besides ``BASE_HEADERS`` and a content security policy (``DOCS_CSP`` for
    the docs, ``API_CSP`` elsewhere), ``/api`` responses are marked
    ``no-store``: they carry transcripts, notes and the configured API keys.
    HSTS is only sent on HTTPS requests.
    """

    def __init__(self, app, hsts_max_age: int = 31536000):
        super().__init__(app)
        self.hsts = f"max-age={hsts_max_age}; includeSubDomains"

    def headers_for(self, request: Request) -> dict[str, str]:
        path = request.url.path
        headers = dict(BASE_HEADERS)
        headers["Content-Security-Policy"] = DOCS_CSP if is_docs_path(path) else API_CSP
        if path.startswith(API_PREFIX):
            headers["Cache-Control"] = "no-store"
        if request.url.scheme == "https":
            headers["Strict-Transport-Security"] = self.hsts
        return headers

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)
        response.headers.update(self.headers_for(request))
        return response
