"""
Security stages for the webgate request pipeline.
Sets security headers on every response and enforces the request deadline.
"""

import time
import logging
from typing import Dict, Optional

import anyio
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from src.core.errors import internal_error_response, timeout_response
from src.middleware.pipeline import CallNext, Stage

logger = logging.getLogger(__name__)

DEFAULT_SECURITY_HEADERS: Dict[str, str] = {
    "Content-Security-Policy": (
        "default-src 'self';base-uri 'self';font-src 'self' https: data:;"
        "form-action 'self';frame-ancestors 'self';img-src 'self' data:;"
        "object-src 'none';script-src 'self';script-src-attr 'none';"
        "style-src 'self' https: 'unsafe-inline';upgrade-insecure-requests"
    ),
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
    "Origin-Agent-Cluster": "?1",
    "Referrer-Policy": "no-referrer",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "X-Content-Type-Options": "nosniff",
    "X-DNS-Prefetch-Control": "off",
    "X-Download-Options": "noopen",
    "X-Frame-Options": "SAMEORIGIN",
    "X-Permitted-Cross-Domain-Policies": "none",
    "X-XSS-Protection": "0",
}


class SecurityHeadersStage(Stage):
    """
    Outermost stage: adds security headers to every response.

    Errors escaping the rest of the pipeline are logged here and turned
    into a sanitized 500, so even failures carry the headers.
    """

    name = "security_headers"

    def __init__(self, headers: Optional[Dict[str, str]] = None, slow_request_seconds: float = 1.0):
        self.headers = dict(DEFAULT_SECURITY_HEADERS if headers is None else headers)
        self.slow_request_seconds = slow_request_seconds

    async def __call__(self, request: Request, call_next: CallNext) -> Response:
        start_time = time.time()
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(f"Unhandled error for {request.method} {request.url.path}", exc_info=True)
            response = internal_error_response(e, context=request.url.path)
        process_time = time.time() - start_time

        for name, value in self.headers.items():
            response.headers[name] = value
        if "x-powered-by" in response.headers:
            del response.headers["x-powered-by"]

        if process_time > self.slow_request_seconds:
            logger.warning(f"Slow request: {request.url.path} took {process_time:.2f}s")

        return response


DEADLINE_SCOPE_KEY = "webgate.deadline"


class RequestTimeoutStage(Stage):
    """
    Starts the request's deadline clock.

    The deadline is stored in the ASGI scope; ``RouteDeadlineMiddleware``
    enforces it around the routes, where a late handler can actually be
    cancelled.
    """

    name = "request_timeout"

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds

    async def __call__(self, request: Request, call_next: CallNext) -> Response:
        if self.timeout_seconds and self.timeout_seconds > 0:
            request.scope[DEADLINE_SCOPE_KEY] = anyio.current_time() + self.timeout_seconds
        return await call_next(request)


class RouteDeadlineMiddleware:
    """
    Cancels a route still running at the request deadline and answers 504.

    Mounted inside ``PipelineMiddleware``, so the 504 travels back out
    through the pipeline stages like any route response. A handler that
    already started its response cannot be replaced and is only cut off.
    """

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        deadline = scope.get(DEADLINE_SCOPE_KEY) if scope["type"] == "http" else None
        if deadline is None:
            await self.app(scope, receive, send)
            return

        response_started = False

        async def send_wrapper(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        with anyio.move_on_after(max(deadline - anyio.current_time(), 0)) as cancel_scope:
            await self.app(scope, receive, send_wrapper)

        if not cancel_scope.cancelled_caught:
            return

        logger.warning(f"Request deadline exceeded: {scope.get('method')} {scope.get('path')}")
        if not response_started:
            await timeout_response()(scope, receive, send)
