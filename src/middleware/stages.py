"""
Pipeline stages between the security headers and the application routes.

Declared order (see ``build_pipeline`` in ``src.main``):

    body parsing -> static files -> session -> flash -> csrf
    -> view context -> csrf error translation -> routes
"""

import inspect
import json
import logging
import os
from pathlib import Path
from typing import Awaitable, Callable, Optional, Union
from urllib.parse import urlsplit

from starlette.exceptions import HTTPException
from starlette.requests import Request
from starlette.responses import PlainTextResponse, RedirectResponse, Response
from starlette.staticfiles import StaticFiles

from src.core.exceptions import CsrfError
from src.core.flash import FlashChannel
from src.core.security import CsrfGuard, SessionManager
from src.middleware.pipeline import CallNext, ErrorStage, RequestContext, Stage, get_request_context

logger = logging.getLogger(__name__)

ViewContextInjector = Callable[[Request, RequestContext], Union[None, Awaitable[None]]]

BODY_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


class BodyParsingStage(Stage):
    """
    Parses urlencoded, multipart and JSON bodies into the request context.

    The raw body stays readable for the routes. Oversized bodies get 413,
    malformed JSON gets 400.
    """

    name = "body_parsing"

    def __init__(self, limit_bytes: int = 100 * 1024):
        self.limit_bytes = limit_bytes

    async def _read_body(self, request: Request) -> Optional[bytes]:
        """
        Read the body chunk by chunk, giving up once it exceeds the limit.

        Returns None when the limit was exceeded. Otherwise the body is
        cached on the request, so ``request.body()``, ``request.form()`` and
        the downstream app all see it.
        """
        chunks = []
        received = 0
        async for chunk in request.stream():
            received += len(chunk)
            if received > self.limit_bytes:
                logger.info(f"Body over {self.limit_bytes} bytes on {request.method} {request.url.path}")
                return None
            chunks.append(chunk)

        request._body = b"".join(chunks)
        return request._body

    async def __call__(self, request: Request, call_next: CallNext) -> Response:
        if request.method.upper() not in BODY_METHODS:
            return await call_next(request)

        declared = request.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > self.limit_bytes:
            return PlainTextResponse("Payload Too Large", status_code=413)

        body = await self._read_body(request)
        if body is None:
            return PlainTextResponse("Payload Too Large", status_code=413)

        ctx = get_request_context(request)
        content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()

        if content_type in FORM_CONTENT_TYPES:
            form = await request.form()
            ctx.form = {key: value for key, value in form.multi_items() if isinstance(value, str)}
        elif content_type == "application/json" or content_type.endswith("+json"):
            if body:
                try:
                    ctx.json = json.loads(body)
                except ValueError:
                    logger.info(f"Malformed JSON body on {request.method} {request.url.path}")
                    return PlainTextResponse("Bad Request", status_code=400)

        return await call_next(request)


class StaticFilesStage(Stage):
    """
    Serves files from a public directory before any session work happens.

    Only GET/HEAD requests under ``prefix`` are considered; misses fall
    through to the next stage.
    """

    name = "static_files"

    def __init__(self, directory: Union[str, Path], prefix: str = "/"):
        self.directory = Path(directory)
        self.prefix = "/" + prefix.strip("/")
        self._files = StaticFiles(directory=str(self.directory), check_dir=False)

    def _relative_path(self, request: Request) -> Optional[str]:
        path = request.url.path
        if self.prefix != "/":
            if path != self.prefix and not path.startswith(self.prefix + "/"):
                return None
            path = path[len(self.prefix):]
        parts = [part for part in path.split("/") if part]
        if not parts:
            return None
        return os.path.normpath(os.path.join(*parts))

    async def __call__(self, request: Request, call_next: CallNext) -> Response:
        if request.method.upper() not in ("GET", "HEAD") or not self.directory.is_dir():
            return await call_next(request)

        relative = self._relative_path(request)
        if relative is None:
            return await call_next(request)

        try:
            return await self._files.get_response(relative, request.scope)
        except HTTPException as exc:
            if exc.status_code == 404:
                return await call_next(request)
            raise


class SessionStage(Stage):
    """Attaches the session and persists it once the response is ready."""

    name = "session"

    def __init__(self, manager: SessionManager):
        self.manager = manager

    async def __call__(self, request: Request, call_next: CallNext) -> Response:
        ctx = get_request_context(request)
        ctx.session = await self.manager.load(request)

        response = await call_next(request)

        await self.manager.commit(ctx.session, response)
        return response


class FlashStage(Stage):
    name = "flash"

    async def __call__(self, request: Request, call_next: CallNext) -> Response:
        ctx = get_request_context(request)
        ctx.flash = FlashChannel(ctx.session)
        return await call_next(request)


class CsrfStage(Stage):
    """
    Issues a fresh token for every request and validates unsafe methods.

    Raises ``CsrfError`` on a missing or mismatched token.
    """

    name = "csrf"

    def __init__(self, guard: Optional[CsrfGuard] = None):
        self.guard = guard or CsrfGuard()

    async def __call__(self, request: Request, call_next: CallNext) -> Response:
        ctx = get_request_context(request)
        secret = self.guard.ensure_secret(ctx.session)

        self.guard.validate(request, secret, form=ctx.form, body_json=ctx.json)

        ctx.csrf_token = self.guard.tokens.create(secret)
        return await call_next(request)


def inject_session_locals(request: Request, ctx: RequestContext) -> None:
    """Default injector: exposes the logged-in user stored in the session."""
    ctx.view["user"] = ctx.session.get("user") if ctx.session is not None else None


class ViewContextStage(Stage):
    """
    Builds the values every rendered view can see.

    Drains the flash channel once per request, then hands the context to the
    application's injector.
    """

    name = "view_context"

    def __init__(self, injector: Optional[ViewContextInjector] = inject_session_locals):
        self.injector = injector

    async def __call__(self, request: Request, call_next: CallNext) -> Response:
        ctx = get_request_context(request)

        if ctx.flash is not None:
            ctx.flash_messages = ctx.flash.drain_all()
        ctx.view["csrf_token"] = ctx.csrf_token
        ctx.view["flash"] = ctx.flash_messages

        if self.injector is not None:
            result = self.injector(request, ctx)
            if inspect.isawaitable(result):
                await result

        return await call_next(request)


class CsrfErrorStage(ErrorStage):
    """
    Turns a CSRF failure into a flash error and a redirect back to the form.

    The redirect goes to the same-origin Referer, else to the request path.
    """

    name = "csrf_error"
    handles = (CsrfError,)

    def __init__(self, message: str, category: str = "error", status_code: int = 303):
        self.message = message
        self.category = category
        self.status_code = status_code

    def redirect_target(self, request: Request) -> str:
        referer = request.headers.get("referer")
        if referer:
            parts = urlsplit(referer)
            if parts.netloc == request.url.netloc and parts.path.startswith("/"):
                return parts.path + (f"?{parts.query}" if parts.query else "")
        return request.url.path

    async def handle_error(self, request: Request, exc: Exception) -> Response:
        logger.warning(f"CSRF check failed ({getattr(exc, 'reason', 'invalid')}) on {request.method} {request.url.path}")

        ctx = get_request_context(request)
        if ctx.flash is not None:
            ctx.flash.push(self.category, self.message)

        return RedirectResponse(self.redirect_target(request), status_code=self.status_code)
