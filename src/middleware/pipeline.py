"""
Request pipeline for webgate.

An explicit, ordered list of stages that every request passes through
before it reaches the application routes. Each stage is an async callable
``stage(request, call_next) -> Response`` and may:

- pass control on unchanged (``return await call_next(request)``)
- mutate the per-request ``RequestContext`` and pass control on
- short-circuit by returning its own response

Errors raised by a stage itself (not by the stages after it) are offered to
the first *later* ``ErrorStage`` that declares the exception type. This is
how a CSRF failure raised by the CSRF stage reaches the CSRF error stage
even though that stage sits further down the chain. Errors that are not
claimed propagate outwards like any other exception.

The pipeline is independent of the network layer: ``Pipeline.handle`` only
needs a Starlette ``Request`` and an endpoint coroutine, which makes each
stage testable in isolation. ``PipelineMiddleware`` mounts it on an app.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Type
import logging

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from src.core.flash import FlashChannel
from src.models.session_state import Session

logger = logging.getLogger(__name__)

CallNext = Callable[[Request], Awaitable[Response]]


@dataclass
class RequestContext:
    """State shared by the stages of one request, stored on ``request.state``."""
    session: Optional[Session] = None
    flash: Optional[FlashChannel] = None
    csrf_token: Optional[str] = None
    form: Dict[str, Any] = field(default_factory=dict)
    json: Any = None
    flash_messages: Dict[str, List[str]] = field(default_factory=dict)
    view: Dict[str, Any] = field(default_factory=dict)


def get_request_context(request: Request) -> RequestContext:
    """Return the request's context, creating it on first access."""
    ctx = getattr(request.state, "context", None)
    if ctx is None:
        ctx = RequestContext()
        request.state.context = ctx
    return ctx


class Stage:
    """A unit of request processing. Subclasses override ``__call__``."""

    name = "stage"

    async def __call__(self, request: Request, call_next: CallNext) -> Response:
        return await call_next(request)


class ErrorStage(Stage):
    """
    A stage that also converts errors raised by earlier stages into responses.

    In the normal flow it just passes the request on.
    """

    handles: Tuple[Type[BaseException], ...] = ()

    def can_handle(self, exc: BaseException) -> bool:
        return isinstance(exc, self.handles)

    async def handle_error(self, request: Request, exc: Exception) -> Response:
        raise exc


class Pipeline:
    """Runs requests through stages in their declared order."""

    def __init__(self, stages: Sequence[Stage]):
        self.stages: List[Stage] = list(stages)

    @property
    def stage_names(self) -> List[str]:
        return [stage.name for stage in self.stages]

    async def handle(self, request: Request, endpoint: CallNext) -> Response:
        return await self._dispatch(0, request, endpoint)

    async def _dispatch(self, index: int, request: Request, endpoint: CallNext) -> Response:
        if index == len(self.stages):
            return await endpoint(request)

        stage = self.stages[index]
        downstream_failed = False

        async def call_next(req: Request) -> Response:
            nonlocal downstream_failed
            try:
                return await self._dispatch(index + 1, req, endpoint)
            except Exception:
                downstream_failed = True
                raise

        try:
            return await stage(request, call_next)
        except Exception as exc:
            if downstream_failed:
                raise
            handler = self._error_stage_for(index, exc)
            if handler is None:
                raise
            logger.debug(f"{type(exc).__name__} from '{stage.name}' handled by '{handler.name}'")
            return await handler.handle_error(request, exc)

    def _error_stage_for(self, origin: int, exc: Exception) -> Optional[ErrorStage]:
        for stage in self.stages[origin + 1:]:
            if isinstance(stage, ErrorStage) and stage.can_handle(exc):
                return stage
        return None


class PipelineMiddleware(BaseHTTPMiddleware):
    """Mounts a ``Pipeline`` in front of the application's router."""

    def __init__(self, app, pipeline: Pipeline):
        super().__init__(app)
        self.pipeline = pipeline

    async def dispatch(self, request: Request, call_next: CallNext) -> Response:
        return await self.pipeline.handle(request, call_next)
