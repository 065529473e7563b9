# tests/middleware/test_pipeline.py
"""
Unit tests for the pipeline runner, independent of any HTTP server.

Stages are driven directly with Starlette requests built from a scope.
"""

import anyio
import pytest
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response

from src.core.exceptions import CsrfError
from src.main import build_pipeline
from src.middleware.pipeline import ErrorStage, Pipeline, Stage, get_request_context
from src.middleware.security_middleware import (
    DEADLINE_SCOPE_KEY,
    RequestTimeoutStage,
    RouteDeadlineMiddleware,
    SecurityHeadersStage,
)


def make_request(method="GET", path="/") -> Request:
    return Request({"type": "http", "method": method, "path": path, "headers": [], "query_string": b""})


async def ok_endpoint(request):
    return PlainTextResponse("endpoint")


class Recorder(Stage):
    """Appends its name to a shared log on the way in and out"""

    def __init__(self, name, log):
        self.name = name
        self.log = log

    async def __call__(self, request, call_next):
        self.log.append(f"{self.name}:in")
        response = await call_next(request)
        self.log.append(f"{self.name}:out")
        return response


class Raiser(Stage):
    name = "raiser"

    def __init__(self, exc):
        self.exc = exc

    async def __call__(self, request, call_next):
        raise self.exc


class Translator(ErrorStage):
    name = "translator"
    handles = (CsrfError,)

    def __init__(self):
        self.handled = []

    async def handle_error(self, request, exc):
        self.handled.append(exc)
        return PlainTextResponse("translated", status_code=303)


class TestPipelineOrder:

    async def test_stages_run_in_declared_order(self):
        log = []
        pipeline = Pipeline([Recorder("a", log), Recorder("b", log), Recorder("c", log)])

        response = await pipeline.handle(make_request(), ok_endpoint)

        assert response.body == b"endpoint"
        assert log == ["a:in", "b:in", "c:in", "c:out", "b:out", "a:out"]

    async def test_short_circuit_skips_later_stages_and_endpoint(self):
        log = []
        called = []

        class Stop(Stage):
            name = "stop"

            async def __call__(self, request, call_next):
                return PlainTextResponse("stopped", status_code=413)

        async def endpoint(request):
            called.append(True)
            return PlainTextResponse("endpoint")

        pipeline = Pipeline([Recorder("a", log), Stop(), Recorder("b", log)])

        response = await pipeline.handle(make_request(), endpoint)

        assert response.status_code == 413
        assert log == ["a:in", "a:out"]
        assert called == []

    async def test_stages_share_request_context(self):
        class Writer(Stage):
            async def __call__(self, request, call_next):
                get_request_context(request).view["seen"] = "yes"
                return await call_next(request)

        async def endpoint(request):
            return PlainTextResponse(get_request_context(request).view["seen"])

        response = await Pipeline([Writer()]).handle(make_request(), endpoint)

        assert response.body == b"yes"

    def test_default_pipeline_order(self, test_settings):
        pipeline = build_pipeline(test_settings, session_manager=None)

        assert pipeline.stage_names == [
            "security_headers",
            "request_timeout",
            "body_parsing",
            "static_files",
            "session",
            "flash",
            "csrf",
            "view_context",
            "csrf_error",
        ]


class TestErrorRouting:

    async def test_error_goes_to_later_error_stage(self):
        log = []
        translator = Translator()
        error = CsrfError()
        pipeline = Pipeline([Recorder("outer", log), Raiser(error), Recorder("skipped", log), translator])

        response = await pipeline.handle(make_request("POST"), ok_endpoint)

        assert response.status_code == 303
        assert translator.handled == [error]
        assert log == ["outer:in", "outer:out"]

    async def test_earlier_error_stage_not_used(self):
        translator = Translator()
        pipeline = Pipeline([translator, Raiser(CsrfError())])

        with pytest.raises(CsrfError):
            await pipeline.handle(make_request("POST"), ok_endpoint)

        assert translator.handled == []

    async def test_unclaimed_error_propagates(self):
        pipeline = Pipeline([Raiser(ValueError("boom")), Translator()])

        with pytest.raises(ValueError):
            await pipeline.handle(make_request(), ok_endpoint)

    async def test_endpoint_errors_not_translated(self):
        translator = Translator()

        async def endpoint(request):
            raise CsrfError()

        with pytest.raises(CsrfError):
            await Pipeline([translator]).handle(make_request(), endpoint)

        assert translator.handled == []

    async def test_error_stage_passes_through_normally(self):
        response = await Pipeline([Translator()]).handle(make_request(), ok_endpoint)

        assert response.body == b"endpoint"


class TestSecurityStages:

    async def test_headers_added(self):
        response = await Pipeline([SecurityHeadersStage()]).handle(make_request(), ok_endpoint)

        assert response.headers["x-content-type-options"] == "nosniff"
        assert response.headers["x-frame-options"] == "SAMEORIGIN"
        assert response.headers["strict-transport-security"].startswith("max-age=")

    async def test_powered_by_removed(self):
        async def endpoint(request):
            return Response("x", headers={"X-Powered-By": "Express"})

        response = await Pipeline([SecurityHeadersStage()]).handle(make_request(), endpoint)

        assert "x-powered-by" not in response.headers

    async def test_custom_headers(self):
        stage = SecurityHeadersStage(headers={"X-Test": "1"})

        response = await Pipeline([stage]).handle(make_request(), ok_endpoint)

        assert response.headers["x-test"] == "1"
        assert "content-security-policy" not in response.headers

    async def test_errors_become_500_with_headers(self):
        async def endpoint(request):
            raise RuntimeError("secret internals")

        response = await Pipeline([SecurityHeadersStage()]).handle(make_request(), endpoint)

        assert response.status_code == 500
        assert b"secret internals" not in response.body
        assert response.headers["x-content-type-options"] == "nosniff"

    async def test_request_deadline_recorded_in_scope(self):
        request = make_request()
        before = anyio.current_time()

        response = await Pipeline([RequestTimeoutStage(5)]).handle(request, ok_endpoint)

        assert response.status_code == 200
        assert before + 5 <= request.scope[DEADLINE_SCOPE_KEY] <= anyio.current_time() + 5

    async def test_zero_deadline_disables_timeout(self):
        request = make_request()

        response = await Pipeline([RequestTimeoutStage(0)]).handle(request, ok_endpoint)

        assert response.status_code == 200
        assert DEADLINE_SCOPE_KEY not in request.scope


async def run_asgi(app, scope):
    """Drive an ASGI app once and collect what it sends"""
    sent = []

    async def receive():
        return {"type": "http.request", "body": b"", "more_body": False}

    async def send(message):
        sent.append(message)

    await app(scope, receive, send)
    return sent


class TestRouteDeadlineMiddleware:

    def http_scope(self, deadline=None):
        scope = {"type": "http", "method": "GET", "path": "/slow", "headers": [], "query_string": b""}
        if deadline is not None:
            scope[DEADLINE_SCOPE_KEY] = deadline
        return scope

    async def test_late_route_cancelled_with_504(self):
        progress = []

        async def slow_app(scope, receive, send):
            progress.append("started")
            await anyio.sleep(5)
            progress.append("finished")

        sent = await run_asgi(RouteDeadlineMiddleware(slow_app), self.http_scope(anyio.current_time() + 0.05))

        assert progress == ["started"]
        assert sent[0]["type"] == "http.response.start"
        assert sent[0]["status"] == 504

    async def test_fast_route_untouched(self):
        sent = await run_asgi(
            RouteDeadlineMiddleware(PlainTextResponse("done")),
            self.http_scope(anyio.current_time() + 5)
        )

        assert sent[0]["status"] == 200
        assert sent[-1]["body"] == b"done"

    async def test_started_response_not_replaced(self):
        async def streaming_app(scope, receive, send):
            await send({"type": "http.response.start", "status": 200, "headers": []})
            await anyio.sleep(5)

        sent = await run_asgi(RouteDeadlineMiddleware(streaming_app), self.http_scope(anyio.current_time() + 0.05))

        assert [m["type"] for m in sent] == ["http.response.start"]
        assert sent[0]["status"] == 200

    async def test_without_deadline_passes_through(self):
        async def app(scope, receive, send):
            await anyio.sleep(0.01)
            await PlainTextResponse("no deadline")(scope, receive, send)

        sent = await run_asgi(RouteDeadlineMiddleware(app), self.http_scope())

        assert sent[0]["status"] == 200
