# tests/conftest.py
"""
Shared fixtures for webgate tests.

Every app built here uses the in-memory session store and temporary
static/views directories, so no MongoDB or Redis is needed.
"""

import asyncio
import re
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import APIRouter, Body, Depends, Form
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse
from fastapi.testclient import TestClient
from starlette.requests import Request

from src.core.config import Settings
from src.core.views import ViewRenderer, get_views
from src.main import create_app
from src.middleware.pipeline import get_request_context
from src.services.session_store import MemorySessionStore

LOGIN_TEMPLATE = """<html><body>
{% for message in flash.get('error', []) %}<p class="error">{{ message }}</p>{% endfor %}
{% for message in flash.get('success', []) %}<p class="success">{{ message }}</p>{% endfor %}
<form method="post" action="/login">
<input type="hidden" name="_csrf" value="{{ csrf_token }}">
<input name="username"><input name="password" type="password">
</form>
</body></html>
"""

INDEX_TEMPLATE = """<html><body>
<p id="user">{{ user or 'anonymous' }}</p>
{% for message in flash.get('success', []) %}<p class="success">{{ message }}</p>{% endfor %}
</body></html>
"""

TOKEN_PATTERN = re.compile(r'name="_csrf" value="([^"]+)"')


def extract_csrf_token(html: str) -> str:
    """Pull the hidden CSRF token out of a rendered login form"""
    match = TOKEN_PATTERN.search(html)
    assert match, "no CSRF token in page"
    return match.group(1)


def build_test_router() -> APIRouter:
    """A small login flow exercising sessions, flash and CSRF"""
    router = APIRouter()

    @router.get("/")
    async def index(request: Request, views: ViewRenderer = Depends(get_views)):
        return views.render(request, "index.html")

    @router.get("/login")
    async def login_page(request: Request):
        return request.app.state.views.render(request, "login.html")

    @router.post("/login")
    async def login(request: Request, username: str = Form(...), password: str = Form(...)):
        ctx = get_request_context(request)
        if password != "secret":
            ctx.flash.push("error", "Invalid credentials")
            return RedirectResponse("/login", status_code=303)

        ctx.session["user"] = username
        ctx.flash.push("success", f"Welcome, {username}")
        return RedirectResponse("/", status_code=303)

    @router.post("/logout")
    async def logout(request: Request):
        get_request_context(request).session.destroy()
        return RedirectResponse("/", status_code=303)

    @router.post("/api/echo")
    async def echo(payload: dict = Body(...)):
        return JSONResponse({"received": payload})

    @router.get("/flash-now")
    async def flash_now(request: Request):
        # Pushed during this request, so only the next request sees it
        get_request_context(request).flash.push("success", "Saved")
        return request.app.state.views.render(request, "index.html")

    @router.get("/slow")
    async def slow(request: Request):
        calls = request.app.state.slow_calls
        calls.append("started")
        await asyncio.sleep(3)
        calls.append("finished")
        return PlainTextResponse("late")

    @router.get("/boom")
    async def boom():
        raise RuntimeError("database password is hunter2")

    return router


@pytest.fixture
def static_dir(tmp_path):
    """Public directory with a single stylesheet"""
    directory = tmp_path / "public"
    directory.mkdir()
    (directory / "style.css").write_text("body { color: black; }")
    return directory


@pytest.fixture
def views_dir(tmp_path):
    """Views directory with the login and index templates"""
    directory = tmp_path / "views"
    directory.mkdir()
    (directory / "login.html").write_text(LOGIN_TEMPLATE)
    (directory / "index.html").write_text(INDEX_TEMPLATE)
    return directory


@pytest.fixture
def make_settings(static_dir, views_dir):
    """Factory for test settings; keyword arguments override the defaults"""
    def _make(**overrides) -> Settings:
        values = {
            "CONNECTIONSTRING": "mongodb://localhost:27017/webgate_test",
            "SESSION_SECRET": "test-session-secret",
            "SESSION_BACKEND": "memory",
            "STATIC_DIR": static_dir,
            "VIEWS_DIR": views_dir,
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make


@pytest.fixture
def test_settings(make_settings):
    return make_settings()


@pytest.fixture
def session_store():
    return MemorySessionStore()


@pytest.fixture
def mock_database():
    """DatabaseService stand-in that connects successfully"""
    database = MagicMock()
    database.initialize = AsyncMock()
    database.health_check = AsyncMock(return_value={"healthy": True, "status": "connected", "details": {}})
    database.shutdown = AsyncMock()
    return database


@pytest.fixture
def make_app(test_settings, session_store, mock_database):
    """Factory for a fully wired app around the test router"""
    def _make(current: Optional[Settings] = None, **kwargs):
        kwargs.setdefault("session_store", session_store)
        kwargs.setdefault("database", mock_database)
        kwargs.setdefault("routes", build_test_router())
        return create_app(current or test_settings, **kwargs)

    return _make


@pytest.fixture
def app(make_app):
    return make_app()


@pytest.fixture
def client(app):
    return TestClient(app)
