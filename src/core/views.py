# src/core/views.py
"""Template rendering with the request's view context merged in."""

from pathlib import Path
from typing import Any, Dict, Optional, Union

from fastapi.templating import Jinja2Templates
from starlette.requests import Request
from starlette.responses import Response

from src.middleware.pipeline import get_request_context


class ViewRenderer:
    """
    Renders Jinja2 templates from the views directory.

    Every template sees ``csrf_token``, ``flash`` and whatever the view
    context injector added; handler-supplied values win on conflicts.
    """

    def __init__(self, directory: Union[str, Path]):
        self.templates = Jinja2Templates(directory=str(directory))

    def context_for(self, request: Request, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        merged = dict(get_request_context(request).view)
        merged.update(context or {})
        return merged

    def render(
        self,
        request: Request,
        name: str,
        context: Optional[Dict[str, Any]] = None,
        status_code: int = 200
    ) -> Response:
        return self.templates.TemplateResponse(
            request,
            name,
            self.context_for(request, context),
            status_code=status_code
        )


def get_views(request: Request) -> ViewRenderer:
    """FastAPI dependency returning the app's renderer."""
    return request.app.state.views
