"""FastAPI application that reports the caller's IP address."""

from enum import Enum
from pathlib import Path

from fastapi import FastAPI, Request, Response
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from jinja2 import TemplateError

from .. import __version__
from ..utils.logging import get_logger
from ..utils.request_context import client_ip_from_request

logger = get_logger(__name__)

WEB_DIR = Path(__file__).parent
TEMPLATES_DIR = WEB_DIR / "templates"
STATIC_DIR = WEB_DIR / "static"
INDEX_TEMPLATE = "index.html"


class MediaType(str, Enum):
    """Representations the responder can produce."""

    HTML = "text/html"
    JSON = "application/json"
    TEXT = "text/plain"


# Only these are matched against Accept; anything else falls back to TEXT
NEGOTIABLE_TYPES = {MediaType.HTML.value: MediaType.HTML, MediaType.JSON.value: MediaType.JSON}


def negotiate_media_type(accept: str | None) -> MediaType:
    """
    Pick a representation from an Accept header.

    Candidates are tried in header order with their parameters dropped.
    Matching is exact: no wildcards and no q-value ranking.
    """
    if not accept:
        return MediaType.TEXT
    for candidate in accept.split(","):
        media_type = candidate.split(";", 1)[0].strip()
        if media_type in NEGOTIABLE_TYPES:
            return NEGOTIABLE_TYPES[media_type]
    return MediaType.TEXT


def render_html(templates: Jinja2Templates, ip: str) -> HTMLResponse:
    """Render the index page, keeping whatever output preceded a template error."""
    chunks: list[str] = []
    try:
        template = templates.get_template(INDEX_TEMPLATE)
        for chunk in template.generate(ip=ip):
            chunks.append(chunk)
    except TemplateError as e:
        logger.error("failed to render html template", template=INDEX_TEMPLATE, error=str(e))
    return HTMLResponse("".join(chunks))


def render_json(ip: str) -> JSONResponse:
    return JSONResponse({"ip": ip})


def render_text(ip: str) -> PlainTextResponse:
    return PlainTextResponse(ip + "\n")


def create_app(templates: Jinja2Templates | None = None) -> FastAPI:
    """
    Create the FastAPI application.

    The template set is built once here and owned by the app; handlers read
    it from app.state and never mutate it.
    """
    app = FastAPI(
        title="ip-potato",
        description="What is my IP?",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    app.state.templates = templates or Jinja2Templates(directory=str(TEMPLATES_DIR))

    app.mount("/static", StaticFiles(directory=str(STATIC_DIR)), name="static")

    # Every path outside /static/ reports the IP, not just the root
    @app.api_route("/{path:path}", methods=["GET", "HEAD"])
    async def client_ip(request: Request, path: str) -> Response:
        ip = client_ip_from_request(request)
        media_type = negotiate_media_type(request.headers.get("Accept"))
        logger.debug("resolved client ip", ip=ip, media_type=media_type.value)

        if media_type is MediaType.HTML:
            return render_html(request.app.state.templates, ip)
        if media_type is MediaType.JSON:
            return render_json(ip)
        return render_text(ip)

    return app
