from contextlib import asynccontextmanager
from pathlib import Path

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import FileResponse, PlainTextResponse, Response
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from .models import RouteRule
from .routing import build_route_table, resolve
from .settings import RouterSettings, get_router_settings

console = Console()

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
STATIC_METHODS = ("GET", "HEAD")

HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
}
# Rewritten by the router rather than copied from the client
FORWARDING_HEADERS = {"host", "content-length", "x-real-ip", "x-forwarded-for", "x-forwarded-proto"}
# httpx hands back a decoded body, so length and encoding are recomputed downstream
UPSTREAM_ONLY_HEADERS = {"content-length", "content-encoding"}


def forwarded_headers(request: Request) -> list[tuple[str, str]]:
    """
    Copies the client's end-to-end headers and adds the caller identity the
    backend would otherwise lose behind the router.
    """
    headers = [
        (key, value)
        for key, value in request.headers.items()
        if key not in HOP_BY_HOP_HEADERS and key not in FORWARDING_HEADERS
    ]

    client_ip = request.client.host if request.client else ""
    prior = request.headers.get("x-forwarded-for")

    headers.append(("host", request.headers.get("host", "")))
    headers.append(("x-real-ip", client_ip))
    headers.append(("x-forwarded-for", f"{prior}, {client_ip}" if prior else client_ip))
    headers.append(("x-forwarded-proto", request.url.scheme))
    return headers


def upstream_url(base: str, request: Request) -> str:
    raw_path = request.scope.get("raw_path")
    path = raw_path.split(b"?", 1)[0].decode("latin-1") if raw_path else request.url.path
    url = base.rstrip("/") + path
    if request.url.query:
        url = f"{url}?{request.url.query}"
    return url


def resolve_static(root: Path, url_path: str, index_document: str) -> Path | None:
    """Maps a request path to a file under root, or None when nothing matches."""
    try:
        candidate = (root / url_path.lstrip("/")).resolve()
        if candidate != root and root not in candidate.parents:
            return None
        if candidate.is_dir():
            candidate = candidate / index_document
        return candidate if candidate.is_file() else None
    except (OSError, ValueError):
        # over-long segments or NUL bytes never name a file on disk
        return None


def create_app(settings: RouterSettings | None = None, transport: httpx.AsyncBaseTransport | None = None) -> FastAPI:
    """
    Builds the Edge Router.
    `transport` replaces the network transport of the upstream client, which
    lets tests stand in for the backend.
    """
    settings = settings or get_router_settings()
    table = build_route_table(settings.UPSTREAM_URL)
    static_root = settings.STATIC_ROOT.resolve()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        timeout = httpx.Timeout(settings.READ_TIMEOUT, connect=settings.CONNECT_TIMEOUT)
        app.state.upstream = httpx.AsyncClient(timeout=timeout, transport=transport, follow_redirects=False)
        yield
        await app.state.upstream.aclose()

    app = FastAPI(title="Edge Router", lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    app.state.route_table = table

    async def forward(request: Request, rule: RouteRule) -> Response:
        client: httpx.AsyncClient = request.app.state.upstream
        outbound = client.build_request(
            request.method,
            upstream_url(rule.upstream, request),
            headers=forwarded_headers(request),
            content=await request.body(),
        )

        try:
            upstream = await client.send(outbound)
        except httpx.TimeoutException as e:
            console.print(f"[bold orange1]⏱️  Upstream {rule.upstream} timed out:[/bold orange1] {escape(repr(e))}")
            return PlainTextResponse("504 Gateway Timeout", status_code=504)
        except httpx.RequestError as e:
            console.print(f"[bold red]❌ Upstream {rule.upstream} unreachable:[/bold red] {escape(repr(e))}")
            return PlainTextResponse("502 Bad Gateway", status_code=502)

        response = Response(content=upstream.content, status_code=upstream.status_code)
        for key, value in upstream.headers.multi_items():
            if key in HOP_BY_HOP_HEADERS or key in UPSTREAM_ONLY_HEADERS:
                continue
            response.headers.append(key, value)
        return response

    def serve_static(request: Request) -> Response:
        if request.method not in STATIC_METHODS:
            return PlainTextResponse("405 Method Not Allowed", status_code=405, headers={"Allow": "GET, HEAD"})

        target = resolve_static(static_root, request.url.path, settings.INDEX_DOCUMENT)
        if target is None:
            # single-page-application fallback
            target = static_root / settings.INDEX_DOCUMENT
            if not target.is_file():
                return PlainTextResponse("404 Not Found", status_code=404)
        return FileResponse(target)

    @app.api_route("/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
    async def dispatch(request: Request, path: str) -> Response:
        rule = resolve(table, request.url.path)
        if rule.target == "upstream":
            return await forward(request, rule)
        return serve_static(request)

    return app


def serve(settings: RouterSettings | None = None):
    settings = settings or get_router_settings()
    table = build_route_table(settings.UPSTREAM_URL)

    routes = "\n".join(
        f"  [white]{rule.prefix:<6}[/white] → [blue]{rule.upstream or settings.STATIC_ROOT}[/blue]" for rule in table
    )
    console.print(
        Panel.fit(
            "[bold cyan]Edge Router[/bold cyan]\n"
            f"Listening: [green]{settings.HOST}:{settings.PORT}[/green]\n"
            f"Routes:\n{routes}",
            title="System Start",
        )
    )
    uvicorn.run(create_app(settings), host=settings.HOST, port=settings.PORT, log_level="warning")


if __name__ == "__main__":
    serve()
