from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.responses import PlainTextResponse
from rich.console import Console

from .settings import BackendSettings, get_backend_settings

console = Console()

GREETING = "Backend is running from the server demo 2 "


def create_app(settings: BackendSettings | None = None) -> FastAPI:
    settings = settings or get_backend_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        console.print(f"[green]Server running on port {settings.PORT}[/green]")
        yield

    app = FastAPI(title="Backend Service", lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)

    @app.get("/", response_class=PlainTextResponse)
    async def root() -> str:
        return GREETING

    return app


def serve(settings: BackendSettings | None = None):
    settings = settings or get_backend_settings()
    uvicorn.run(create_app(settings), host=settings.HOST, port=settings.PORT, log_level="warning")


if __name__ == "__main__":
    serve()
