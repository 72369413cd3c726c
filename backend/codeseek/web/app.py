"""Main FastAPI application."""

import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .. import configure_logging
from ..service import IndexService
from .routes import index, search


def create_app(service: Optional[IndexService] = None, project_path: Optional[str] = None) -> FastAPI:
    """Build the API around one IndexService.

    With `project_path` (or CODESEEK_PROJECT) set, the service is
    initialized on startup.
    """
    service = service or IndexService()
    project_path = project_path or os.getenv("CODESEEK_PROJECT")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if project_path:
            await service.initialize(project_path)
        yield
        await service.dispose()

    app = FastAPI(title="codeseek", lifespan=lifespan)
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    api_router = APIRouter(prefix="/api")
    api_router.include_router(index.router)
    api_router.include_router(search.router)
    app.include_router(api_router)

    return app


def main() -> None:
    import uvicorn

    configure_logging()
    uvicorn.run(
        create_app(),
        host=os.getenv("CODESEEK_HOST", "127.0.0.1"),
        port=int(os.getenv("CODESEEK_PORT", "8765")),
    )
