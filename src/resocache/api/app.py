from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware

from resocache.api.routes_listings import router as listings_router
from resocache.api.routes_listings import shutdown_dependencies
from resocache.logging_config import configure_logging
from resocache.settings import get_config


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    try:
        yield
    finally:
        await run_in_threadpool(shutdown_dependencies)


def create_app() -> FastAPI:
    configure_logging()
    config = get_config()

    app = FastAPI(title="resocache API", version="0.1.0", lifespan=lifespan)

    @app.get("/healthz")
    def healthz() -> dict[str, bool]:
        return {"ok": True}

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.cors.allow_origins,
        allow_credentials=True,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    app.include_router(listings_router, tags=["listings"])

    return app


app = create_app()
