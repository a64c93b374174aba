# apps/api/app_factory.py
from __future__ import annotations
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import RedirectResponse

from apps.common.logging import setup_logging


def create_app(*, routers: Optional[list] = None, log_level: Optional[str] = None) -> FastAPI:
    if log_level:
        setup_logging(log_level)

    app = FastAPI(title="Medpack Batch API")

    @app.get("/")
    async def root():
        return RedirectResponse(url="/docs")

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    for r in routers or []:
        app.include_router(r)

    return app
