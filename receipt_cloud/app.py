"""
FastAPI application entry point for the receipt backend layer.
"""

from __future__ import annotations

from fastapi import FastAPI

from receipt_cloud.config import get_settings
from receipt_cloud.routes import router


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="Receipt Cloud Backend", version="0.1.0")
    app.include_router(router, prefix=settings.api_prefix)
    return app


app = create_app()
