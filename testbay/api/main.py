"""ASGI application factory for the report server.

Run with ``uvicorn --factory testbay.api.main:create_app``.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI

from testbay.api.reports import router as reports_router
from testbay.config.logging import configure_logging
from testbay.config.settings import AppSettings, load_settings
from testbay.security.report_tokens import ReportTokenService

logger = logging.getLogger(__name__)


def create_app(settings: Optional[AppSettings] = None) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(
        settings.logging.level,
        structured=settings.logging.structured,
        default_fields={"service": "testbay-reports"},
    )

    app = FastAPI(title="testbay reports")
    app.state.reports_root = settings.runner.reports_dir
    app.state.report_tokens = None
    if settings.security.report_token_secret:
        app.state.report_tokens = ReportTokenService(
            settings.security.report_token_secret,
            ttl_seconds=settings.security.report_token_ttl_seconds,
        )
    else:
        logger.warning("PLATFORM_JWT_SECRET is not set; report downloads are disabled")

    app.include_router(reports_router)

    @app.get("/health", tags=["health"])
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app


__all__ = ["create_app"]
