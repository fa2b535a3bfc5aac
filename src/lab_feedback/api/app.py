"""FastAPI application factory."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from lab_feedback.api.conversations import router as conversations_router
from lab_feedback.api.images import router as images_router
from lab_feedback.api.websocket import router as websocket_router
from lab_feedback.app_logging import configure_logging
from lab_feedback.containers import AppContainer
from lab_feedback.errors import LabFeedbackError


def create_app(container: AppContainer) -> FastAPI:
    """Create a FastAPI app configured with dependencies."""
    configure_logging(container.settings.log_level)
    logger = logging.getLogger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("Starting lab feedback API (%s)", container.settings.environment)
        yield
        await app.state.container.close_resources()

    app = FastAPI(lifespan=lifespan)
    app.state.container = container

    @app.exception_handler(LabFeedbackError)
    async def handle_lab_feedback_error(
        request: Request, exc: LabFeedbackError
    ) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    app.include_router(images_router)
    app.include_router(conversations_router)
    app.include_router(websocket_router)

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Simple health check endpoint."""
        return {"status": "ok"}

    return app
