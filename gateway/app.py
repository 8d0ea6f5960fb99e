import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from timevision.errors import TimeVisionError
from timevision.services import Services

from .routes import router
from .ws import router as ws_router

logger = logging.getLogger(__name__)


def create_app(services: Services) -> FastAPI:
    """Build the HTTP/WebSocket front end around already-constructed services."""
    app = FastAPI(title="TimeVision", description="Hub traffic metering and settlement")
    app.state.services = services

    app.include_router(router)
    app.include_router(ws_router)

    @app.exception_handler(TimeVisionError)
    async def handle_domain_error(_request: Request, exc: TimeVisionError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def handle_bad_request(_request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"error": "Invalid request body"})

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.url.path}: {exc}")
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    return app
