import os
import logging
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.helpers import fail, method_not_allowed, ok
from app.routes_insights import router as insights_router
from app.services import Services, build_services

# Load environment variables
load_dotenv()

# Logging setup (structured-ish JSON)
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='{"time":"%(asctime)s","level":"%(levelname)s","message":"%(message)s","module":"%(name)s"}',
)
logger = logging.getLogger(__name__)


class EmptyPreflightCORSMiddleware(CORSMiddleware):
    """CORS whose successful preflight answers carry no body."""

    def preflight_response(self, request_headers):
        response = super().preflight_response(request_headers)
        if response.status_code != 200:
            return response
        headers = {k: v for k, v in response.headers.items() if k not in ("content-length", "content-type")}
        return Response(status_code=200, headers=headers)


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the API. Services are created at startup unless injected."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "services", None) is None:
            app.state.services = build_services()
        await app.state.services.start()
        logger.info("Insight delivery API started")
        try:
            yield
        finally:
            logger.info("Insight delivery API shutting down")
            await app.state.services.close()

    app = FastAPI(title="Insight Delivery API", lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        EmptyPreflightCORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 405:
            allow = (exc.headers or {}).get("Allow", "")
            methods = [m.strip() for m in allow.split(",") if m.strip()]
            return method_not_allowed(methods + ["OPTIONS"])
        if exc.status_code == 404:
            return fail(404, "Not found", message=f"No route for {request.url.path}")
        return fail(exc.status_code, str(exc.detail), headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.info(f"Invalid request to {request.url.path}: {len(exc.errors())} errors")
        return fail(400, "Invalid request", message="Request body or parameters are malformed")

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.url.path}: {type(exc).__name__}: {exc}")
        return fail(500, "Internal server error")

    app.include_router(insights_router)

    @app.get("/")
    def root():
        return ok({"service": "insight-delivery", "docs": "/docs"})

    return app


app = create_app()
