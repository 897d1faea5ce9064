from __future__ import annotations
from dotenv import load_dotenv
load_dotenv()  # Load .env file before importing app modules

import sys
import time
import logging
import json
from contextlib import asynccontextmanager
from typing import Callable, Optional
import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from picohub.routes import router
from picohub.service import TelemetryService
from picohub.state import StorageError
from picohub.config import HOST, PORT, CORS_ORIGINS

# Configure logging to show all INFO level logs from our modules
logging.basicConfig(
    level=logging.INFO,
    format='%(levelname)s: %(name)s: %(message)s'
)
logging.getLogger("picohub").setLevel(logging.INFO)

logger = logging.getLogger(__name__)


class LoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to log detailed request and response information."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()

        # Get client IP
        client_ip = request.client.host if request.client else "unknown"

        # OPTIONS requests are handled by CORS middleware, just log and pass through
        if request.method == "OPTIONS":
            response = await call_next(request)
            logger.debug(f"OPTIONS {request.url.path} from {client_ip} -> {response.status_code}")
            return response

        # Get request body for POST requests (devices and dashboard both send JSON)
        body = None
        if request.method in ("POST", "PATCH", "PUT"):
            body_bytes = await request.body()
            if body_bytes:
                try:
                    body = json.loads(body_bytes)
                except json.JSONDecodeError:
                    body = "<non-json body>"

        query_params = dict(request.query_params) if request.query_params else None
        logger.info(
            f"Request: {request.method} {request.url.path} | "
            f"IP: {client_ip} | "
            f"Query: {query_params} | "
            f"Body: {body if body else 'N/A'}"
        )

        response = await call_next(request)

        process_time = time.time() - start_time
        logger.info(
            f"Response: {request.method} {request.url.path} | "
            f"Status: {response.status_code} | "
            f"Time: {process_time:.3f}s"
        )

        return response


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # devices expect 400 for a bad reading, not FastAPI's default 422
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


async def _storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    logger.error(f"Storage error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"detail": "storage error"})


@asynccontextmanager
async def lifespan(app: FastAPI):
    service: TelemetryService = app.state.service
    service.start()
    try:
        yield
    finally:
        service.stop()


def create_app(
    ttl: Optional[float] = None,
    sweep_interval: Optional[float] = None,
    buffer_max: Optional[int] = None,
) -> FastAPI:
    """
    Build the service and the FastAPI app around it.

    Raises StorageError when the database cannot be prepared; there is no
    mode that runs without storage.
    """
    kwargs = {}
    if ttl is not None:
        kwargs["ttl"] = ttl
    if sweep_interval is not None:
        kwargs["sweep_interval"] = sweep_interval
    if buffer_max is not None:
        kwargs["buffer_max"] = buffer_max
    service = TelemetryService(**kwargs)
    service.bootstrap()

    app = FastAPI(title="Pico Telemetry Hub", version="0.1.0", lifespan=lifespan)
    app.state.service = service

    # Request logging middleware (add first so it wraps everything)
    app.add_middleware(LoggingMiddleware)

    # CORS for the browser dashboard
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(StorageError, _storage_error_handler)

    app.include_router(router)
    return app


try:
    app = create_app()
except StorageError as e:
    logger.critical(f"Cannot start without storage: {e}")
    sys.exit(1)

if __name__ == "__main__":
    uvicorn.run("main:app", host=HOST, port=PORT)
