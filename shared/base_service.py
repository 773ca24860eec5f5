"""
Base service class for Membership Access Layer services.
"""

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from typing import Dict, Optional
import time
import os

from shared.config import AccessConfig, get_config
from shared.logging import configure_logging, get_logger, set_correlation_id, clear_context
from shared.metrics import get_metrics_collector
from shared.errors import AccessLayerException, ValidationError

CORRELATION_HEADER = "X-Correlation-Id"


class BaseService:
    """Base service class with common functionality."""

    def __init__(self, service_name: str, port: int, config: Optional[AccessConfig] = None):
        self.service_name = service_name
        self.port = port
        self.config = config or get_config(service_name, port)
        self.logger = get_logger(service_name)
        self.metrics = get_metrics_collector(service_name)
        self._start_time = time.time()

        configure_logging(service_name, self.config.log_level)

        self.app = self._create_app()
        self._setup_middleware()
        self._setup_routes()

    def _create_app(self) -> FastAPI:
        """Create FastAPI application."""

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            await self.start()
            try:
                yield
            finally:
                await self.stop()

        return FastAPI(
            title=f"{self.service_name.title()} Service",
            description=f"Membership Access Layer - {self.service_name.title()} Service",
            version="1.0.0",
            docs_url="/docs" if self.config.env == "local" else None,
            redoc_url="/redoc" if self.config.env == "local" else None,
            lifespan=lifespan,
        )

    def _setup_middleware(self):
        """Set up middleware."""

        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"] if self.config.env == "local" else [],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        @self.app.middleware("http")
        async def add_request_context(request: Request, call_next):
            start_time = time.time()
            correlation_id = set_correlation_id(request.headers.get(CORRELATION_HEADER))

            try:
                response = await call_next(request)
                response.headers[CORRELATION_HEADER] = correlation_id

                duration = time.time() - start_time
                self.metrics.record_http_request(
                    method=request.method,
                    endpoint=request.url.path,
                    status_code=response.status_code,
                    duration=duration
                )
                self.logger.info(
                    "HTTP request",
                    method=request.method,
                    path=request.url.path,
                    status_code=response.status_code,
                    duration_ms=round(duration * 1000, 2)
                )
                return response
            finally:
                clear_context()

    def _setup_routes(self):
        """Set up common routes."""

        @self.app.get("/health")
        async def health_check():
            """Health check endpoint."""
            try:
                dependencies = await self._check_dependencies()
                self.metrics.record_health_check("ok")

                return {
                    "service": self.service_name,
                    "status": "ok",
                    "uptime_seconds": self._get_uptime(),
                    "dependencies": dependencies,
                    "version": "1.0.0",
                    "commit": os.getenv("GIT_COMMIT", "unknown")
                }
            except Exception as e:
                self.logger.error("Health check failed", error=str(e))
                self.metrics.record_health_check("error")
                return JSONResponse(
                    status_code=503,
                    content={
                        "service": self.service_name,
                        "status": "error",
                        "error": str(e)
                    }
                )

        @self.app.get("/metrics")
        async def metrics_endpoint():
            """Prometheus metrics endpoint."""
            from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
            return Response(
                content=generate_latest(self.metrics.registry),
                media_type=CONTENT_TYPE_LATEST
            )

        @self.app.exception_handler(AccessLayerException)
        async def access_layer_exception_handler(request: Request, exc: AccessLayerException):
            """Handle AccessLayerException."""
            log = self.logger.error if exc.status_code >= 500 else self.logger.warning
            log(
                "Access layer error",
                code=exc.code,
                message=exc.message,
                path=request.url.path
            )
            self.metrics.record_error(exc.code)
            return JSONResponse(
                status_code=exc.status_code,
                content=exc.to_response().model_dump()
            )

        @self.app.exception_handler(RequestValidationError)
        async def validation_exception_handler(request: Request, exc: RequestValidationError):
            """Report malformed requests as VALIDATION_ERROR."""
            error = ValidationError(details={"errors": jsonable_encoder(exc.errors())})
            self.metrics.record_error(error.code)
            return JSONResponse(
                status_code=error.status_code,
                content=error.to_response().model_dump()
            )

        @self.app.exception_handler(Exception)
        async def general_exception_handler(request: Request, exc: Exception):
            """Handle general exceptions."""
            self.logger.error("Unhandled exception", error=str(exc), exc_info=True)
            self.metrics.record_error("INTERNAL_ERROR")
            return JSONResponse(
                status_code=500,
                content={
                    "code": "INTERNAL_ERROR",
                    "message": "Internal server error",
                    "details": {}
                }
            )

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check service dependencies. Override in subclasses."""
        return {}

    async def start(self):
        """Start service components. Override in subclasses."""

    async def stop(self):
        """Stop service components. Override in subclasses."""

    def _get_uptime(self) -> float:
        """Get service uptime in seconds."""
        return time.time() - self._start_time

    def run(self):
        """Run the service."""
        import uvicorn
        uvicorn.run(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level.lower()
        )
