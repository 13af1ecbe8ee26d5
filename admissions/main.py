"""
Main FastAPI application entry point.
"""
from contextlib import asynccontextmanager
import logging
import time
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CollectorRegistry
from prometheus_fastapi_instrumentator import Instrumentator
from redis.exceptions import ConnectionError as RedisConnectionError
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from admissions.api.admin import router as admin_router
from admissions.api.auth import router as auth_router
from admissions.api.candidates import router as candidates_router
from admissions.api.enrollments import router as enrollments_router
from admissions.api.exams import router as exams_router
from admissions.api.results import router as results_router
from admissions.api.sessions import router as sessions_router
from admissions.core.config import settings
from admissions.core.errors import AdmissionsError, ErrorKind
from admissions.services.container import Services, build_services

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

if settings.SENTRY_DSN:
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
        ],
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
    )

STATUS_BY_KIND = {
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.STATE_CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorKind.TRANSIENT: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.FATAL: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


async def admissions_error_handler(request: Request, exc: AdmissionsError):
    code = STATUS_BY_KIND[exc.kind]
    if exc.kind is ErrorKind.FATAL:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=code, content={"error": exc.to_dict()})


async def storage_unavailable_handler(request: Request, exc: Exception):
    logger.warning("Storage unavailable on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"error": {"code": "StorageUnavailable", "kind": ErrorKind.TRANSIENT.value,
                           "message": "Storage is temporarily unavailable, retry later", "details": {}}},
    )


async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    message = "An internal error occurred" if settings.is_production() else str(exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": {"code": "InternalError", "kind": ErrorKind.FATAL.value, "message": message, "details": {}}},
    )


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the API. Tests pass prepared ``services``; otherwise they are built from settings on startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting %s %s", settings.APP_NAME, settings.APP_VERSION)
        owned = services is None
        app.state.services = build_services() if owned else services
        yield
        if owned:
            app.state.services.close()
        logger.info("Shutdown complete")

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        docs_url=None if settings.is_production() else "/docs",
        lifespan=lifespan,
    )
    app.add_middleware(CORSMiddleware, allow_origins=settings.CORS_ORIGINS, allow_credentials=True,
                       allow_methods=["*"], allow_headers=["*"])

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        logger.info("%s %s -> %s (%.1f ms)", request.method, request.url.path, response.status_code,
                    (time.perf_counter() - started) * 1000)
        return response

    app.add_exception_handler(AdmissionsError, admissions_error_handler)
    app.add_exception_handler(OperationalError, storage_unavailable_handler)
    app.add_exception_handler(RedisConnectionError, storage_unavailable_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    prefix = settings.API_V1_PREFIX
    app.include_router(auth_router, prefix=f"{prefix}/auth", tags=["auth"])
    app.include_router(candidates_router, prefix=f"{prefix}/candidates", tags=["candidates"])
    app.include_router(enrollments_router, prefix=f"{prefix}/enrollments", tags=["enrollments"])
    app.include_router(exams_router, prefix=f"{prefix}/exams", tags=["exams"])
    app.include_router(sessions_router, prefix=f"{prefix}/sessions", tags=["sessions"])
    app.include_router(results_router, prefix=f"{prefix}/results", tags=["results"])
    app.include_router(admin_router, prefix=f"{prefix}/admin", tags=["admin"])

    if settings.PROMETHEUS_ENABLED:
        # a registry per app, so apps built side by side do not clash on metric names
        Instrumentator(registry=CollectorRegistry()).instrument(app).expose(app, endpoint="/metrics")

    @app.get("/health")
    def health(request: Request):
        with request.app.state.services.session_factory() as db:
            db.execute(text("SELECT 1"))
        return {"status": "ok", "version": settings.APP_VERSION}

    return app


app = create_app()
