"""
FastAPI application factory
"""
import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from earlyrise.api.v1 import admin, bot
from earlyrise.config import get_settings
from earlyrise.domain.errors import (
    ConfigurationError,
    DataIntegrityError,
    EngineError,
    ExternalDependencyError,
    PermissionDeniedError,
    UserError,
)
from earlyrise.infrastructure.db.session import check_db_connection

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class ErrorLoggingMiddleware(BaseHTTPMiddleware):
    """Ловит всё, что не обработали exception handlers (включая sync routes)."""

    async def dispatch(self, request, call_next):
        try:
            return await call_next(request)
        except Exception as exc:
            tb_str = traceback.format_exc()
            logger.error(f"\n{'='*60}\nERROR on {request.method} {request.url.path}\n{tb_str}{'='*60}")
            return Response(content=f"Internal Server Error: {exc}", status_code=500)


def _error_body(exc: EngineError) -> dict:
    return {"ok": False, "error": exc.code, "message": exc.message}


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(UserError)
    async def user_error(request: Request, exc: UserError):
        # Ожидаемый отказ: бот просто показывает message
        return JSONResponse(_error_body(exc), status_code=200)

    @app.exception_handler(PermissionDeniedError)
    async def permission_denied(request: Request, exc: PermissionDeniedError):
        return JSONResponse(_error_body(exc), status_code=403)

    @app.exception_handler(ConfigurationError)
    async def configuration_error(request: Request, exc: ConfigurationError):
        logger.warning("%s %s unavailable: %s", request.method, request.url.path, exc.code)
        return JSONResponse(_error_body(exc), status_code=503)

    @app.exception_handler(DataIntegrityError)
    async def data_integrity_error(request: Request, exc: DataIntegrityError):
        return JSONResponse(_error_body(exc), status_code=404)

    @app.exception_handler(ExternalDependencyError)
    async def external_error(request: Request, exc: ExternalDependencyError):
        logger.warning("%s %s external failure: %s", request.method, request.url.path, exc.message)
        return JSONResponse(_error_body(exc), status_code=502)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    if settings.SCHEDULER_ENABLED:
        from earlyrise.application.scheduler import start_scheduler, shutdown_scheduler

        start_scheduler()
        try:
            yield
        finally:
            shutdown_scheduler()
    else:
        yield


def create_app() -> FastAPI:
    """
    Application factory - создаёт и настраивает FastAPI приложение

    Returns:
        Настроенный FastAPI app
    """
    settings = get_settings()

    app = FastAPI(
        title="EarlyRise",
        debug=settings.DEBUG,
        lifespan=lifespan,
    )

    app.add_middleware(ErrorLoggingMiddleware)
    _register_error_handlers(app)

    app.include_router(bot.router)
    app.include_router(admin.router)

    # Health checks
    @app.get("/health", response_class=PlainTextResponse, tags=["system"])
    def health():
        """Health check endpoint"""
        return "ok"

    @app.get("/ready", response_class=PlainTextResponse, tags=["system"])
    def ready():
        """Readiness check endpoint (проверяет доступность БД)"""
        check_db_connection()
        return "ok"

    return app


# Create app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "earlyrise.main:app",
        host="127.0.0.1",
        port=8000,
        reload=get_settings().DEBUG,
    )
