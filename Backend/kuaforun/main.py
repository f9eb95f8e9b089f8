import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .bookings import router as bookings_router
from .comments import router as comments_router
from .core.config import Settings, get_settings
from .core.db import build_engine, build_sessionmaker, create_all
from .core.errors import AppError
from .core.responses import ErrorCodes, error_response
from .logstore import router as logs_router
from .services import router as services_router
from .shops import router as shops_router

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    # Reduce verbosity of third-party libraries
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _field_errors(exc: RequestValidationError) -> dict[str, list[str]]:
    details: dict[str, list[str]] = {}
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path", "header")]
        field = ".".join(loc) or "request"
        details.setdefault(field, []).append(error.get("msg", "invalid"))
    return details


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        else:
            logger.info(f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content=error_response(exc.code, exc.message, exc.details),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.warning(f"Validation error for {request.url.path}: {exc.errors()}")
        return JSONResponse(
            status_code=400,
            content=error_response(ErrorCodes.VALIDATION_ERROR, "Validation failed", _field_errors(exc)),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(
            status_code=500,
            content=error_response(ErrorCodes.INTERNAL_ERROR, "Internal server error"),
        )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the application.

    The engine and session factory belong to the app instance and are
    released on shutdown. Request handlers reach them through
    ``core.db.get_session``.
    """
    settings = settings or get_settings()
    configure_logging(settings)

    engine = build_engine(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Application starting up...")
        if settings.create_tables:
            await create_all(engine)
            logger.info("Database tables ready")
        yield
        await engine.dispose()
        logger.info("Application shut down")

    app = FastAPI(title="Kuaforun Booking Backend", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.sessionmaker = build_sessionmaker(engine)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)

    app.include_router(shops_router)
    app.include_router(services_router)
    app.include_router(bookings_router)
    app.include_router(comments_router)
    app.include_router(logs_router)

    @app.get("/health")
    async def health():
        return {"ok": True}

    return app


app = create_app()
