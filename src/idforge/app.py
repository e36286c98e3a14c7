"""FastAPI application factory."""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from idforge.api.routes import generation, identities, instagram, media
from idforge.core import timezone  # noqa: F401  (sets TZ=UTC on import)
from idforge.core.config import Settings, configure_logging
from idforge.core.database import setup_db_session
from idforge.services.events import IdentityEventBus
from idforge.services.exceptions import ServiceError
from idforge.services.generation.batches import GenerationService
from idforge.services.generation.orchestrator import BatchOrchestrator
from idforge.services.generation.recovery import recover_orphaned_batches
from idforge.services.image_generation.gemini_client import GeminiClient
from idforge.services.image_generation.seedream_client import SeedreamClient
from idforge.services.image_source import ImageSource
from idforge.services.intake.broker_client import EnsembleDataClient
from idforge.services.intake.costs import CostLogger
from idforge.services.intake.face_classifier import FaceClassifier
from idforge.services.intake.pipeline import IntakePipeline
from idforge.services.storage.r2_client import R2Client
from idforge.uow import create_uow_factory

logger = structlog.get_logger()


def build_services(app: FastAPI, settings: Settings, uow_factory) -> None:
    """Create every long-lived client and service and store them on app.state."""
    storage = R2Client(
        account_id=settings.r2_account_id,
        access_key_id=settings.r2_access_key_id,
        secret_access_key=settings.r2_secret_access_key,
        bucket_name=settings.r2_bucket_name,
        public_url=settings.r2_public_url,
    )
    image_source = ImageSource(storage)
    gemini = GeminiClient(
        api_key=settings.gemini_api_key,
        image_source=image_source,
        image_model=settings.gemini_image_model,
        vision_model=settings.gemini_vision_model,
        aspect_ratio=settings.image_aspect_ratio,
        image_size=settings.image_size,
        timeout=settings.gemini_timeout_seconds,
    )
    seedream = SeedreamClient(
        api_key=settings.wavespeed_api_key,
        base_url=settings.wavespeed_base_url,
        poll_interval=settings.seedream_poll_interval_seconds,
        max_polls=settings.seedream_max_polls,
    )
    event_bus = IdentityEventBus()

    orchestrator = BatchOrchestrator.from_settings(
        settings,
        uow_factory=uow_factory,
        image_client=gemini,
        storage=storage,
        events=event_bus,
        seedream=seedream,
        image_source=image_source,
    )
    broker = EnsembleDataClient(
        token=settings.ensemble_data_token,
        base_url=settings.ensemble_base_url,
        chunk_size=settings.ensemble_chunk_size,
        cost_logger=CostLogger(uow_factory),
    )
    classifier = FaceClassifier(
        gemini,
        image_source,
        batch_size=settings.classifier_batch_size,
        fetch_timeout=settings.classifier_fetch_timeout_seconds,
    )

    app.state.storage = storage
    app.state.image_source = image_source
    app.state.event_bus = event_bus
    app.state.generation_service = GenerationService(uow_factory, orchestrator, event_bus)
    app.state.intake_pipeline = IntakePipeline(broker, classifier, uow_factory)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Handles startup and shutdown tasks:
    - Startup: Configure logging, initialize database session factory, build
      services, close batches orphaned by a previous process
    - Shutdown: Log and let the engine release its connections
    """
    # Load settings
    settings = Settings()  # type: ignore[call-arg]

    # Configure logging
    configure_logging(settings)

    # Setup database session factory
    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)

    # Create UoW factory for dependency injection
    uow_factory = create_uow_factory(session_factory)

    # Store in app.state for access in routes
    app.state.session_factory = session_factory
    app.state.uow_factory = uow_factory
    build_services(app, settings, uow_factory)

    # Batch loops die with the process that ran them: finish whatever they left open
    try:
        result = await recover_orphaned_batches(uow_factory, app.state.event_bus)
        if result.batches_closed:
            logger.info(
                "startup.recovery_completed",
                batches_closed=result.batches_closed,
                records_failed=result.records_failed,
            )
        else:
            logger.debug("startup.recovery_no_orphans")
    except Exception as e:
        # Log error but don't prevent startup - routes can still serve requests
        logger.error(
            "startup.recovery_failed",
            error=str(e),
            error_type=type(e).__name__,
            message="Orphaned batch recovery failed during startup",
        )

    logger.info("application.startup", db_url=settings.database_url.split("@")[-1])

    yield

    logger.info("application.shutdown")


def register_exception_handlers(app: FastAPI) -> None:
    """Map service errors to ``{error, message, ...details}`` JSON responses."""

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(
                "api.service_error",
                path=request.url.path,
                error=exc.message,
                error_type=type(exc).__name__,
            )
        else:
            logger.info(
                "api.request_rejected",
                path=request.url.path,
                status_code=exc.status_code,
                error=exc.message,
            )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.error_code, "message": exc.message, **exc.details},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "error": "Validation error",
                "message": f"{location}: {first.get('msg', 'invalid request')}".strip(": "),
            },
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "api.unhandled_error",
            path=request.url.path,
            error=str(exc),
            error_type=type(exc).__name__,
            exc_info=exc,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal server error"},
        )


def create_app() -> FastAPI:
    """Create and configure FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    settings = Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="idforge Backend API",
        description="Identity generation from Instagram profile photos",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    # Register API routers (prefixes are set in each router definition)
    app.include_router(generation.router)
    app.include_router(instagram.router)
    app.include_router(identities.router)
    app.include_router(media.router)

    # Health check endpoint with database validation
    @app.get("/health")
    async def health_check(response: Response):
        """Health check endpoint with database connectivity test.

        Returns:
            200: {"status": "healthy"} if database connection succeeds
            503: {"status": "unhealthy", "error": {...}} if database connection fails
        """
        try:
            # Test database connection with simple query
            async with app.state.session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                result.scalar()

            logger.debug("health_check.success")
            return {"status": "healthy"}

        except Exception as e:
            # Log error and return unhealthy status
            logger.error(
                "health_check.failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {
                "status": "unhealthy",
                "error": {
                    "type": type(e).__name__,
                    "message": str(e),
                },
            }

    return app


# Create app instance for uvicorn
app = create_app()
