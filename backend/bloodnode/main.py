import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from bloodnode.config import Settings, get_settings
from bloodnode.db.postgres import build_engine, build_sessionmaker, create_tables
from bloodnode.api.errors import register_exception_handlers
from bloodnode.api.middleware.rate_limit import RateLimitMiddleware
from bloodnode.api.routes import donors, emergency
from bloodnode.services.clock import Clock, SystemClock
from bloodnode.services.notification_service import NotificationTransport, ResendEmailTransport

logger = logging.getLogger(__name__)


def _configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    if not settings.DEBUG:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def create_app(
    settings: Optional[Settings] = None,
    *,
    clock: Optional[Clock] = None,
    transport: Optional[NotificationTransport] = None,
) -> FastAPI:
    """Composition root: every shared resource hangs off ``app.state``."""
    settings = settings or get_settings()
    _configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = build_engine(settings)
        app.state.engine = engine
        app.state.sessionmaker = build_sessionmaker(engine)
        await create_tables(engine)
        logger.info("%s %s started", settings.APP_NAME, settings.APP_VERSION)
        try:
            yield
        finally:
            close = getattr(app.state.transport, "aclose", None)
            if close is not None:
                await close()
            await engine.dispose()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.clock = clock or SystemClock()
    app.state.transport = transport or ResendEmailTransport(settings)

    register_exception_handlers(app)

    # Rate limiting (must be added before CORS so it runs after CORS in the middleware stack)
    if settings.RATE_LIMIT_ENABLED:
        app.add_middleware(
            RateLimitMiddleware,
            redis_url=settings.REDIS_URL,
            max_requests=settings.RATE_LIMIT_MAX_REQUESTS,
            window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(emergency.router, prefix=settings.API_PREFIX, tags=["Emergency"])
    app.include_router(donors.router, prefix=settings.API_PREFIX, tags=["Donors"])

    @app.get("/health")
    async def health():
        return {"status": "healthy", "service": settings.APP_NAME}

    return app


app = create_app()
