import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.middleware.httpsredirect import HTTPSRedirectMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware

from supportdesk.api.router import api_router
from supportdesk.core.config import get_settings
from supportdesk.core.db import (
    close_engine,
    create_session_factory,
    init_engine,
    initialize_database,
)
from supportdesk.core.logging import configure_logging
from supportdesk.core.rate_limit import InMemoryRateLimiter
from supportdesk.core.security import TokenAuthenticator
from supportdesk.infra.realtime import ConnectionHub, SessionRegistry
from supportdesk.infra.realtime.bus import build_notification_bus
from supportdesk.infra.realtime.gateway import RealtimeGateway
from supportdesk.services.queue_service import QueueLocks

logger = logging.getLogger(__name__)


def create_app(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    notification_bus=None,
) -> FastAPI:
    settings = get_settings()
    settings.validate_security_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings)

        engine = None
        factory = session_factory
        if factory is None:
            engine = init_engine()
            await initialize_database(engine)
            factory = create_session_factory(engine)
        app.state.session_factory = factory

        bus = notification_bus or build_notification_bus(settings)
        await bus.start()
        app.state.notification_bus = bus
        app.state.queue_locks = QueueLocks()
        app.state.session_registry = SessionRegistry()

        gateway = RealtimeGateway(
            registry=app.state.session_registry,
            hub=ConnectionHub(),
            session_factory=factory,
            authenticator=TokenAuthenticator(settings.auth_secret),
            bus=bus,
            settings=settings,
            rate_limiter=InMemoryRateLimiter(),
            queue_locks=app.state.queue_locks,
        )
        gateway.bind()
        app.state.realtime_gateway = gateway
        logger.info("supportdesk started (%s bus)", settings.notification_backend)

        yield

        # Graceful shutdown
        app.state.session_registry.clear()
        await bus.close()
        if engine is not None:
            await close_engine(engine)

    app = FastAPI(
        title="Support Desk Chat API",
        version="0.1.0",
        docs_url="/docs" if settings.app_env != "production" else None,
        redoc_url="/redoc" if settings.app_env != "production" else None,
        lifespan=lifespan,
    )

    if settings.trusted_hosts:
        app.add_middleware(
            TrustedHostMiddleware,
            allowed_hosts=settings.trusted_hosts,
        )

    if settings.force_https:
        app.add_middleware(HTTPSRedirectMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Company-Id"],
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault(
            "Referrer-Policy",
            "strict-origin-when-cross-origin",
        )
        response.headers.setdefault(
            "Permissions-Policy",
            "camera=(), microphone=(), geolocation=()",
        )
        if settings.force_https:
            response.headers.setdefault(
                "Strict-Transport-Security",
                "max-age=31536000; includeSubDomains",
            )
        return response

    app.include_router(api_router, prefix="/api")

    @app.get("/", tags=["meta"])
    async def root() -> dict[str, str]:
        return {"service": "supportdesk", "status": "ok"}

    return app


app = create_app()
