import os
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError

from .config import Settings
from .db import Base, build_engine, build_session_factory
from .errors import Internal, ServiceError
from .logging import setup_logging, RequestIdMiddleware
from .auth.router import router as auth_router
from .auth.security import AccessGate
from .routes.cases import service_requests_router, tickets_router
from .routes.users import router as users_router
from .services.notifications import Mailer, NotificationDispatcher
from .services.uploads import get_storage
from .storage.local_provider import LocalStorageProvider


def create_app(settings: Optional[Settings] = None, mailer: Optional[Mailer] = None) -> FastAPI:
    settings = settings or Settings()
    setup_logging(settings.log_level)
    log = structlog.get_logger("servicedesk")
    app = FastAPI(title=settings.app_name)

    # Process-wide collaborators, built once from configuration
    engine = build_engine(settings.database_url)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = build_session_factory(engine)
    app.state.gate = AccessGate(settings)
    app.state.dispatcher = NotificationDispatcher(settings, mailer or Mailer(settings))
    app.state.storage = get_storage(settings)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    @app.exception_handler(ServiceError)
    async def _service_error(request: Request, exc: ServiceError):
        if exc.status_code >= 500:
            log.error("request_failed", error=exc.detail, status=exc.status_code)
        else:
            log.info("request_rejected", error=exc.detail, status=exc.status_code)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    @app.exception_handler(SQLAlchemyError)
    async def _store_error(request: Request, exc: SQLAlchemyError):
        log.exception("store_error")
        err = Internal()
        return JSONResponse(status_code=err.status_code, content={"detail": err.detail})

    # Routers
    app.include_router(auth_router)
    app.include_router(tickets_router)
    app.include_router(service_requests_router)
    app.include_router(users_router)

    if isinstance(app.state.storage, LocalStorageProvider):
        app.mount("/uploads", StaticFiles(directory=str(app.state.storage.base_dir / "uploads")), name="uploads")

    # Metrics
    if settings.enable_metrics:
        Instrumentator().instrument(app).expose(app)

    @app.on_event("startup")
    def _startup():
        if settings.database_url.startswith("sqlite:///./"):
            os.makedirs("var", exist_ok=True)
        if settings.auto_create_db:
            Base.metadata.create_all(bind=engine)
            log.info("tables_verified", count=len(Base.metadata.tables))

    @app.on_event("shutdown")
    def _shutdown():
        engine.dispose()

    @app.get("/healthz")
    def healthz():
        return {"status": "ok", "app": settings.app_name}

    return app


app = create_app()
