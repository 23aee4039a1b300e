import logging
import os
import time

import sentry_sdk
from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

from notes_shared import ChallengeBackend, RedisRateLimiter, SlidingWindowLimiter

from .auth import session_subject
from .config import settings, validate_settings
from .database import engine
from .errors import install_error_handlers
from .federated import GoogleTokenVerifier, build_federated_verifier
from .middleware_request_id import RequestIDMiddleware
from .models import Base
from .routers import auth as auth_router
from .routers import notes as notes_router
from .utils.otp import build_challenge_backend, build_challenge_store


logger = logging.getLogger("notes.app")

REQ = Counter("http_requests_total", "HTTP requests", ["method", "path", "status"])
REQ_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)


def _init_sentry() -> None:
    dsn = os.getenv("SENTRY_DSN", "").strip()
    if dsn:
        sentry_sdk.init(dsn=dsn, traces_sample_rate=float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.0")))


def create_app(
    *,
    challenge_backend: ChallengeBackend | None = None,
    federated_verifier: GoogleTokenVerifier | None = None,
) -> FastAPI:
    logging.basicConfig(level=settings.LOG_LEVEL)
    validate_settings(settings)
    _init_sentry()
    app = FastAPI(title="Notes API", version="0.1.0")

    allowed_origins = settings.ALLOWED_ORIGINS or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request ID + JSON logs
    app.add_middleware(RequestIDMiddleware)

    common_excludes = ["/health", "/metrics", "/openapi.json", "/docs"]
    if settings.RATE_LIMIT_BACKEND.lower() == "redis":
        app.add_middleware(
            RedisRateLimiter,
            redis_url=settings.REDIS_URL,
            limit_per_minute=settings.RATE_LIMIT_PER_MINUTE,
            auth_boost=settings.RATE_LIMIT_AUTH_BOOST,
            prefix=settings.RATE_LIMIT_REDIS_PREFIX,
            exclude_paths=common_excludes,
            identify=session_subject,
        )
    else:
        app.add_middleware(
            SlidingWindowLimiter,
            limit_per_minute=settings.RATE_LIMIT_PER_MINUTE,
            auth_boost=settings.RATE_LIMIT_AUTH_BOOST,
            exclude_paths=common_excludes,
            identify=session_subject,
        )

    install_error_handlers(app)

    if settings.AUTO_CREATE_SCHEMA:
        Base.metadata.create_all(bind=engine)

    if challenge_backend is None:
        challenge_backend = build_challenge_backend(settings, build_challenge_store(settings))
    app.state.challenge_backend = challenge_backend
    app.state.federated_verifier = federated_verifier or build_federated_verifier(settings)

    @app.middleware("http")
    async def _metrics_mw(request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start
        route = getattr(request.scope.get("route"), "path", None) or request.url.path
        REQ.labels(request.method, route, str(response.status_code)).inc()
        REQ_DURATION.labels(request.method, route).observe(duration)
        return response

    @app.get("/health")
    def health():
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")
        return {"status": "ok", "env": settings.ENV}

    @app.get("/metrics")
    def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(auth_router.router)
    app.include_router(notes_router.router)
    logger.info("Notes API ready (env=%s, otp_store=%s)", settings.ENV, settings.OTP_STORE)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.main:app", host=settings.APP_HOST, port=settings.APP_PORT, reload=settings.DEV_MODE)
