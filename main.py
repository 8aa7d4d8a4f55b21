"""
main.py
Builds the Mentorship & Learning Tracker API: routers, middleware, error
mapping, health probe, Prometheus metrics, and the development seed.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from redis.exceptions import RedisError
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError

from config import redis_client as redis_module
from config.database import close_db, init_db, session_scope
from config.redis_client import close_redis, init_redis
from config.settings import settings
from shared.middleware import http as http_middleware
from shared.models.models import Platform, User, UserRole
from shared.schemas.schemas import ErrorResponse
from shared.utils.errors import AppError
from shared.utils.log_format import configure_logging
from shared.utils.security import hash_password

from services.admin.router import router as admin_router
from services.auth.router import router as auth_router
from services.catalog.router import router as catalog_router
from services.mentorship.router import router as mentorship_router
from services.platforms.router import router as platforms_router
from services.slots.router import router as slots_router
from services.submissions.router import router as submissions_router
from services.wallet.router import router as wallet_router

configure_logging(settings.DEBUG)
logger = logging.getLogger(__name__)

ROUTERS = (
    auth_router,
    wallet_router,
    slots_router,
    catalog_router,
    mentorship_router,
    platforms_router,
    submissions_router,
    admin_router,
)

API_DESCRIPTION = """
Wallet-funded mentorship booking and learning-platform progress tracking.

* **Students** top up their wallet, enroll in platforms, submit tasks and book
  recorded or face-to-face mentorship sessions.
* **Admins** approve top-ups, publish slots and recordings, grade submissions
  and move bookings through their lifecycle.

Send `Authorization: Bearer <access_token>` on every protected route.
"""


# ── Development seed ──────────────────────────────────────────

SEED_PLATFORMS = (
    ("Algorithms & Data Structures", "Learn fundamental algorithms and data structures",
     "https://ozidan13.github.io/algorithms/"),
    ("Object-Oriented Programming (OOP)", "Master object-oriented programming concepts",
     "https://oop-pi.vercel.app/"),
    ("SOLID & Design Patterns", "Learn SOLID principles and design patterns",
     "https://ozidan13.github.io/SOLID-Principles-Design-Patterns/"),
)


async def seed_development_data() -> None:
    """Idempotent: platforms only on an empty table, the mentor only if configured and absent."""
    async with session_scope() as db:
        if not await db.scalar(select(func.count(Platform.id))):
            db.add_all(Platform(name=n, description=d, url=u) for n, d, u in SEED_PLATFORMS)
            logger.info("Seeded %d platforms", len(SEED_PLATFORMS))

        email = settings.SEED_ADMIN_EMAIL.lower()
        if email and settings.SEED_ADMIN_PASSWORD:
            if await db.scalar(select(User.id).where(func.lower(User.email) == email)) is None:
                db.add(User(
                    email=email,
                    name="Mentor",
                    password_hash=hash_password(settings.SEED_ADMIN_PASSWORD),
                    role=UserRole.ADMIN,
                    is_mentor=True,
                ))
                logger.info("Seeded admin account %s", email)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting %s %s (%s)", settings.APP_NAME, settings.APP_VERSION, settings.APP_ENV)
    await init_db()
    await init_redis()
    if settings.APP_ENV == "development":
        await seed_development_data()
    yield
    await close_redis()
    await close_db()
    logger.info("Shutdown complete")


# ── Error mapping ─────────────────────────────────────────────

def _error_body(detail: str, code: str, errors=None) -> dict:
    return ErrorResponse(detail=detail, code=code, errors=errors).model_dump(exclude_none=True)


async def handle_app_error(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code == status.HTTP_409_CONFLICT:
        logger.info("Conflict: %s", exc.message,
                    extra={"request_id": getattr(request.state, "request_id", None)})
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc.message, exc.code, exc.errors))


async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed input is a 400 listing every offending field."""
    errors = []
    for err in exc.errors():
        field = ".".join(str(part) for part in err["loc"] if part != "body")
        errors.append({"field": field or "body", "message": err["msg"]})
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=_error_body("Validation error", "VALIDATION_ERROR", errors),
    )


async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    logger.error("Unhandled %s", type(exc).__name__, exc_info=exc, extra={"request_id": request_id})
    content = _error_body(str(exc) if settings.DEBUG else "Internal server error", "INTERNAL_ERROR")
    content["request_id"] = request_id
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=content)


# ── Probes ────────────────────────────────────────────────────

async def _probe_database() -> str:
    try:
        async with session_scope() as db:
            await db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error("Database probe failed: %s", exc)
        return "error"
    return "ok"


async def _probe_redis() -> str:
    client = redis_module.redis_client
    if client is None:
        return "not initialized"
    try:
        await client.ping()
    except RedisError as exc:
        logger.error("Redis probe failed: %s", exc)
        return "error"
    return "ok"


async def health() -> JSONResponse:
    checks = {"database": await _probe_database(), "redis": await _probe_redis()}
    healthy = all(v == "ok" for v in checks.values())
    body = {"status": "ok" if healthy else "degraded", "version": settings.APP_VERSION, **checks}
    return JSONResponse(content=body, status_code=200 if healthy else 503)


async def index() -> dict:
    return {"name": settings.APP_NAME, "version": settings.APP_VERSION, "docs": "/docs", "health": "/health"}


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description=API_DESCRIPTION,
        lifespan=lifespan,
    )

    # Starlette wraps in reverse registration order
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Process-Time"],
    )
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=["*"])
    http_middleware.install(app)

    app.add_exception_handler(AppError, handle_app_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(Exception, handle_unexpected)

    app.add_api_route("/health", health, methods=["GET"], include_in_schema=False)
    app.add_api_route("/", index, methods=["GET"], include_in_schema=False)
    for router in ROUTERS:
        app.include_router(router)

    Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Monitoring"])
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=1 if settings.DEBUG else settings.WORKERS,
        log_level="debug" if settings.DEBUG else "info",
    )
