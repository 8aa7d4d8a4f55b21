"""
shared/middleware/http.py
Plain HTTP middleware: request correlation and the anonymous rate limit.
"""

import logging
import time
import uuid

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

from config import redis_client as redis_module
from config.redis_client import RedisGuard
from config.settings import settings

logger = logging.getLogger(__name__)

UNMETERED_PATHS = frozenset({"/health", "/docs", "/redoc", "/openapi.json", "/metrics"})


async def request_context(request: Request, call_next):
    """Tag the request with an id (client-supplied or fresh) and report its duration."""
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    request.state.request_id = request_id
    started = time.perf_counter()

    response = await call_next(request)

    elapsed_ms = (time.perf_counter() - started) * 1000
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Process-Time"] = f"{elapsed_ms:.2f}ms"
    return response


async def anonymous_rate_limit(request: Request, call_next):
    """
    Requests without a bearer token are limited per client IP, which is what
    slows down credential stuffing on /auth/login and /auth/signup.
    A Redis outage lets traffic through rather than taking the API down.
    """
    client = redis_module.redis_client
    is_bearer = request.headers.get("Authorization", "").startswith("Bearer ")
    if client is None or is_bearer or request.url.path in UNMETERED_PATHS:
        return await call_next(request)

    client_ip = request.client.host if request.client else "unknown"
    try:
        allowed = await RedisGuard(client).allow(f"anon:{client_ip}", settings.RATE_LIMIT_UNAUTH_PER_MINUTE)
    except RedisError as exc:
        logger.error("Rate limiter unavailable: %s", exc)
        allowed = True

    if allowed:
        return await call_next(request)

    logger.warning("Rate limit hit", extra={"client_ip": client_ip, "path": request.url.path})
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={"detail": "Too many requests, try again in a minute", "code": "RATE_LIMITED"},
        headers={"Retry-After": "60"},
    )


def install(app: FastAPI) -> None:
    # Starlette runs the last-added middleware first
    app.middleware("http")(anonymous_rate_limit)
    app.middleware("http")(request_context)
