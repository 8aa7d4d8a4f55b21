"""
services/auth/router.py
Email/password accounts and session tokens.

Access tokens are short-lived JWTs; refresh tokens are opaque, single-use and
rotated on every refresh. Logout deny-lists the access token's jti in Redis.
"""

from datetime import timedelta
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Cookie, Depends, HTTPException, Request, Response, status
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisGuard, get_redis
from config.settings import settings
from services.wallet import ledger
from shared.middleware.auth import Principal, get_current_user, get_principal
from shared.models.models import RefreshToken, TransactionType, User, UserRole
from shared.schemas.schemas import (
    AuthResponse,
    LoginRequest,
    MessageResponse,
    RefreshRequest,
    SignupRequest,
    TokenResponse,
    UserResponse,
)
from shared.utils.dates import ensure_utc, utcnow
from shared.utils.errors import ConflictError
from shared.utils.security import (
    check_password,
    digest_token,
    hash_password,
    issue_access_token,
    new_refresh_secret,
    seconds_until_expiry,
)

router = APIRouter(prefix="/auth", tags=["Authentication"])

REFRESH_COOKIE = "refresh_token"
REFRESH_COOKIE_PATH = "/auth/refresh"


def _reject(detail: str, code: int = status.HTTP_401_UNAUTHORIZED) -> HTTPException:
    return HTTPException(status_code=code, detail=detail)


def _presented_refresh(body: Optional[RefreshRequest], cookie: Optional[str]) -> Optional[str]:
    # API clients send it in the body, browsers via the httpOnly cookie
    return body.refresh_token if body else cookie


async def _stored_refresh(db: AsyncSession, raw: str, owner_id: Optional[UUID] = None) -> Optional[RefreshToken]:
    query = select(RefreshToken).where(RefreshToken.token_hash == digest_token(raw))
    if owner_id is not None:
        query = query.where(RefreshToken.user_id == owner_id)
    return await db.scalar(query)


async def _start_session(user: User, db: AsyncSession, request: Request, response: Response) -> TokenResponse:
    """Mint an access token plus a persisted refresh token and set the refresh cookie."""
    access = issue_access_token(user.id, user.role.value, user.email)
    refresh = new_refresh_secret()
    lifetime = timedelta(days=settings.JWT_REFRESH_TOKEN_EXPIRE_DAYS)

    db.add(RefreshToken(
        user_id=user.id,
        token_hash=refresh.digest,
        expires_at=utcnow() + lifetime,
        user_agent=request.headers.get("user-agent"),
        ip_address=request.client.host if request.client else None,
    ))
    response.set_cookie(
        REFRESH_COOKIE,
        refresh.raw,
        max_age=int(lifetime.total_seconds()),
        path=REFRESH_COOKIE_PATH,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
    )
    return TokenResponse(
        access_token=access.token,
        refresh_token=refresh.raw,
        expires_in=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )


def _with_profile(tokens: TokenResponse, user: User) -> AuthResponse:
    return AuthResponse(**tokens.model_dump(), user=UserResponse.model_validate(user))


@router.post("/signup", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
async def signup(
    data: SignupRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    """
    Create a student account. The starting balance is granted through the
    ledger so it shows up in the transaction history.
    """
    email = data.email.lower()
    if await db.scalar(select(User.id).where(func.lower(User.email) == email)):
        raise ConflictError("An account with this email already exists")

    user = User(
        email=email,
        name=data.name,
        password_hash=hash_password(data.password),
        phone_number=data.phone_number,
        role=UserRole.STUDENT,
    )
    db.add(user)
    try:
        await db.flush()
    except IntegrityError:
        # lost a race with a concurrent signup for the same address
        raise ConflictError("An account with this email already exists")

    if settings.STARTING_BALANCE > 0:
        await ledger.credit(db, user.id, settings.STARTING_BALANCE, TransactionType.WELCOME_BONUS, "Welcome bonus")

    tokens = await _start_session(user, db, request, response)
    await db.commit()
    return _with_profile(tokens, user)


@router.post("/login", response_model=AuthResponse)
async def login(
    data: LoginRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    user = await db.scalar(select(User).where(func.lower(User.email) == data.email.lower()))
    if user is None or not check_password(data.password, user.password_hash):
        raise _reject("Invalid email or password")
    if not user.is_active:
        raise _reject("User account is inactive", status.HTTP_403_FORBIDDEN)

    tokens = await _start_session(user, db, request, response)
    await db.commit()
    return _with_profile(tokens, user)


@router.post("/refresh", response_model=TokenResponse)
async def refresh(
    request: Request,
    response: Response,
    data: Optional[RefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
    db: AsyncSession = Depends(get_db),
):
    """Trade a refresh token for a new pair. The presented token is spent."""
    raw = _presented_refresh(data, refresh_cookie)
    if not raw:
        raise _reject("Refresh token required")

    stored = await _stored_refresh(db, raw)
    if stored is None or stored.is_revoked:
        raise _reject("Invalid or revoked refresh token")
    if ensure_utc(stored.expires_at) < utcnow():
        raise _reject("Refresh token expired")

    user = await db.get(User, stored.user_id)
    if user is None or not user.is_active:
        raise _reject("User not found")

    stored.is_revoked = True
    tokens = await _start_session(user, db, request, response)
    await db.commit()
    return tokens


@router.post("/logout", response_model=MessageResponse)
async def logout(
    response: Response,
    data: Optional[RefreshRequest] = None,
    principal: Principal = Depends(get_principal),
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    ttl = seconds_until_expiry(principal.claims)
    if ttl > 0:
        await RedisGuard(redis).deny(principal.jti, ttl)

    raw = _presented_refresh(data, refresh_cookie)
    if raw:
        stored = await _stored_refresh(db, raw, owner_id=principal.user_id)
        if stored is not None:
            stored.is_revoked = True
        await db.commit()

    response.delete_cookie(REFRESH_COOKIE, path=REFRESH_COOKIE_PATH)
    return MessageResponse(message="Logged out")


@router.get("/me", response_model=UserResponse)
async def me(current_user: User = Depends(get_current_user)):
    return UserResponse.model_validate(current_user)
