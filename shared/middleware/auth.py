"""
shared/middleware/auth.py
Request authentication and the role gates used by every router.
"""

import uuid
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisGuard, get_redis
from shared.models.models import User, UserRole
from shared.utils.errors import AuthorizationError
from shared.utils.security import decode_access_token

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    """Who the bearer token says the caller is, before touching the database."""

    user_id: uuid.UUID
    role: UserRole
    email: str
    jti: str
    claims: dict

    @classmethod
    def from_claims(cls, claims: dict) -> "Principal":
        return cls(
            user_id=uuid.UUID(claims["sub"]),
            role=UserRole(claims["role"]),
            email=claims["email"],
            jti=claims["jti"],
            claims=claims,
        )


def _bearer_challenge(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    redis=Depends(get_redis),
) -> Principal:
    if credentials is None:
        raise _bearer_challenge("Authentication required")

    try:
        principal = Principal.from_claims(decode_access_token(credentials.credentials))
    except (JWTError, KeyError, ValueError):
        raise _bearer_challenge("Invalid or expired token")

    # logged-out tokens stay denied until they would have expired anyway
    if await RedisGuard(redis).is_denied(principal.jti):
        raise _bearer_challenge("Token has been revoked")
    return principal


async def get_current_user(
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> User:
    user = await db.get(User, principal.user_id)
    if user is None:
        raise _bearer_challenge("User not found")
    if not user.is_active:
        raise AuthorizationError("User account is inactive")
    return user


class RoleRequired:
    """Dependency that admits only the listed roles."""

    def __init__(self, *roles: UserRole):
        self.roles = roles

    async def __call__(self, current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in self.roles:
            allowed = ", ".join(r.value for r in self.roles)
            raise AuthorizationError(f"This action requires role: {allowed}")
        return current_user


require_student = RoleRequired(UserRole.STUDENT)
require_admin = RoleRequired(UserRole.ADMIN)


def ensure_owner_or_admin(user: User, owner_id: uuid.UUID) -> None:
    if user.role != UserRole.ADMIN and user.id != owner_id:
        raise AuthorizationError("You do not have access to this resource")
