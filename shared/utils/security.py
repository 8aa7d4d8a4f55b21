"""
shared/utils/security.py
Credentials: bcrypt password hashes, signed access tokens, and opaque
refresh tokens of which only the SHA-256 digest is persisted.
"""

import hashlib
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import NamedTuple

from jose import JWTError, jwt
from passlib.context import CryptContext

from config.settings import settings

ACCESS_TOKEN_TYPE = "access"

_passwords = CryptContext(schemes=["bcrypt"], deprecated="auto")


class IssuedToken(NamedTuple):
    token: str
    jti: str
    expires_at: datetime


class RefreshSecret(NamedTuple):
    raw: str      # handed to the client once
    digest: str   # stored in refresh_tokens.token_hash


# ── Access tokens ─────────────────────────────────────────────

def issue_access_token(user_id, role: str, email: str) -> IssuedToken:
    """Sign a short-lived bearer token. The jti lets logout deny-list it."""
    issued_at = datetime.now(timezone.utc)
    expires_at = issued_at + timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES)
    jti = uuid.uuid4().hex
    claims = {
        "sub": str(user_id),
        "role": role,
        "email": email,
        "jti": jti,
        "iat": issued_at,
        "exp": expires_at,
        "type": ACCESS_TOKEN_TYPE,
    }
    token = jwt.encode(claims, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
    return IssuedToken(token, jti, expires_at)


def decode_access_token(token: str) -> dict:
    """
    Verify signature and expiry and return the claims.
    Raises JWTError for anything that is not a live access token.
    """
    claims = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    if claims.get("type") != ACCESS_TOKEN_TYPE:
        raise JWTError("Not an access token")
    return claims


def seconds_until_expiry(claims: dict) -> int:
    remaining = claims.get("exp", 0) - datetime.now(timezone.utc).timestamp()
    return max(0, int(remaining))


# ── Refresh tokens ────────────────────────────────────────────

def new_refresh_secret() -> RefreshSecret:
    raw = secrets.token_urlsafe(48)
    return RefreshSecret(raw, digest_token(raw))


def digest_token(raw: str) -> str:
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


# ── Passwords ─────────────────────────────────────────────────

def hash_password(password: str) -> str:
    return _passwords.hash(password)


def check_password(password: str, password_hash: str) -> bool:
    return _passwords.verify(password, password_hash)
