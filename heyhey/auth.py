import logging
import secrets
import string
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, Request, Response
from jose import JWTError, jwt
from passlib.context import CryptContext

from .config import (
    ACCESS_COOKIE_NAME,
    ACCESS_TOKEN_TTL_SECONDS,
    API_KEY_PREFIX,
    AUTH_COOKIE_SAMESITE,
    AUTH_COOKIE_SECURE,
    AUTH_SECRET,
    JWT_ISSUER,
)

# ── Authentication helpers ─────────────────────────────────────────
#
# Password hashing:
# - New passwords use Argon2 (passlib).
# - bcrypt hashes (accounts migrated from the previous dashboard) still verify.
#
# Tokens:
# - Session tokens are JWT (HS256), sent as an HttpOnly cookie and returned to the client
#   so it can fall back to an Authorization header.
# - Public API requests authenticate with long-lived "hh_" API keys instead.
#
pwd_context = CryptContext(
    schemes=["argon2", "bcrypt"],
    default="argon2",
    deprecated="auto",
)

_ALNUM = string.ascii_letters + string.digits


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, stored: str) -> bool:
    try:
        if not stored:
            return False
        return pwd_context.verify(password, stored)
    except (ValueError, TypeError):
        return False


def _jwt_secret() -> str:
    if not AUTH_SECRET:
        logging.getLogger(__name__).warning("AUTH_SECRET is empty; set it for secure authentication.")
    return AUTH_SECRET or "dev-unsafe-secret"


def issue_access_token(user: dict) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user["id"]),
        "email": user.get("email"),
        "role": user.get("role") or "client",
        "iss": JWT_ISSUER,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=ACCESS_TOKEN_TTL_SECONDS)).timestamp()),
    }
    return jwt.encode(payload, _jwt_secret(), algorithm="HS256")


def parse_access_token(token: str) -> Optional[dict]:
    if not token:
        return None
    try:
        payload = jwt.decode(
            token,
            _jwt_secret(),
            algorithms=["HS256"],
            options={"require_sub": True, "require_exp": True},
            issuer=JWT_ISSUER,
        )
    except JWTError:
        return None
    user_id = str(payload.get("sub") or "").strip()
    if not user_id:
        return None
    return {"id": user_id, "email": payload.get("email"), "role": payload.get("role") or "client"}


def _bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("authorization") or ""
    parts = auth_header.split()
    if len(parts) >= 2 and parts[0].lower() == "bearer":
        return parts[1].strip()
    return None


def _cookie_secure_flag(request: Request) -> bool:
    if AUTH_COOKIE_SECURE in ("0", "false", "False"):
        return False
    if AUTH_COOKIE_SECURE in ("1", "true", "True"):
        return True
    return (request.url.scheme or "").lower() == "https"


def set_auth_cookie(response: Response, request: Request, access_token: str) -> None:
    samesite = AUTH_COOKIE_SAMESITE if AUTH_COOKIE_SAMESITE in ("none", "lax", "strict") else "lax"
    # For SameSite=None, Secure must be true or browsers will drop the cookie.
    secure = _cookie_secure_flag(request) or samesite == "none"
    response.set_cookie(
        ACCESS_COOKIE_NAME,
        access_token,
        max_age=ACCESS_TOKEN_TTL_SECONDS,
        httponly=True,
        secure=secure,
        samesite=samesite,
        path="/",
    )


def clear_auth_cookie(response: Response) -> None:
    samesite = AUTH_COOKIE_SAMESITE if AUTH_COOKIE_SAMESITE in ("none", "lax", "strict") else "lax"
    response.delete_cookie(ACCESS_COOKIE_NAME, path="/", samesite=samesite)


def user_from_request(request: Request) -> Optional[dict]:
    """Parse the session from the Authorization header, then the cookie."""
    # Browsers may carry a stale header token next to a fresh cookie, so try both.
    parsed = parse_access_token(_bearer_token(request) or "")
    if not parsed:
        parsed = parse_access_token(request.cookies.get(ACCESS_COOKIE_NAME) or "")
    return parsed


async def get_current_user(request: Request) -> dict:
    """Return the authenticated user (id/email/role) or raise 401."""
    user = getattr(request.state, "user", None) or user_from_request(request)
    if not user:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user


async def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admin required")
    return user


def random_token(length: int) -> str:
    return "".join(secrets.choice(_ALNUM) for _ in range(length))


def generate_api_key() -> str:
    return API_KEY_PREFIX + random_token(40)


def mask_api_key(key: str) -> str:
    key = key or ""
    if len(key) <= 14:
        return key[:3] + "..."
    return f"{key[:10]}...{key[-4:]}"


def api_key_from_request(request: Request) -> Optional[str]:
    token = _bearer_token(request)
    if token and token.startswith(API_KEY_PREFIX):
        return token
    return None
