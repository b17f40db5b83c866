import logging
import re
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Body, Depends, HTTPException, Request, Response

from ..auth import (
    clear_auth_cookie,
    get_current_user,
    hash_password,
    issue_access_token,
    random_token,
    set_auth_cookie,
    verify_password,
)
from ..config import MIN_PASSWORD_LENGTH, PASSWORD_RESET_TTL_SECONDS
from ..db import parse_iso, to_iso
from ..serializers import camelize
from .runtime import ApiRuntime

log = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

FORGOT_PASSWORD_REPLY = {"message": "If the email exists, you will receive a link to reset your password"}


def _public_user(user: dict) -> dict:
    return camelize({k: user.get(k) for k in ("id", "email", "name", "role", "created_at")})  # type: ignore[return-value]


def create_auth_router(rt: ApiRuntime) -> APIRouter:
    router = APIRouter(prefix="/api/auth")

    @router.post("/register", status_code=201)
    async def register(payload: dict = Body(...)):
        email = str(payload.get("email") or "").strip().lower()
        password = str(payload.get("password") or "")
        if not email or not password:
            raise HTTPException(status_code=400, detail="Email and password are required")
        if not _EMAIL_RE.match(email):
            raise HTTPException(status_code=400, detail="Invalid email")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise HTTPException(
                status_code=400, detail=f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
            )
        if await rt.db_manager.get_user_by_email(email):
            raise HTTPException(status_code=409, detail="User already exists")
        name = str(payload.get("name") or "").strip() or email.split("@", 1)[0]
        user = await rt.db_manager.create_user(email, hash_password(password), name, role="client")
        log.info("Registered user %s", user["id"])
        return {"message": "User created", "user": _public_user(user)}

    @router.post("/login")
    async def login(request: Request, response: Response, payload: dict = Body(...)):
        email = str(payload.get("email") or "").strip().lower()
        password = str(payload.get("password") or "")
        user = await rt.db_manager.get_user_by_email(email) if email else None
        if not user or not verify_password(password, user.get("password_hash") or ""):
            raise HTTPException(status_code=401, detail="Invalid credentials")
        access_token = issue_access_token(user)
        set_auth_cookie(response, request, access_token)
        # Also return the token so clients can fall back to the Authorization header
        # when cookies are blocked.
        return {
            "ok": True,
            "user": _public_user(user),
            "access_token": access_token,
            "token_type": "bearer",
        }

    @router.post("/logout")
    async def logout(response: Response):
        clear_auth_cookie(response)
        return {"ok": True}

    @router.get("/me")
    async def me(user: dict = Depends(get_current_user)):
        record = await rt.db_manager.get_user(user["id"])
        if not record:
            raise HTTPException(status_code=401, detail="Unauthorized")
        return {"user": _public_user(record)}

    @router.post("/forgot-password")
    async def forgot_password(payload: dict = Body(...)):
        email = str(payload.get("email") or "").strip().lower()
        if not email:
            raise HTTPException(status_code=400, detail="Email is required")
        user = await rt.db_manager.get_user_by_email(email)
        # Same answer whether or not the account exists (no email enumeration).
        if not user:
            return FORGOT_PASSWORD_REPLY
        token = random_token(64)
        expires_at = to_iso(datetime.now(timezone.utc) + timedelta(seconds=PASSWORD_RESET_TTL_SECONDS))
        await rt.db_manager.replace_password_reset_token(user["email"], token, expires_at)
        await rt.mailer.send_password_reset(user["email"], token)
        return FORGOT_PASSWORD_REPLY

    @router.post("/reset-password")
    async def reset_password(payload: dict = Body(...)):
        token = str(payload.get("token") or "").strip()
        password = str(payload.get("password") or "")
        if not token or not password:
            raise HTTPException(status_code=400, detail="Token and password are required")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise HTTPException(
                status_code=400, detail=f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
            )
        record = await rt.db_manager.get_password_reset_token(token)
        if not record:
            raise HTTPException(status_code=400, detail="Invalid or expired token")
        expires_at = parse_iso(record.get("expires_at"))
        if expires_at is None or expires_at < datetime.now(timezone.utc):
            await rt.db_manager.delete_password_reset_token(record["id"])
            raise HTTPException(status_code=400, detail="Token has expired")
        await rt.db_manager.update_user_password(record["email"], hash_password(password))
        await rt.db_manager.delete_password_reset_token(record["id"])
        log.info("Password reset completed")
        return {"message": "Password updated successfully"}

    return router
