"""Session cookie authentication for clinic staff."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import HTTPException, Request, Response, status
from itsdangerous import BadSignature, URLSafeSerializer
from passlib.context import CryptContext

from . import database
from .settings import get_settings

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
SESSION_COOKIE = "meditrack_session"
SESSION_MAX_AGE = 60 * 60 * 12


def _serializer() -> URLSafeSerializer:
    return URLSafeSerializer(get_settings().secret_key, salt="meditrack-auth")


def _trim_password(password: str) -> str:
    # bcrypt only looks at the first 72 bytes
    if not isinstance(password, str):
        password = str(password)
    encoded = password.encode("utf-8")
    if len(encoded) <= 72:
        return password
    return encoded[:72].decode("utf-8", errors="ignore")


def hash_password(password: str) -> str:
    return pwd_context.hash(_trim_password(password))


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(_trim_password(password), password_hash)


def authenticate(username: str, password: str) -> Optional[dict]:
    """Return the user record when the credentials match, otherwise ``None``."""
    record = database.get_user_by_username(username.strip())
    if not record or not verify_password(password, record["password_hash"]):
        logger.info("Rejected login attempt for %s", username)
        return None
    return record


def create_session_token(user_id: int) -> str:
    return _serializer().dumps({"user_id": user_id})


def read_session_token(token: str) -> Optional[int]:
    try:
        data = _serializer().loads(token)
        return int(data.get("user_id"))
    except (BadSignature, ValueError, TypeError, AttributeError):
        return None


def set_login_cookie(response: Response, user_id: int) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        create_session_token(user_id),
        httponly=True,
        samesite="lax",
        secure=False,
        max_age=SESSION_MAX_AGE,
    )


def clear_login_cookie(response: Response) -> None:
    response.delete_cookie(SESSION_COOKIE)


def get_current_user(request: Request) -> Optional[dict]:
    token = request.cookies.get(SESSION_COOKIE)
    if not token:
        return None
    user_id = read_session_token(token)
    if not user_id:
        return None
    return database.get_user(user_id)


def require_current_user(request: Request) -> dict:
    record = get_current_user(request)
    if not record:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    request.state.current_user = record
    return record


def require_admin_user(request: Request) -> dict:
    record = require_current_user(request)
    if not record.get("is_admin"):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return record


def sanitize_user(record: dict) -> dict:
    return {"id": record["id"], "username": record["username"], "is_admin": bool(record["is_admin"])}
