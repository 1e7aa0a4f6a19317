from datetime import datetime, timedelta, timezone

import jwt
from fastapi import HTTPException, Request
from jwt import ExpiredSignatureError, InvalidTokenError

from diabetify.config import Settings

TOKEN_LIFETIME = timedelta(hours=24)


def create_access_token(settings: Settings, user_id: int, email: str = None,
                        lifetime: timedelta = TOKEN_LIFETIME) -> str:
    """Signed bearer token carrying the user id."""
    now = datetime.now(timezone.utc)
    payload = {"user_id": user_id, "iat": now, "exp": now + lifetime}
    if email:
        payload["email"] = email
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(settings: Settings, token: str) -> dict:
    return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])


def current_user_id(request: Request) -> int:
    """
    FastAPI dependency: resolves the caller from `Authorization: Bearer <jwt>`.
    """
    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Authorization header missing or invalid")
    token = header.split(" ", 1)[1].strip()
    if not token:
        raise HTTPException(status_code=401, detail="Authorization header missing or invalid")

    try:
        claims = decode_access_token(request.app.state.settings, token)
    except ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token has expired")
    except InvalidTokenError:
        raise HTTPException(status_code=401, detail="Token is invalid")

    user_id = claims.get("user_id")
    if not isinstance(user_id, int) or isinstance(user_id, bool):
        raise HTTPException(status_code=401, detail="Token carries no user id")
    return user_id
