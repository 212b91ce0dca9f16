from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext

from .config import Settings
from .errors import AuthenticationError
from .schemas import CurrentUser

logger = logging.getLogger(__name__)

# Prefix marking credentials issued by a client's offline mirror; the server never accepts them.
OFFLINE_TOKEN_PREFIX = "offline_"

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="api/auth/login", auto_error=False)


def make_password_context(rounds: int = 10) -> CryptContext:
    return CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=rounds)


def get_password_hash(pwd_context: CryptContext, password: str) -> str:
    return pwd_context.hash(password)


def verify_password(pwd_context: CryptContext, plain_password: str, hashed_password: str) -> bool:
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError:
        # Unknown or malformed hash: treat as a mismatch.
        logger.warning("Stored password hash could not be identified")
        return False


def create_access_token(user_id, role: str, settings: Settings, now: Optional[datetime] = None) -> str:
    now = now or datetime.utcnow()
    expire = now + timedelta(days=settings.access_token_expire_days)
    to_encode = {"sub": str(user_id), "role": role, "exp": expire}
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str, settings: Settings) -> CurrentUser:
    if not token or token.startswith(OFFLINE_TOKEN_PREFIX):
        raise AuthenticationError("Token is not valid")
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except ExpiredSignatureError:
        raise AuthenticationError("Token has expired")
    except JWTError:
        raise AuthenticationError("Token is not valid")

    sub = payload.get("sub")
    try:
        user_id = int(sub)
    except (TypeError, ValueError):
        raise AuthenticationError("Token is not valid")

    role = payload.get("role") or "student"
    if role not in ("student", "admin"):
        raise AuthenticationError("Token is not valid")
    return CurrentUser(id=user_id, role=role)


async def get_current_user(request: Request, token: Optional[str] = Depends(oauth2_scheme)) -> CurrentUser:
    """Auth gate: rejects the request before the handler runs unless the bearer token verifies."""
    if not token:
        raise AuthenticationError("No token, authorization denied")
    return decode_access_token(token, request.app.state.settings)
