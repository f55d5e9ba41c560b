import hmac
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends, Header
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from werkzeug.security import generate_password_hash, check_password_hash

from config import settings
from database import get_db
from errors import AuthenticationError, AuthorizationError, ConflictError
from lifecycle import Role
from models import User
from schemas import RegisterRequest

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"

bearer = HTTPBearer(scheme_name="AccessToken", bearerFormat="JWT", auto_error=False)


def issue_token(user: User) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user.id),
        "role": user.role,
        "iat": now,
        "exp": now + timedelta(days=settings.JWT_EXPIRES_DAYS),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired") from None
    except jwt.InvalidTokenError:
        raise AuthenticationError("Invalid token") from None


def register_user(db: Session, body: RegisterRequest) -> User:
    email = body.email.lower()
    if db.scalar(select(User).where(User.email == email)):
        raise ConflictError("User with this email already exists")
    user = User(
        name=body.name,
        email=email,
        password_hash=generate_password_hash(body.password),
        role=body.role.value,
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError("User with this email already exists") from None
    db.refresh(user)
    logger.info("registered user %s as %s", user.id, user.role)
    return user


def authenticate(db: Session, email: str, password: str) -> User:
    user = db.scalar(select(User).where(User.email == email.lower()))
    if not user or not check_password_hash(user.password_hash, password):
        raise AuthenticationError("Invalid email or password")
    return user


# ---------- dependencies ----------
def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    db: Session = Depends(get_db),
) -> User:
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Access token required")
    payload = decode_token(credentials.credentials.strip())
    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        raise AuthenticationError("Invalid token") from None
    user = db.get(User, user_id)
    if not user:
        raise AuthenticationError("User no longer exists")
    return user


def require_role(*roles: Role):
    allowed = {r.value for r in roles}

    def dependency(user: User = Depends(get_current_user)) -> User:
        if user.role not in allowed:
            raise AuthorizationError(f"Access denied for role {user.role}")
        return user

    return dependency


def require_admin(x_admin_token: Optional[str] = Header(None)) -> None:
    expected = settings.ADMIN_TOKEN
    if not expected:
        raise AuthorizationError("Admin endpoints are disabled")
    if not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise AuthorizationError("Admin token required")
