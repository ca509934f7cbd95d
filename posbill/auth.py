from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, Header, HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from posbill.config import settings
from posbill.dates import as_utc, utc_now
from posbill.db import get_db
from posbill.models import AuthSession, User

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 100_000

ALL_PERMISSIONS = [
    "view_dashboard",
    "manage_orders",
    "manage_menu",
    "manage_tables",
    "view_reports",
    "manage_users",
    "manage_settings",
]

ROLE_PERMISSIONS = {
    "admin": list(ALL_PERMISSIONS),
    "manager": [
        "view_dashboard",
        "manage_orders",
        "manage_menu",
        "manage_tables",
        "view_reports",
    ],
    "staff": ["view_dashboard", "manage_orders", "manage_tables"],
}


def hash_password(password: str, salt: Optional[str] = None) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256", password.encode(), bytes.fromhex(salt), PBKDF2_ITERATIONS
    ).hex()
    return f"{salt}:{digest}"


def verify_password(password: str, password_hash: str) -> bool:
    try:
        salt, stored = password_hash.split(":", 1)
        check = hashlib.pbkdf2_hmac(
            "sha256", password.encode(), bytes.fromhex(salt), PBKDF2_ITERATIONS
        ).hex()
    except ValueError:
        return False
    return hmac.compare_digest(check, stored)


def permissions_for(role: str) -> list[str]:
    return list(ROLE_PERMISSIONS.get(role, []))


def authenticate(db: Session, email: str, password: str) -> Optional[User]:
    user = db.scalar(select(User).where(User.email == email.strip().lower(), User.is_active.is_(True)))
    if not user or not verify_password(password, user.password_hash):
        logger.info("login failed for %s", email)
        return None
    return user


def issue_token(db: Session, user: User, now: Optional[datetime] = None) -> AuthSession:
    now = now or utc_now()
    session = AuthSession(
        user_id=user.id,
        token=secrets.token_urlsafe(32),
        expires_at=now + timedelta(days=settings.token_ttl_days),
        created_at=now,
    )
    user.last_login = now
    db.add(session)
    db.commit()
    db.refresh(session)
    return session


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="authentication required")
    return authorization.split(" ", 1)[1]


def get_current_user(
    authorization: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
) -> User:
    token = _bearer_token(authorization)
    session = db.scalar(select(AuthSession).where(AuthSession.token == token))
    if not session or as_utc(session.expires_at) <= utc_now():
        raise HTTPException(status_code=401, detail="invalid or expired token")
    user = db.get(User, session.user_id)
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="invalid or expired token")
    return user


def require_permission(permission: str):
    def dependency(user: User = Depends(get_current_user)) -> User:
        if permission not in (user.permissions or []):
            raise HTTPException(status_code=403, detail="insufficient permissions")
        return user

    return dependency
