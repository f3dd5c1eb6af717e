from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Set

from fastapi import Depends, Request
from passlib.context import CryptContext
from sqlmodel import Session, select

from courtbook.db import get_session
from courtbook.errors import ForbiddenError, UnauthorizedError
from courtbook.models import User, UserRole

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

SESSION_USER_KEY = "user_id"


@dataclass(frozen=True)
class Identity:
    """What the scheduling core needs to know about the caller."""

    id: int
    email: Optional[str]
    is_admin: bool

    @classmethod
    def of(cls, user: User) -> "Identity":
        return cls(id=user.id, email=user.email, is_admin=user.is_admin)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def authenticate_user(session: Session, username: str, password: str) -> Optional[User]:
    user = session.exec(select(User).where(User.username == username.strip())).first()
    if user and user.is_active and verify_password(password, user.password_hash):
        return user
    logger.info(f"Failed login for {username!r}")
    return None


def ensure_bootstrap_admin(session: Session, username: str, password: str) -> Optional[User]:
    """Create the first admin account unless one with ``username`` exists."""
    existing = session.exec(select(User).where(User.username == username)).first()
    if existing:
        if not existing.is_admin:
            logger.warning(
                f"Bootstrap admin {username!r} skipped: username taken by a {existing.role.value}"
            )
        return None
    admin = User(
        username=username,
        password_hash=hash_password(password),
        role=UserRole.admin,
    )
    session.add(admin)
    session.commit()
    session.refresh(admin)
    logger.info(f"Bootstrap admin {username!r} created")
    return admin


def get_current_user(
    request: Request,
    session: Session = Depends(get_session),
) -> User:
    user_id = request.session.get(SESSION_USER_KEY)
    user = session.get(User, int(user_id)) if user_id else None
    if user is None or not user.is_active:
        raise UnauthorizedError("Not authenticated")
    return user


def current_identity(user: User = Depends(get_current_user)) -> Identity:
    return Identity.of(user)


def require_roles(roles: Iterable[UserRole]):
    allowed: Set[UserRole] = set(roles)

    def dependency(user: User = Depends(get_current_user)) -> User:
        if user.role not in allowed:
            logger.warning(f"User {user.id} refused: role {user.role.value} not allowed")
            raise ForbiddenError("Forbidden")
        return user

    return dependency


require_admin = require_roles([UserRole.admin])
