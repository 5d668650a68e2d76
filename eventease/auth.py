"""Credential hashing, database-backed sessions, and role checks."""

from __future__ import annotations

import secrets
from datetime import datetime

import bcrypt
from sqlalchemy import delete, select
from sqlalchemy.orm import Session as DBSession

from .config import settings
from .models import Account, Session, User
from .utils import normalize_email, utcnow

ADMIN = "ADMIN"
STAFF = "STAFF"
EVENT_OWNER = "EVENT_OWNER"
ROLES = {ADMIN, STAFF, EVENT_OWNER}
READ_ALL_ROLES = {ADMIN, STAFF}

CREDENTIALS_PROVIDER = "credentials"

# bcrypt ignores (newer releases reject) anything past 72 bytes.
_BCRYPT_MAX_BYTES = 72


class AuthError(Exception):
    """Raised when credentials do not match a known account."""


class UserExistsError(Exception):
    """Raised when signing up with an e-mail that is already registered."""


def _password_bytes(password: str) -> bytes:
    return password.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(password: str) -> str:
    salt = bcrypt.gensalt(rounds=settings.bcrypt_rounds)
    return bcrypt.hashpw(_password_bytes(password), salt).decode("utf-8")


def verify_password(password: str, hashed: str | None) -> bool:
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(_password_bytes(password), hashed.encode("utf-8"))
    except ValueError:
        return False


def has_role(user: User | None, *roles: str) -> bool:
    return user is not None and user.role in roles


def can_read_all(user: User | None) -> bool:
    return has_role(user, *READ_ALL_ROLES)


def get_user_by_email(db: DBSession, email: str) -> User | None:
    normalized = normalize_email(email)
    if not normalized:
        return None
    return db.scalars(select(User).where(User.email == normalized)).first()


def register_user(
    db: DBSession,
    *,
    name: str,
    email: str,
    password: str,
    role: str = EVENT_OWNER,
    email_verified: bool = False,
) -> User:
    """Create a user with a credentials account."""
    if role not in ROLES:
        raise ValueError(f"Unknown role: {role}")
    if get_user_by_email(db, email):
        raise UserExistsError("A user with this email already exists")
    user = User(
        email=normalize_email(email),
        name=name.strip(),
        role=role,
        email_verified=email_verified,
    )
    db.add(user)
    db.flush()
    account = Account(
        account_id=user.id,
        provider_id=CREDENTIALS_PROVIDER,
        user=user,
        password=hash_password(password),
    )
    db.add(account)
    db.flush()
    return user


def authenticate(db: DBSession, *, email: str, password: str) -> User:
    user = get_user_by_email(db, email)
    if not user:
        raise AuthError("Invalid email or password")
    account = db.scalars(
        select(Account).where(
            Account.user_id == user.id,
            Account.provider_id == CREDENTIALS_PROVIDER,
        )
    ).first()
    if not account or not verify_password(password, account.password):
        raise AuthError("Invalid email or password")
    return user


def create_session(
    db: DBSession,
    user: User,
    *,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> Session:
    now = utcnow()
    session = Session(
        token=secrets.token_urlsafe(32),
        user=user,
        expires_at=now + settings.session_max_age,
        ip_address=ip_address,
        user_agent=user_agent,
        created_at=now,
        updated_at=now,
    )
    db.add(session)
    db.flush()
    return session


def get_session_by_token(
    db: DBSession, token: str | None, *, now: datetime | None = None
) -> Session | None:
    """Return the live session for a token.

    Expired sessions are deleted and committed immediately. Sessions last
    refreshed more than ``session_update_age`` ago get a fresh expiry.
    """
    if not token:
        return None
    session = db.scalars(select(Session).where(Session.token == token)).first()
    if not session:
        return None
    now = now or utcnow()
    if session.expires_at <= now:
        db.delete(session)
        db.commit()
        return None
    if now - session.updated_at >= settings.session_update_age:
        session.expires_at = now + settings.session_max_age
        session.updated_at = now
        db.add(session)
        db.flush()
    return session


def revoke_session(db: DBSession, token: str | None) -> bool:
    if not token:
        return False
    result = db.execute(delete(Session).where(Session.token == token))
    return bool(result.rowcount)


def prune_expired_sessions(db: DBSession, *, now: datetime | None = None) -> int:
    result = db.execute(delete(Session).where(Session.expires_at <= (now or utcnow())))
    return result.rowcount or 0
