"""
Password hashing and session issuance.

Sessions are signed JWTs that are also recorded in the sessions table so a
device list can be shown and old devices pruned.
"""
import hashlib
import jwt
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings, get_state_dir
from ..models import Session, User

logger = logging.getLogger(__name__)


JWT_ALGORITHM = "HS256"
PBKDF2_ITERATIONS = 100000


# =============================================================================
# Passwords
# =============================================================================

def hash_password(password: str) -> str:
    """
    Hash a password using PBKDF2 with random salt.

    Returns: "salt:hash" format string
    """
    salt = secrets.token_hex(16)
    hash_bytes = hashlib.pbkdf2_hmac(
        'sha256',
        password.encode('utf-8'),
        salt.encode('utf-8'),
        iterations=PBKDF2_ITERATIONS
    )
    return f"{salt}:{hash_bytes.hex()}"


def verify_password(password: str, stored_hash: str) -> bool:
    """Verify a password against a "salt:hash" string."""
    try:
        salt, hash_hex = stored_hash.split(":")
        hash_bytes = hashlib.pbkdf2_hmac(
            'sha256',
            password.encode('utf-8'),
            salt.encode('utf-8'),
            iterations=PBKDF2_ITERATIONS
        )
        return secrets.compare_digest(hash_bytes.hex(), hash_hex)
    except (ValueError, AttributeError):
        return False


# =============================================================================
# JWT
# =============================================================================

_SECRET_KEY: Optional[str] = None


def _get_secret_key_path() -> Path:
    return get_state_dir() / "jwt_secret.key"


def get_secret_key() -> str:
    """Get the JWT secret key, loading/creating it on first use."""
    global _SECRET_KEY
    if _SECRET_KEY is None:
        key_path = _get_secret_key_path()
        if key_path.exists():
            _SECRET_KEY = key_path.read_text().strip()
        else:
            _SECRET_KEY = secrets.token_hex(32)  # 256-bit key
            key_path.write_text(_SECRET_KEY)
            key_path.chmod(0o600)
    return _SECRET_KEY


def create_token(user_id: int, email: str, expires_at: datetime) -> str:
    """Create a signed token for a user. A random jti keeps tokens unique."""
    payload = {
        "user_id": user_id,
        "email": email,
        "jti": secrets.token_hex(16),
        "iat": datetime.now(timezone.utc),
        "exp": expires_at,
    }
    return jwt.encode(payload, get_secret_key(), algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> Optional[dict]:
    """Decode and validate a token. Returns None if invalid or expired."""
    try:
        return jwt.decode(token, get_secret_key(), algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None


# =============================================================================
# Sessions
# =============================================================================

@dataclass
class IssuedSession:
    token: str
    expires_at: datetime


async def create_session(
    db: AsyncSession,
    user: User,
    user_agent: Optional[str] = None,
    ip_address: Optional[str] = None,
    is_current_host: bool = False
) -> IssuedSession:
    """Issue a new session for a user and commit it.

    Keeps at most `max_sessions` active sessions, dropping the least recently
    active ones first.
    """
    settings = get_settings()
    now = datetime.now(timezone.utc)

    active = await db.scalar(
        select(func.count()).select_from(Session)
        .where(Session.user_id == user.id, Session.expires_at > now)
    )
    overflow = (active or 0) - settings.max_sessions + 1
    if overflow > 0:
        oldest = select(Session.id).where(
            Session.user_id == user.id, Session.expires_at > now
        ).order_by(Session.last_activity.asc()).limit(overflow)
        await db.execute(delete(Session).where(Session.id.in_(oldest)))
        logger.info(f"[Auth] Pruned {overflow} old session(s) for user {user.id}")

    expires_at = now + timedelta(hours=settings.jwt_expiration_hours)
    token = create_token(user.id, user.email, expires_at)
    db.add(Session(
        user_id=user.id,
        session_token=token,
        device_name=user_agent,
        user_agent=user_agent,
        ip_address=ip_address,
        is_current_host=is_current_host,
        expires_at=expires_at,
    ))
    await db.commit()

    return IssuedSession(token=token, expires_at=expires_at)


def public_user(user: User) -> dict:
    """User fields that are safe to hand to a client"""
    return {
        "id": user.id,
        "email": user.email,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "avatar_url": user.avatar_url,
        "is_setup_complete": bool(user.is_setup_complete),
        "email_verified": bool(user.email_verified),
    }
