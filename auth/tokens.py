"""
auth/tokens.py -- Session assertions (JWT) and password hashing.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       user_id, username, role, a snapshot of password_changed_at, and expiry.
       There is no revocation list: an unexpired token stays valid until the
       caller re-checks it against the live record. auth/dependencies.py does
       that on every protected request (snapshot must equal the stored value).
       Verification returns None on any failure -- the dependency layer turns
       that into a 401.

  Passwords: bcrypt directly (no passlib wrapper), cost 12. The _DUMMY_HASH
       constant enables timing equalization on the login path so response time
       does not reveal whether a username exists [C1].

  SECRET_KEY: sourced from core.config.get_settings(), validated at startup
       [M6].

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings

logger = logging.getLogger("loginguard.auth")

_settings = get_settings()

_ALGORITHM = "HS256"
_BCRYPT_ROUNDS = 12

# bcrypt only looks at the first 72 bytes and bcrypt>=4.1 refuses longer input.
# The policy allows up to 128 characters, so truncate explicitly and keep the
# historical bcrypt semantics.
_BCRYPT_MAX_BYTES = 72


# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def _encode(plain: str) -> bytes:
    return plain.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(_encode(plain), bcrypt.gensalt(rounds=_BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A malformed stored hash counts as a mismatch, never as an error.
    """
    try:
        return bcrypt.checkpw(_encode(plain), hashed.encode("utf-8"))
    except (ValueError, TypeError):
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("loginguard_timing_dummy")


def burn_verify(plain: str) -> None:
    """Run one bcrypt verify against a throwaway hash.

    Called on the unknown-username path so it costs the same as a real check.
    """
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def _iso(value: datetime | None) -> str | None:
    return value.astimezone(timezone.utc).isoformat() if value is not None else None


def create_access_token(
    user_id: int,
    username: str,
    role: str,
    password_changed_at: datetime | None,
    expire_seconds: int = 0,
) -> str:
    """Encode a signed JWT for a user who just authenticated.

    Args:
        user_id:             Numeric user ID stored in the DB.
        username:            Stored as the JWT subject claim.
        role:                "admin" or "user".
        password_changed_at: Snapshot embedded as pwd_changed_at.
        expire_seconds:      Overrides Settings.token_expire_seconds when > 0.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    expire = datetime.now(timezone.utc) + timedelta(seconds=duration)
    payload = {
        "sub": username,
        "user_id": user_id,
        "role": role,
        "pwd_changed_at": _iso(password_changed_at),
        "exp": expire,
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify a JWT. Returns the payload dict or None on any failure."""
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if "user_id" not in payload or "role" not in payload:
        return None
    return payload


def snapshot_matches(payload: dict, password_changed_at: datetime | None) -> bool:
    """True if the token was minted after the most recent password change."""
    return payload.get("pwd_changed_at") == _iso(password_changed_at)
