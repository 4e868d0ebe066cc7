"""
auth/tokens.py -- Session handle JWTs and remember-me secrets.

Security design decisions:
  Session handle: python-jose with HS256. The JWT carries only the session id
       and an expiry ceiling. Whether the session is still alive is decided by
       the SessionManager, not by the token: a logged-out or timed-out session
       keeps a valid signature but no longer resolves. Decoding returns None
       on any failure -- the route layer turns that into a 401.

  Remember secrets: secrets.token_urlsafe(48) gives 384 bits of entropy, so
       brute force is infeasible. We store HMAC-SHA256(SECRET_KEY, secret):
       deterministic, so lookup is a single indexed query, and useless to
       whoever reads the database without SECRET_KEY. bcrypt's slowness buys
       nothing for high-entropy secrets.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone

from fastapi.responses import Response
from jose import JWTError, jwt

from core.config import get_settings

_ALGORITHM = "HS256"
SESSION_COOKIE = "access_token"


# ---------------------------------------------------------------------------
# Session handle encode / decode
# ---------------------------------------------------------------------------


def create_session_token(session_id: str, username: str, role: str) -> str:
    """Encode a signed JWT that points at a live session."""
    settings = get_settings()
    expire = datetime.now(timezone.utc) + timedelta(seconds=settings.session_token_ttl_seconds)
    payload = {
        "sub": username,
        "sid": session_id,
        "role": role,
        "exp": expire,
    }
    return jwt.encode(payload, settings.secret_key, algorithm=_ALGORITHM)


def decode_session_token(token: str) -> str | None:
    """Return the session id inside token, or None if it is invalid or expired."""
    try:
        payload = jwt.decode(token, get_settings().secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    sid = payload.get("sid")
    return sid if isinstance(sid, str) and sid else None


def set_session_cookie(response: Response, token: str) -> None:
    """Attach the session handle as an httpOnly cookie."""
    settings = get_settings()
    response.set_cookie(
        SESSION_COOKIE,
        token,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=settings.session_token_ttl_seconds,
    )


# ---------------------------------------------------------------------------
# Remember-me secrets
# ---------------------------------------------------------------------------


def generate_remember_secret() -> str:
    """Generate a remember-me secret in the format: rm_<64 url-safe chars>."""
    return f"rm_{secrets.token_urlsafe(48)}"


def hash_remember_secret(secret: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, secret) as a hex string."""
    return hmac.new(
        get_settings().secret_key.encode(),
        secret.encode(),
        hashlib.sha256,
    ).hexdigest()
