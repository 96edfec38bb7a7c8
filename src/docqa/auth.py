"""JWT bearer identity for chat callers.

Chat endpoints accept anonymous callers, so a missing, malformed, or
expired token resolves to ``None`` (anonymous) instead of an HTTP 401.
Access decisions downstream treat anonymous callers accordingly.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import jwt
from loguru import logger

from docqa.config import Settings, get_settings

# ---------------------------------------------------------------------------
# Token helpers
# ---------------------------------------------------------------------------


def create_token(user_id: str, settings: Settings | None = None, **claims) -> str:
    """Create a signed JWT for *user_id* (used by seeding scripts and tests)."""
    s = settings or get_settings()
    payload = {
        "sub": user_id,
        **claims,
        "exp": datetime.now(UTC) + timedelta(hours=s.jwt_expiry_hours),
        "iat": datetime.now(UTC),
    }
    return jwt.encode(payload, s.jwt_secret, algorithm=s.jwt_algorithm)


def decode_token(token: str, settings: Settings | None = None) -> dict:
    """Decode and verify a JWT. Raises on invalid/expired tokens."""
    s = settings or get_settings()
    return jwt.decode(token, s.jwt_secret, algorithms=[s.jwt_algorithm])


# ---------------------------------------------------------------------------
# Identity resolution
# ---------------------------------------------------------------------------


class IdentityResolver:
    """Callable mapping an ``Authorization`` header value to a user id or ``None``."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()

    def __call__(self, authorization: str | None) -> str | None:
        if not authorization or not authorization.startswith("Bearer "):
            return None

        token = authorization[7:].strip()
        if not token:
            return None
        try:
            claims = decode_token(token, self.settings)
        except jwt.ExpiredSignatureError:
            logger.info("Expired JWT presented, treating caller as anonymous")
            return None
        except jwt.InvalidTokenError:
            logger.warning("Invalid JWT presented, treating caller as anonymous")
            return None

        return claims.get("sub") or None
