"""
Bearer token issue and verification (HS256).
"""
import logging
from datetime import datetime, timedelta, timezone

import jwt

from imagepipe.config import settings

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"


def create_access_token(user_id: str, email: str) -> str:
    """Signed token whose `sub` is the user id."""
    now = datetime.now(timezone.utc)
    claims = {
        "sub": user_id,
        "email": email,
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "iat": now,
        "exp": now + timedelta(minutes=settings.jwt_expiration_minutes),
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm=ALGORITHM)


def verify_access_token(token: str) -> dict:
    """
    Verify signature, expiry, issuer and audience.

    Raises:
        ValueError: If the token is invalid or expired
    """
    try:
        return jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[ALGORITHM],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"require": ["sub", "exp"]},
        )
    except jwt.ExpiredSignatureError:
        raise ValueError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Token verification failed: {e}")
        raise ValueError(f"Invalid token: {e}")
