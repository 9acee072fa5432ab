"""
Account registration and login.
Passwords are stored as bcrypt hashes; both flows return a bearer token.
"""
import logging

import bcrypt
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from imagepipe.auth.tokens import create_access_token
from imagepipe.models.base import utcnow
from imagepipe.models.user import User
from imagepipe.schemas.auth import AuthResponse

logger = logging.getLogger(__name__)


class EmailAlreadyRegisteredError(Exception):
    pass


class InvalidCredentialsError(Exception):
    pass


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def _normalize_email(email: str) -> str:
    return email.strip().lower()


class AuthService:
    """Service for account business logic."""

    @staticmethod
    async def register(db: AsyncSession, name: str, email: str, password: str) -> AuthResponse:
        """
        Create an account.

        Raises:
            EmailAlreadyRegisteredError: If the email is taken
        """
        email = _normalize_email(email)
        existing = await db.execute(select(User.id).where(User.email == email))
        if existing.scalar_one_or_none() is not None:
            raise EmailAlreadyRegisteredError(email)

        user = User(name=name.strip(), email=email, password_hash=hash_password(password))
        db.add(user)
        try:
            await db.commit()
        except IntegrityError:
            # Lost a race with a concurrent registration
            await db.rollback()
            raise EmailAlreadyRegisteredError(email)
        await db.refresh(user)

        logger.info(f"User registered: {user.id}", extra={"event": "user_registered", "user_id": user.id})
        return AuthResponse(token=create_access_token(user.id, user.email), email=user.email, name=user.name)

    @staticmethod
    async def login(db: AsyncSession, email: str, password: str) -> AuthResponse:
        """
        Check credentials and stamp last_login.

        Raises:
            InvalidCredentialsError: Unknown email or wrong password (not distinguished)
        """
        result = await db.execute(select(User).where(User.email == _normalize_email(email)))
        user = result.scalar_one_or_none()
        if user is None or not verify_password(password, user.password_hash):
            raise InvalidCredentialsError()

        user.last_login = utcnow()
        await db.commit()

        return AuthResponse(token=create_access_token(user.id, user.email), email=user.email, name=user.name)
