"""
FastAPI dependencies for authentication.
Provides get_current_user dependency that verifies our bearer tokens.
"""
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from imagepipe.database import get_db
from imagepipe.models.user import User
from imagepipe.auth.tokens import verify_access_token

# HTTPBearer scheme for extracting Authorization header
security = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db)
) -> User:
    """
    Verify the bearer token and load its user.

    Raises:
        HTTPException 401: If token is missing, invalid, expired, or its user no longer exists
    """
    if credentials is None or not credentials.credentials:
        raise _unauthorized("Missing authentication token")

    try:
        claims = verify_access_token(credentials.credentials)
    except ValueError as e:
        raise _unauthorized(str(e))

    result = await db.execute(
        select(User).where(User.id == claims["sub"])
    )
    user = result.scalar_one_or_none()

    if not user:
        raise _unauthorized("Unknown user")

    return user
