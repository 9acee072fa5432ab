"""
Auth endpoints: register and login. Both are rate limited per client IP.
"""
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from imagepipe.auth.rate_limit import auth_rate_limit
from imagepipe.database import get_db
from imagepipe.schemas.auth import AuthResponse, LoginRequest, RegisterRequest
from imagepipe.services.auth_service import AuthService, EmailAlreadyRegisteredError, InvalidCredentialsError

router = APIRouter(dependencies=[Depends(auth_rate_limit)])


@router.post("/register", response_model=AuthResponse)
async def register(request: RegisterRequest, db: AsyncSession = Depends(get_db)):
    try:
        return await AuthService.register(db, request.name, request.email, request.password)
    except EmailAlreadyRegisteredError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Email is already registered."
        )


@router.post("/login", response_model=AuthResponse)
async def login(request: LoginRequest, db: AsyncSession = Depends(get_db)):
    try:
        return await AuthService.login(db, request.email, request.password)
    except InvalidCredentialsError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password."
        )
