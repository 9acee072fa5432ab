"""
Pydantic schemas for auth endpoints.
"""
from pydantic import BaseModel, Field

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    email: str = Field(..., max_length=256, pattern=EMAIL_PATTERN)
    password: str = Field(..., min_length=8, max_length=128)


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=256, pattern=EMAIL_PATTERN)
    password: str = Field(..., min_length=8, max_length=128)


class AuthResponse(BaseModel):
    token: str
    email: str
    name: str
