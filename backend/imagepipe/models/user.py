"""
User model.
Users register with email + password and own the jobs they upload.
"""
from sqlalchemy import Column, String, DateTime

from imagepipe.models.base import Base, generate_uuid, utcnow


class User(Base):
    """User account; the owner reference on Job."""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(100), nullable=False)
    email = Column(String(256), nullable=False, unique=True, index=True)
    password_hash = Column(String(128), nullable=False)  # bcrypt hash

    created_at = Column(DateTime, nullable=False, default=utcnow)
    last_login = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<User(id={self.id}, email={self.email})>"
