"""User and email verification model definitions."""

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship

from homitutor.database import Base

USER_ROLES = ('student', 'tutor', 'admin')


class User(Base):
    """Represents an application user."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    password = Column(String, nullable=False)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    date_of_birth = Column(String)  # YYYY-MM-DD
    address = Column(String)
    phone = Column(String)
    avatar = Column(String)
    role = Column(String, nullable=False, default='student')  # student/tutor/admin
    is_verified = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)

    tutor_profile = relationship('TutorProfile', back_populates='user', uselist=False)

    @property
    def full_name(self) -> str:
        return f'{self.first_name} {self.last_name}'.strip()


class EmailOtp(Base):
    """A hashed one-time code sent to an email address."""
    __tablename__ = "email_otps"

    id = Column(Integer, primary_key=True)
    email = Column(String, nullable=False, index=True)
    otp = Column(String, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    used = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=datetime.now)
