from datetime import date

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from homitutor.auth.dependencies import get_current_user
from homitutor.database import get_db
from homitutor.models.user import User
from homitutor.routes.common import UserResponse, UserSummaryResponse, database_unavailable

router = APIRouter(tags=['users'])

USER_SEARCH_LIMIT = 20


def normalize_optional_text(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


def validate_date_of_birth(value: str | None) -> str | None:
    normalized = normalize_optional_text(value)
    if normalized is None:
        return None
    try:
        parsed = date.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError('Date of birth must use YYYY-MM-DD.') from exc
    if parsed >= date.today():
        raise ValueError('Date of birth must be in the past.')
    return parsed.isoformat()


def validate_url(value: str | None) -> str | None:
    normalized = normalize_optional_text(value)
    if normalized is None:
        return None
    if not normalized.startswith(('http://', 'https://')):
        raise ValueError('URL must start with http:// or https://.')
    return normalized


class UpdateProfileRequest(BaseModel):
    first_name: str | None = Field(default=None, min_length=2)
    last_name: str | None = Field(default=None, min_length=2)
    phone: str | None = None
    address: str | None = None
    date_of_birth: str | None = None
    avatar: str | None = None

    @field_validator('phone', 'address')
    @classmethod
    def strip_text(cls, value: str | None) -> str | None:
        return normalize_optional_text(value)

    @field_validator('date_of_birth')
    @classmethod
    def check_date_of_birth(cls, value: str | None) -> str | None:
        return validate_date_of_birth(value)

    @field_validator('avatar')
    @classmethod
    def check_avatar(cls, value: str | None) -> str | None:
        return validate_url(value)


class UserSearchResult(UserSummaryResponse):
    email: str
    role: str


def apply_user_updates(user: User, updates: dict) -> None:
    for field_name, value in updates.items():
        if isinstance(value, str):
            value = value.strip()
        setattr(user, field_name, value)


@router.patch('/profile', response_model=UserResponse)
def update_profile(
    data: UpdateProfileRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        apply_user_updates(current_user, data.model_dump(exclude_unset=True))
        db.commit()
        db.refresh(current_user)
        return current_user
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('/search', response_model=list[UserSearchResult])
def search_users(
    q: str = Query(..., min_length=1),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    pattern = f'%{q.strip().lower()}%'
    return db.query(User).filter(
        User.id != current_user.id,
        or_(
            func.lower(User.first_name).like(pattern),
            func.lower(User.last_name).like(pattern),
            func.lower(User.email).like(pattern),
        ),
    ).order_by(User.first_name, User.last_name).limit(USER_SEARCH_LIMIT).all()
