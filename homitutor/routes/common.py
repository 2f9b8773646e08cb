import json
import math
from datetime import date, datetime, time
from decimal import ROUND_HALF_UP, Decimal

from fastapi import HTTPException, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from homitutor.database import DATABASE_UNAVAILABLE_DETAIL
from homitutor.models.booking import BookingRequest, BookingSession, SessionNote
from homitutor.models.review import Review
from homitutor.models.tutor import TutorProfile
from homitutor.models.user import User


class UserSummaryResponse(BaseModel):
    id: int
    first_name: str
    last_name: str
    avatar: str | None = None

    class Config:
        from_attributes = True


class UserContactResponse(UserSummaryResponse):
    email: str
    phone: str | None = None


class UserResponse(BaseModel):
    id: int
    username: str
    email: str
    first_name: str
    last_name: str
    date_of_birth: str | None = None
    address: str | None = None
    phone: str | None = None
    avatar: str | None = None
    role: str
    is_verified: bool
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True


class SubjectResponse(BaseModel):
    id: int
    name: str
    description: str | None = None
    icon: str | None = None
    tutor_count: int = 0

    class Config:
        from_attributes = True


class EducationLevelResponse(BaseModel):
    id: int
    name: str
    description: str | None = None

    class Config:
        from_attributes = True


class CourseResponse(BaseModel):
    id: int
    tutor_id: int
    subject_id: int
    level_id: int
    title: str
    description: str | None = None
    hourly_rate: float
    teaching_mode: str
    status: str
    subject: SubjectResponse | None = None
    level: EducationLevelResponse | None = None
    created_at: datetime | None = None

    class Config:
        from_attributes = True


class TutorSummaryResponse(BaseModel):
    id: int
    user_id: int
    bio: str | None = None
    is_verified: bool
    is_featured: bool
    rating: float
    total_reviews: int
    user: UserSummaryResponse
    subjects: list[SubjectResponse] = []
    education_levels: list[EducationLevelResponse] = []

    class Config:
        from_attributes = True


class MessageResponse(BaseModel):
    message: str


def total_pages(total: int, page_size: int) -> int:
    if page_size <= 0:
        return 0
    return math.ceil(total / page_size)


def get_tutor_profile_for_user(user: User, db: Session) -> TutorProfile:
    profile = db.query(TutorProfile).filter(TutorProfile.user_id == user.id).first()
    if profile is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail='Tutor profile not found.',
        )
    return profile


def parse_certifications(value: str | None) -> list[str]:
    if not value:
        return []
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        return [value]
    if isinstance(parsed, list):
        return [str(item) for item in parsed]
    return [str(parsed)]


def dump_certifications(urls: list[str] | None) -> str | None:
    if urls is None:
        return None
    return json.dumps(urls)


def ranges_overlap(start_a: time, end_a: time, start_b: time, end_b: time) -> bool:
    return start_a < end_b and start_b < end_a


def combine(day: date, moment: time) -> datetime:
    return datetime.combine(day, moment)


def duration_minutes(start: time, end: time) -> int:
    delta = combine(date.min, end) - combine(date.min, start)
    return int(delta.total_seconds() // 60)


def database_unavailable() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=DATABASE_UNAVAILABLE_DETAIL,
    )


def recompute_tutor_rating(tutor: TutorProfile, db: Session) -> None:
    """Refresh a tutor's rating from every review and rated session."""
    review_ratings = [
        rating for (rating,) in db.query(Review.rating).filter(Review.tutor_id == tutor.id).all()
    ]
    session_ratings = [
        rating
        for (rating,) in db.query(SessionNote.student_rating).join(
            BookingSession, BookingSession.id == SessionNote.session_id,
        ).join(
            BookingRequest, BookingRequest.id == BookingSession.request_id,
        ).filter(
            BookingRequest.tutor_id == tutor.id,
            SessionNote.student_rating.isnot(None),
        ).all()
    ]

    ratings = review_ratings + session_ratings
    if ratings:
        average = Decimal(sum(ratings)) / Decimal(len(ratings))
        tutor.rating = average.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
    else:
        tutor.rating = Decimal('0')
    tutor.total_reviews = len(ratings)
