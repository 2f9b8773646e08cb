import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from homitutor.auth.dependencies import require_tutor
from homitutor.database import get_db
from homitutor.models.booking import BookingRequest
from homitutor.models.catalog import EducationLevel, Subject
from homitutor.models.course import COURSE_STATUSES, TEACHING_MODES, Course
from homitutor.models.review import Review
from homitutor.models.schedule import TeachingSchedule
from homitutor.models.tutor import TutorProfile
from homitutor.models.user import User
from homitutor.routes.common import CourseResponse, UserSummaryResponse, database_unavailable, get_tutor_profile_for_user

logger = logging.getLogger(__name__)

router = APIRouter(tags=['courses'])

MIN_HOURLY_RATE = 10000
OPEN_BOOKING_STATUSES = ('pending', 'confirmed')


def validate_choice(value: str, choices: tuple[str, ...], label: str) -> str:
    normalized = value.strip().lower()
    if normalized not in choices:
        raise ValueError(f'{label} must be one of: {", ".join(choices)}.')
    return normalized


class CourseCreateRequest(BaseModel):
    title: str = Field(min_length=3, max_length=255)
    description: str = Field(min_length=10)
    subject_id: int
    level_id: int
    hourly_rate: float = Field(ge=MIN_HOURLY_RATE)
    teaching_mode: str = 'online'
    status: str = 'active'

    @field_validator('title', 'description')
    @classmethod
    def strip_text(cls, value: str) -> str:
        return value.strip()

    @field_validator('teaching_mode')
    @classmethod
    def check_teaching_mode(cls, value: str) -> str:
        return validate_choice(value, TEACHING_MODES, 'Teaching mode')

    @field_validator('status')
    @classmethod
    def check_status(cls, value: str) -> str:
        return validate_choice(value, COURSE_STATUSES, 'Status')


class CourseUpdateRequest(BaseModel):
    title: str | None = Field(default=None, min_length=3, max_length=255)
    description: str | None = Field(default=None, min_length=10)
    subject_id: int | None = None
    level_id: int | None = None
    hourly_rate: float | None = Field(default=None, ge=MIN_HOURLY_RATE)
    teaching_mode: str | None = None
    status: str | None = None

    @field_validator('title', 'description')
    @classmethod
    def strip_text(cls, value: str | None) -> str | None:
        return value.strip() if value is not None else None

    @field_validator('teaching_mode')
    @classmethod
    def check_teaching_mode(cls, value: str | None) -> str | None:
        return validate_choice(value, TEACHING_MODES, 'Teaching mode') if value is not None else None

    @field_validator('status')
    @classmethod
    def check_status(cls, value: str | None) -> str | None:
        return validate_choice(value, COURSE_STATUSES, 'Status') if value is not None else None


class CourseWithTutorResponse(CourseResponse):
    tutor_user: UserSummaryResponse | None = None
    tutor_rating: float = 0


def with_tutor(course: Course) -> CourseWithTutorResponse:
    response = CourseWithTutorResponse.model_validate(course)
    response.tutor_user = UserSummaryResponse.model_validate(course.tutor.user)
    response.tutor_rating = float(course.tutor.rating or 0)
    return response


def check_catalog_references(subject_id: int | None, level_id: int | None, db: Session) -> None:
    if subject_id is not None and db.get(Subject, subject_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Subject not found.')
    if level_id is not None and db.get(EducationLevel, level_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Education level not found.')


def get_owned_course_or_404(course_id: int, profile: TutorProfile, db: Session) -> Course:
    course = db.get(Course, course_id)
    if course is None or course.tutor_id != profile.id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Course not found.')
    return course


@router.get('', response_model=list[CourseWithTutorResponse])
def list_courses(
    subject: int | None = Query(default=None),
    level: int | None = Query(default=None),
    mode: str | None = Query(default=None),
    search: str | None = Query(default=None),
    db: Session = Depends(get_db),
):
    query = db.query(Course).join(TutorProfile, TutorProfile.id == Course.tutor_id).filter(
        Course.status == 'active',
        TutorProfile.is_verified.is_(True),
    )
    if subject is not None:
        query = query.filter(Course.subject_id == subject)
    if level is not None:
        query = query.filter(Course.level_id == level)
    normalized_mode = (mode or '').strip().lower()
    if normalized_mode not in ('', 'all'):
        query = query.filter(Course.teaching_mode.in_((normalized_mode, 'both')))
    if search and search.strip():
        query = query.filter(func.lower(Course.title).like(f'%{search.strip().lower()}%'))

    return [with_tutor(course) for course in query.order_by(Course.created_at.desc(), Course.id.desc()).all()]


@router.get('/{course_id}', response_model=CourseWithTutorResponse)
def get_course(course_id: int, db: Session = Depends(get_db)):
    course = db.get(Course, course_id)
    if course is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Course not found.')
    return with_tutor(course)


@router.post('', response_model=CourseResponse, status_code=status.HTTP_201_CREATED)
def create_course(
    data: CourseCreateRequest,
    current_user: User = Depends(require_tutor),
    db: Session = Depends(get_db),
):
    profile = get_tutor_profile_for_user(current_user, db)
    check_catalog_references(data.subject_id, data.level_id, db)

    try:
        course = Course(tutor_id=profile.id, **data.model_dump())
        db.add(course)
        db.commit()
        db.refresh(course)
        logger.info('Tutor %s created course %s', profile.id, course.id)
        return course
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.patch('/{course_id}', response_model=CourseResponse)
def update_course(
    course_id: int,
    data: CourseUpdateRequest,
    current_user: User = Depends(require_tutor),
    db: Session = Depends(get_db),
):
    profile = get_tutor_profile_for_user(current_user, db)
    course = get_owned_course_or_404(course_id, profile, db)
    updates = {key: value for key, value in data.model_dump(exclude_unset=True).items() if value is not None}
    check_catalog_references(updates.get('subject_id'), updates.get('level_id'), db)

    try:
        for field_name, value in updates.items():
            setattr(course, field_name, value)
        db.commit()
        db.refresh(course)
        return course
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.delete('/{course_id}', status_code=status.HTTP_204_NO_CONTENT)
def delete_course(
    course_id: int,
    current_user: User = Depends(require_tutor),
    db: Session = Depends(get_db),
):
    profile = get_tutor_profile_for_user(current_user, db)
    course = get_owned_course_or_404(course_id, profile, db)

    open_booking = db.query(BookingRequest).filter(
        BookingRequest.course_id == course.id,
        BookingRequest.status.in_(OPEN_BOOKING_STATUSES),
    ).first()
    if open_booking:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail='This course has pending or confirmed bookings. Set it to inactive instead.',
        )

    try:
        for model in (BookingRequest, TeachingSchedule, Review):
            db.query(model).filter(model.course_id == course.id).update(
                {model.course_id: None},
                synchronize_session=False,
            )
        db.delete(course)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc
