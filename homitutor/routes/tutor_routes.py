import logging
from collections import defaultdict
from collections.abc import Iterable
from datetime import date, datetime, timedelta
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from homitutor.auth.dependencies import require_student, require_tutor
from homitutor.database import get_db
from homitutor.models.booking import BookingRequest, BookingSession
from homitutor.models.catalog import EducationLevel, Subject
from homitutor.models.course import Course
from homitutor.models.review import Review
from homitutor.models.tutor import TeachingRequest, TutorEducationLevel, TutorProfile, TutorSubject
from homitutor.models.user import User
from homitutor.routes.common import (
    CourseResponse,
    EducationLevelResponse,
    SubjectResponse,
    TutorSummaryResponse,
    UserResponse,
    UserSummaryResponse,
    database_unavailable,
    dump_certifications,
    get_tutor_profile_for_user,
    parse_certifications,
    recompute_tutor_rating,
    total_pages,
)
from homitutor.routes.user_routes import apply_user_updates, normalize_optional_text, validate_date_of_birth, validate_url

logger = logging.getLogger(__name__)

router = APIRouter(tags=['tutors'])

DEFAULT_PAGE_SIZE = 12
MAX_PAGE_SIZE = 50
FEATURED_LIMIT = 3
SIMILAR_LIMIT = 3
DEFAULT_REVENUE_DAYS = 30
REVENUE_TYPES = ('day', 'week', 'month', 'year')
USER_PROFILE_FIELDS = ('first_name', 'last_name', 'phone', 'address', 'date_of_birth')


class TutorListItem(TutorSummaryResponse):
    min_hourly_rate: float | None = None


class TutorSearchResponse(BaseModel):
    tutors: list[TutorListItem]
    total: int
    total_pages: int
    current_page: int


class TutorProfileResponse(BaseModel):
    id: int
    user_id: int
    bio: str | None = None
    availability: str | None = None
    certifications: list[str] = []
    is_verified: bool
    is_featured: bool
    rating: float
    total_reviews: int
    rejection_reason: str | None = None
    user: UserResponse
    subjects: list[SubjectResponse] = []
    education_levels: list[EducationLevelResponse] = []

    class Config:
        from_attributes = True

    @field_validator('certifications', mode='before')
    @classmethod
    def load_certifications(cls, value):
        if isinstance(value, list):
            return value
        return parse_certifications(value)


class TutorDetailResponse(TutorSummaryResponse):
    availability: str | None = None
    courses: list[CourseResponse] = []


class TutorProfileRequest(BaseModel):
    bio: str | None = Field(default=None, max_length=2000)
    availability: str | None = None
    certifications: list[str] | None = None
    first_name: str | None = Field(default=None, min_length=2)
    last_name: str | None = Field(default=None, min_length=2)
    phone: str | None = None
    address: str | None = None
    date_of_birth: str | None = None

    @field_validator('bio', 'availability', 'phone', 'address')
    @classmethod
    def strip_text(cls, value: str | None) -> str | None:
        return normalize_optional_text(value)

    @field_validator('date_of_birth')
    @classmethod
    def check_date_of_birth(cls, value: str | None) -> str | None:
        return validate_date_of_birth(value)

    @field_validator('certifications')
    @classmethod
    def check_certifications(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return None
        return [validate_url(url) for url in value if url and url.strip()]


class TeachingRequestCreate(BaseModel):
    subject_id: int
    level_id: int
    introduction: str = Field(min_length=10)
    experience: str | None = None
    certifications: str | None = None

    @field_validator('introduction')
    @classmethod
    def strip_introduction(cls, value: str) -> str:
        normalized = value.strip()
        if len(normalized) < 10:
            raise ValueError('Introduction must be at least 10 characters.')
        return normalized

    @field_validator('experience', 'certifications')
    @classmethod
    def strip_text(cls, value: str | None) -> str | None:
        return normalize_optional_text(value)


class TeachingRequestResponse(BaseModel):
    id: int
    tutor_id: int
    subject_id: int
    level_id: int
    introduction: str | None = None
    experience: str | None = None
    certifications: str | None = None
    status: str
    rejection_reason: str | None = None
    subject: SubjectResponse | None = None
    level: EducationLevelResponse | None = None
    created_at: datetime

    class Config:
        from_attributes = True


class TutorStatsResponse(BaseModel):
    total_students: int
    completed_sessions: int
    upcoming_sessions: int
    average_rating: float
    total_reviews: int
    total_revenue: float


class RevenuePoint(BaseModel):
    period: str
    revenue: float


class ReviewRequest(BaseModel):
    rating: int = Field(ge=1, le=5)
    comment: str | None = Field(default=None, max_length=2000)
    course_id: int | None = None

    @field_validator('comment')
    @classmethod
    def strip_comment(cls, value: str | None) -> str | None:
        return normalize_optional_text(value)


class ReviewResponse(BaseModel):
    id: int
    student_id: int
    tutor_id: int
    course_id: int | None = None
    rating: int
    comment: str | None = None
    student: UserSummaryResponse
    created_at: datetime

    class Config:
        from_attributes = True


def get_verified_tutor_or_404(tutor_id: int, db: Session) -> TutorProfile:
    tutor = db.get(TutorProfile, tutor_id)
    if tutor is None or not tutor.is_verified:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Tutor not found.')
    return tutor


def listed_tutors_query(db: Session):
    """Verified tutors whose accounts are active."""
    return db.query(TutorProfile).join(User, User.id == TutorProfile.user_id).filter(
        TutorProfile.is_verified.is_(True),
        User.is_active.is_(True),
    )


def get_min_hourly_rates(tutor_ids: list[int], db: Session) -> dict[int, float]:
    if not tutor_ids:
        return {}
    rows = db.query(Course.tutor_id, func.min(Course.hourly_rate)).filter(
        Course.tutor_id.in_(tutor_ids),
        Course.status == 'active',
    ).group_by(Course.tutor_id).all()
    return {tutor_id: float(rate) for tutor_id, rate in rows}


def to_list_items(tutors: list[TutorProfile], db: Session) -> list[TutorListItem]:
    rates = get_min_hourly_rates([tutor.id for tutor in tutors], db)
    items = []
    for tutor in tutors:
        item = TutorListItem.model_validate(tutor)
        item.min_hourly_rate = rates.get(tutor.id)
        items.append(item)
    return items


# Revenue statistics


def revenue_period(moment: datetime, granularity: str) -> str:
    if granularity == 'day':
        return moment.strftime('%Y-%m-%d')
    if granularity == 'week':
        iso_year, iso_week, _ = moment.isocalendar()
        return f'{iso_year}-W{iso_week:02d}'
    return moment.strftime('%Y-%m')


def aggregate_revenue(rows: Iterable[tuple[datetime, Decimal]], granularity: str) -> list[dict]:
    """Sum amounts per period, returning only periods with revenue in ascending order."""
    totals: dict[str, Decimal] = defaultdict(Decimal)
    for moment, amount in rows:
        if moment is None or amount is None:
            continue
        totals[revenue_period(moment, granularity)] += Decimal(amount)

    return [
        {'period': period, 'revenue': float(total)}
        for period, total in sorted(totals.items())
        if total > 0
    ]


def year_bounds(year: int) -> tuple[datetime, datetime]:
    return datetime(year, 1, 1), datetime(year + 1, 1, 1)


def month_bounds(year: int, month: int) -> tuple[datetime, datetime]:
    start = datetime(year, month, 1)
    end = datetime(year + 1, 1, 1) if month == 12 else datetime(year, month + 1, 1)
    return start, end


def resolve_revenue_window(
    revenue_type: str,
    year: int | None = None,
    month: int | None = None,
    from_date: date | None = None,
    to_date: date | None = None,
    now: datetime | None = None,
) -> tuple[datetime, datetime, str]:
    """Return the half-open [start, end) window and period granularity for a revenue query."""
    now = now or datetime.now()
    year = year or now.year

    if revenue_type == 'day':
        if from_date and to_date:
            if to_date < from_date:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail='to_date must not be before from_date.',
                )
            return datetime.combine(from_date, datetime.min.time()), datetime.combine(
                to_date + timedelta(days=1), datetime.min.time()
            ), 'day'
        if from_date:
            return datetime.combine(from_date, datetime.min.time()), now, 'day'
        return now - timedelta(days=DEFAULT_REVENUE_DAYS), now, 'day'

    if revenue_type == 'week':
        start, end = year_bounds(year)
        return start, end, 'week'

    if revenue_type == 'month':
        if month is not None:
            if not 1 <= month <= 12:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Month must be between 1 and 12.')
            start, end = month_bounds(year, month)
            return start, end, 'day'
        start, end = year_bounds(year)
        return start, end, 'month'

    if revenue_type == 'year':
        start, end = year_bounds(year)
        return start, end, 'month'

    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail=f'Revenue type must be one of: {", ".join(REVENUE_TYPES)}.',
    )


# Public listing


@router.get('', response_model=TutorSearchResponse)
def search_tutors(
    search: str | None = Query(default=None),
    subject: int | None = Query(default=None),
    level: int | None = Query(default=None),
    mode: str | None = Query(default=None),
    min_rate: float | None = Query(default=None, ge=0),
    max_rate: float | None = Query(default=None, ge=0),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    db: Session = Depends(get_db),
):
    query = listed_tutors_query(db)

    if search and search.strip():
        pattern = f'%{search.strip().lower()}%'
        query = query.filter(or_(
            func.lower(User.first_name).like(pattern),
            func.lower(User.last_name).like(pattern),
        ))

    if subject is not None:
        query = query.filter(TutorProfile.id.in_(
            db.query(TutorSubject.tutor_id).filter(TutorSubject.subject_id == subject)
        ))

    if level is not None:
        query = query.filter(TutorProfile.id.in_(
            db.query(TutorEducationLevel.tutor_id).filter(TutorEducationLevel.level_id == level)
        ))

    normalized_mode = (mode or '').strip().lower()
    filter_mode = normalized_mode not in ('', 'all')
    if filter_mode or min_rate is not None or max_rate is not None:
        course_query = db.query(Course.tutor_id).filter(Course.status == 'active')
        if filter_mode:
            course_query = course_query.filter(Course.teaching_mode.in_((normalized_mode, 'both')))
        if min_rate is not None:
            course_query = course_query.filter(Course.hourly_rate >= min_rate)
        if max_rate is not None:
            course_query = course_query.filter(Course.hourly_rate <= max_rate)
        query = query.filter(TutorProfile.id.in_(course_query))

    total = query.count()
    tutors = query.order_by(
        TutorProfile.is_featured.desc(),
        TutorProfile.rating.desc(),
        TutorProfile.id,
    ).offset((page - 1) * limit).limit(limit).all()

    return TutorSearchResponse(
        tutors=to_list_items(tutors, db),
        total=total,
        total_pages=total_pages(total, limit),
        current_page=page,
    )


@router.get('/featured', response_model=list[TutorListItem])
def list_featured_tutors(db: Session = Depends(get_db)):
    tutors = listed_tutors_query(db).filter(TutorProfile.is_featured.is_(True)).order_by(
        TutorProfile.rating.desc(),
        TutorProfile.id,
    ).limit(FEATURED_LIMIT).all()
    return to_list_items(tutors, db)


@router.get('/similar/{tutor_id}', response_model=list[TutorListItem])
def list_similar_tutors(tutor_id: int, db: Session = Depends(get_db)):
    tutor = db.get(TutorProfile, tutor_id)
    if tutor is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Tutor not found.')

    subject_ids = db.query(TutorSubject.subject_id).filter(TutorSubject.tutor_id == tutor_id)
    tutors = listed_tutors_query(db).filter(
        TutorProfile.id != tutor_id,
        TutorProfile.id.in_(db.query(TutorSubject.tutor_id).filter(TutorSubject.subject_id.in_(subject_ids))),
    ).order_by(TutorProfile.rating.desc(), TutorProfile.id).limit(SIMILAR_LIMIT).all()
    return to_list_items(tutors, db)


# Own profile


@router.get('/profile', response_model=TutorProfileResponse)
def get_own_profile(current_user: User = Depends(require_tutor), db: Session = Depends(get_db)):
    return get_tutor_profile_for_user(current_user, db)


@router.post('/profile', response_model=TutorProfileResponse, status_code=status.HTTP_201_CREATED)
def create_own_profile(
    data: TutorProfileRequest,
    current_user: User = Depends(require_tutor),
    db: Session = Depends(get_db),
):
    existing = db.query(TutorProfile).filter(TutorProfile.user_id == current_user.id).first()
    if existing:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail='Tutor profile already exists.')

    try:
        user_updates = data.model_dump(include=set(USER_PROFILE_FIELDS), exclude_unset=True)
        apply_user_updates(current_user, user_updates)

        profile = TutorProfile(
            user_id=current_user.id,
            bio=data.bio,
            availability=data.availability,
            certifications=dump_certifications(data.certifications),
            is_verified=False,
            is_featured=False,
            rating=0,
            total_reviews=0,
        )
        db.add(profile)
        db.commit()
        db.refresh(profile)
        logger.info('Created tutor profile %s for user %s', profile.id, current_user.id)
        return profile
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.patch('/profile', response_model=TutorProfileResponse)
def update_own_profile(
    data: TutorProfileRequest,
    current_user: User = Depends(require_tutor),
    db: Session = Depends(get_db),
):
    profile = get_tutor_profile_for_user(current_user, db)
    updates = data.model_dump(exclude_unset=True)

    try:
        apply_user_updates(current_user, {key: updates[key] for key in USER_PROFILE_FIELDS if key in updates})
        if 'bio' in updates:
            profile.bio = updates['bio']
        if 'availability' in updates:
            profile.availability = updates['availability']
        if 'certifications' in updates:
            profile.certifications = dump_certifications(updates['certifications'])
        db.commit()
        db.refresh(profile)
        return profile
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.post('/teaching-requests', response_model=TeachingRequestResponse, status_code=status.HTTP_201_CREATED)
def create_teaching_request(
    data: TeachingRequestCreate,
    current_user: User = Depends(require_tutor),
    db: Session = Depends(get_db),
):
    profile = get_tutor_profile_for_user(current_user, db)

    if db.get(Subject, data.subject_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Subject not found.')
    if db.get(EducationLevel, data.level_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Education level not found.')

    duplicate = db.query(TeachingRequest).filter(
        TeachingRequest.tutor_id == profile.id,
        TeachingRequest.subject_id == data.subject_id,
        TeachingRequest.level_id == data.level_id,
        TeachingRequest.status.in_(('pending', 'approved')),
    ).first()
    if duplicate:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail='A teaching request for this subject and level already exists.',
        )

    try:
        teaching_request = TeachingRequest(
            tutor_id=profile.id,
            subject_id=data.subject_id,
            level_id=data.level_id,
            introduction=data.introduction,
            experience=data.experience,
            certifications=data.certifications,
            status='pending',
        )
        db.add(teaching_request)
        db.commit()
        db.refresh(teaching_request)
        return teaching_request
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('/teaching-requests', response_model=list[TeachingRequestResponse])
def list_own_teaching_requests(current_user: User = Depends(require_tutor), db: Session = Depends(get_db)):
    profile = get_tutor_profile_for_user(current_user, db)
    return db.query(TeachingRequest).filter(
        TeachingRequest.tutor_id == profile.id,
    ).order_by(TeachingRequest.created_at.desc(), TeachingRequest.id.desc()).all()


@router.get('/stats', response_model=TutorStatsResponse)
def get_own_stats(current_user: User = Depends(require_tutor), db: Session = Depends(get_db)):
    profile = get_tutor_profile_for_user(current_user, db)

    total_students = db.query(func.count(func.distinct(BookingRequest.student_id))).filter(
        BookingRequest.tutor_id == profile.id,
        BookingRequest.status.notin_(('cancelled', 'rejected')),
    ).scalar() or 0

    sessions = db.query(BookingSession).join(BookingRequest, BookingRequest.id == BookingSession.request_id).filter(
        BookingRequest.tutor_id == profile.id,
    )
    completed_sessions = sessions.filter(BookingSession.status == 'completed').count()
    upcoming_sessions = sessions.filter(
        BookingSession.status == 'confirmed',
        BookingSession.date >= date.today(),
    ).count()

    total_revenue = db.query(func.coalesce(func.sum(BookingRequest.total_amount), 0)).filter(
        BookingRequest.tutor_id == profile.id,
        BookingRequest.status == 'completed',
    ).scalar()

    return TutorStatsResponse(
        total_students=total_students,
        completed_sessions=completed_sessions,
        upcoming_sessions=upcoming_sessions,
        average_rating=float(profile.rating or 0),
        total_reviews=profile.total_reviews or 0,
        total_revenue=float(total_revenue or 0),
    )


@router.get('/statistics/revenue', response_model=list[RevenuePoint])
def get_revenue_statistics(
    revenue_type: str = Query(default='month', alias='type'),
    year: int | None = Query(default=None, ge=2000, le=9999),
    month: int | None = Query(default=None),
    from_date: date | None = Query(default=None),
    to_date: date | None = Query(default=None),
    current_user: User = Depends(require_tutor),
    db: Session = Depends(get_db),
):
    profile = get_tutor_profile_for_user(current_user, db)
    start, end, granularity = resolve_revenue_window(
        revenue_type.strip().lower(),
        year=year,
        month=month,
        from_date=from_date,
        to_date=to_date,
    )

    rows = db.query(BookingRequest.updated_at, BookingRequest.total_amount).filter(
        BookingRequest.tutor_id == profile.id,
        BookingRequest.status == 'completed',
        BookingRequest.updated_at >= start,
        BookingRequest.updated_at < end,
    ).all()
    return aggregate_revenue(rows, granularity)


@router.get('/courses', response_model=list[CourseResponse])
def list_own_courses(current_user: User = Depends(require_tutor), db: Session = Depends(get_db)):
    profile = get_tutor_profile_for_user(current_user, db)
    return db.query(Course).filter(Course.tutor_id == profile.id).order_by(Course.created_at.desc()).all()


# Public tutor detail


@router.get('/{tutor_id}', response_model=TutorDetailResponse)
def get_tutor(tutor_id: int, db: Session = Depends(get_db)):
    tutor = get_verified_tutor_or_404(tutor_id, db)
    detail = TutorDetailResponse.model_validate(tutor)
    detail.courses = [
        CourseResponse.model_validate(course)
        for course in db.query(Course).filter(
            Course.tutor_id == tutor.id,
            Course.status == 'active',
        ).order_by(Course.created_at.desc()).all()
    ]
    return detail


@router.get('/{tutor_id}/courses', response_model=list[CourseResponse])
def list_tutor_courses(tutor_id: int, db: Session = Depends(get_db)):
    get_verified_tutor_or_404(tutor_id, db)
    return db.query(Course).filter(
        Course.tutor_id == tutor_id,
        Course.status == 'active',
    ).order_by(Course.created_at.desc()).all()


@router.get('/{tutor_id}/reviews', response_model=list[ReviewResponse])
def list_tutor_reviews(tutor_id: int, db: Session = Depends(get_db)):
    if db.get(TutorProfile, tutor_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Tutor not found.')
    return db.query(Review).filter(Review.tutor_id == tutor_id).order_by(
        Review.created_at.desc(),
        Review.id.desc(),
    ).all()


@router.post('/{tutor_id}/reviews', response_model=ReviewResponse, status_code=status.HTTP_201_CREATED)
def create_tutor_review(
    tutor_id: int,
    data: ReviewRequest,
    current_user: User = Depends(require_student),
    db: Session = Depends(get_db),
):
    tutor = db.get(TutorProfile, tutor_id)
    if tutor is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Tutor not found.')

    completed_booking = db.query(BookingRequest).filter(
        BookingRequest.student_id == current_user.id,
        BookingRequest.tutor_id == tutor_id,
        BookingRequest.status == 'completed',
    ).first()
    if completed_booking is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail='You can only review tutors after completing a booking with them.',
        )

    if data.course_id is not None:
        course = db.get(Course, data.course_id)
        if course is None or course.tutor_id != tutor_id:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Course not found.')

    try:
        review = Review(
            student_id=current_user.id,
            tutor_id=tutor_id,
            course_id=data.course_id,
            rating=data.rating,
            comment=data.comment,
        )
        db.add(review)
        db.flush()
        recompute_tutor_rating(tutor, db)
        db.commit()
        db.refresh(review)
        return review
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc
