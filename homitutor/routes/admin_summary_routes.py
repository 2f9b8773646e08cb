from collections import defaultdict
from datetime import datetime, timedelta
from decimal import Decimal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy import func
from sqlalchemy.orm import Session

from homitutor.auth.dependencies import require_admin
from homitutor.database import get_db
from homitutor.models.booking import BOOKING_STATUSES, BookingRequest
from homitutor.models.catalog import Subject
from homitutor.models.course import Course
from homitutor.models.payment import Payment
from homitutor.models.tutor import TutorProfile
from homitutor.models.user import User

router = APIRouter(tags=['admin-summary'], dependencies=[Depends(require_admin)])

GROWTH_WINDOW = timedelta(days=30)
PAID_PAYMENT_STATUSES = ('completed', 'tutor_paid')


class CountResponse(BaseModel):
    count: int
    growth_percent: float | None = None


class OverviewResponse(BaseModel):
    total_users: CountResponse
    active_tutors: CountResponse
    total_courses: CountResponse
    total_bookings: CountResponse


class ActivityResponse(BaseModel):
    type: str
    description: str
    created_at: datetime


class UserGrowthPoint(BaseModel):
    month: str
    students: int
    tutors: int
    total: int


class BookingVolumePoint(BaseModel):
    month: str
    counts: dict[str, int]
    total: int


class SubjectCoursesPoint(BaseModel):
    subject: str
    count: int


class RevenuePoint(BaseModel):
    month: str
    amount: float
    fee: float


def growth_percent(recent: int, previous: int) -> float:
    if previous == 0:
        return 100.0 if recent > 0 else 0.0
    return round((recent - previous) / previous * 100, 1)


def count_with_growth(query, created_column, now: datetime | None = None) -> CountResponse:
    now = now or datetime.now()
    recent = query.filter(created_column >= now - GROWTH_WINDOW).count()
    previous = query.filter(
        created_column >= now - 2 * GROWTH_WINDOW,
        created_column < now - GROWTH_WINDOW,
    ).count()
    return CountResponse(count=query.count(), growth_percent=growth_percent(recent, previous))


def month_key(moment: datetime) -> str:
    return moment.strftime('%Y-%m')


def months_of_year(year: int) -> list[str]:
    return [f'{year}-{month:02d}' for month in range(1, 13)]


def last_twelve_months(now: datetime | None = None) -> list[str]:
    now = now or datetime.now()
    year, month = now.year, now.month
    keys = []
    for _ in range(12):
        keys.append(f'{year}-{month:02d}')
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return list(reversed(keys))


def build_user_growth(rows: list[tuple[datetime, str]], months: list[str]) -> list[dict]:
    buckets = {key: {'month': key, 'students': 0, 'tutors': 0, 'total': 0} for key in months}
    for created_at, role in rows:
        bucket = buckets.get(month_key(created_at))
        if bucket is None:
            continue
        if role == 'student':
            bucket['students'] += 1
        elif role == 'tutor':
            bucket['tutors'] += 1
        bucket['total'] += 1
    return [buckets[key] for key in months]


def user_growth_for(start: datetime, end: datetime, months: list[str], db: Session) -> list[dict]:
    rows = db.query(User.created_at, User.role).filter(User.created_at >= start, User.created_at < end).all()
    return build_user_growth(rows, months)


def total_users(db: Session) -> CountResponse:
    return count_with_growth(db.query(User), User.created_at)


def active_tutors(db: Session) -> CountResponse:
    query = db.query(TutorProfile).join(User, User.id == TutorProfile.user_id).filter(
        TutorProfile.is_verified.is_(True),
        User.is_active.is_(True),
    )
    return count_with_growth(query, TutorProfile.created_at)


def total_courses(db: Session) -> CountResponse:
    return count_with_growth(db.query(Course), Course.created_at)


def total_bookings(db: Session) -> CountResponse:
    return count_with_growth(db.query(BookingRequest), BookingRequest.created_at)


@router.get('/total-users', response_model=CountResponse)
def get_total_users(db: Session = Depends(get_db)):
    return total_users(db)


@router.get('/active-tutors', response_model=CountResponse)
def get_active_tutors(db: Session = Depends(get_db)):
    return active_tutors(db)


@router.get('/total-courses', response_model=CountResponse)
def get_total_courses(db: Session = Depends(get_db)):
    return total_courses(db)


@router.get('/total-bookings', response_model=CountResponse)
def get_total_bookings(db: Session = Depends(get_db)):
    return total_bookings(db)


@router.get('/overview', response_model=OverviewResponse)
def get_overview(db: Session = Depends(get_db)):
    return OverviewResponse(
        total_users=total_users(db),
        active_tutors=active_tutors(db),
        total_courses=total_courses(db),
        total_bookings=total_bookings(db),
    )


@router.get('/recent-activities', response_model=list[ActivityResponse])
def get_recent_activities(limit: int = Query(default=10, ge=1, le=50), db: Session = Depends(get_db)):
    activities = []

    for user in db.query(User).order_by(User.created_at.desc()).limit(limit).all():
        activities.append(ActivityResponse(
            type='registration',
            description=f'{user.full_name} registered as a {user.role}.',
            created_at=user.created_at,
        ))

    for booking in db.query(BookingRequest).order_by(BookingRequest.created_at.desc()).limit(limit).all():
        activities.append(ActivityResponse(
            type='booking',
            description=f'{booking.student.full_name} requested "{booking.title}".',
            created_at=booking.created_at,
        ))

    for payment in db.query(Payment).filter(Payment.status.in_(PAID_PAYMENT_STATUSES)).order_by(
        Payment.updated_at.desc(),
    ).limit(limit).all():
        activities.append(ActivityResponse(
            type='payment',
            description=f'Payment {payment.transaction_id} of {float(payment.amount):,.0f} VND completed.',
            created_at=payment.updated_at,
        ))

    activities.sort(key=lambda activity: activity.created_at, reverse=True)
    return activities[:limit]


@router.get('/statistics/user-growth', response_model=list[UserGrowthPoint])
def get_user_growth(year: int | None = Query(default=None, ge=2000, le=9999), db: Session = Depends(get_db)):
    year = year or datetime.now().year
    return user_growth_for(datetime(year, 1, 1), datetime(year + 1, 1, 1), months_of_year(year), db)


@router.get('/statistics/user-growth-latest-12-months', response_model=list[UserGrowthPoint])
def get_user_growth_latest(db: Session = Depends(get_db)):
    now = datetime.now()
    months = last_twelve_months(now)
    first_year, first_month = (int(part) for part in months[0].split('-'))
    end = datetime(now.year + 1, 1, 1) if now.month == 12 else datetime(now.year, now.month + 1, 1)
    return user_growth_for(datetime(first_year, first_month, 1), end, months, db)


@router.get('/statistics/bookings-volume', response_model=list[BookingVolumePoint])
def get_bookings_volume(year: int | None = Query(default=None, ge=2000, le=9999), db: Session = Depends(get_db)):
    year = year or datetime.now().year
    months = months_of_year(year)
    buckets = {key: {status: 0 for status in BOOKING_STATUSES} for key in months}

    for created_at, booking_status in db.query(BookingRequest.created_at, BookingRequest.status).filter(
        BookingRequest.created_at >= datetime(year, 1, 1),
        BookingRequest.created_at < datetime(year + 1, 1, 1),
    ).all():
        bucket = buckets[month_key(created_at)]
        bucket[booking_status] = bucket.get(booking_status, 0) + 1

    return [
        BookingVolumePoint(month=key, counts=buckets[key], total=sum(buckets[key].values()))
        for key in months
    ]


@router.get('/statistics/courses-by-subject', response_model=list[SubjectCoursesPoint])
def get_courses_by_subject(db: Session = Depends(get_db)):
    rows = db.query(Subject.name, func.count(Course.id)).join(
        Course, Course.subject_id == Subject.id,
    ).group_by(Subject.name).order_by(func.count(Course.id).desc(), Subject.name).all()
    return [SubjectCoursesPoint(subject=name, count=count) for name, count in rows]


@router.get('/statistics/revenue', response_model=list[RevenuePoint])
def get_platform_revenue(year: int | None = Query(default=None, ge=2000, le=9999), db: Session = Depends(get_db)):
    year = year or datetime.now().year
    months = months_of_year(year)
    amounts: dict[str, Decimal] = defaultdict(Decimal)
    fees: dict[str, Decimal] = defaultdict(Decimal)

    for updated_at, amount, fee in db.query(Payment.updated_at, Payment.amount, Payment.fee).filter(
        Payment.status.in_(PAID_PAYMENT_STATUSES),
        Payment.updated_at >= datetime(year, 1, 1),
        Payment.updated_at < datetime(year + 1, 1, 1),
    ).all():
        amounts[month_key(updated_at)] += Decimal(amount or 0)
        fees[month_key(updated_at)] += Decimal(fee or 0)

    return [RevenuePoint(month=key, amount=float(amounts[key]), fee=float(fees[key])) for key in months]
