import datetime as dt
import logging
from collections import defaultdict

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, field_validator, model_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from homitutor.auth.dependencies import require_tutor
from homitutor.database import get_db
from homitutor.models.booking import ACTIVE_SESSION_STATUSES, BookingRequest, BookingSession
from homitutor.models.course import Course
from homitutor.models.schedule import TeachingSchedule
from homitutor.models.tutor import TutorProfile
from homitutor.models.user import User
from homitutor.routes.common import database_unavailable, get_tutor_profile_for_user, ranges_overlap

logger = logging.getLogger(__name__)

router = APIRouter(tags=['schedules'])

WEEKDAYS = ('monday', 'tuesday', 'wednesday', 'thursday', 'friday', 'saturday', 'sunday')
MAX_RECURRING_DAYS = 180
PUBLIC_WINDOW_DAYS = 92


class TimeSlot(BaseModel):
    start_time: dt.time
    end_time: dt.time

    @model_validator(mode='after')
    def check_order(self):
        if self.end_time <= self.start_time:
            raise ValueError('End time must be after start time.')
        return self


def normalize_weekday(value: str) -> str:
    normalized = value.strip().lower()
    if normalized not in WEEKDAYS:
        raise ValueError(f'Invalid day name. Must be one of: {", ".join(WEEKDAYS)}.')
    return normalized


class ScheduleCreateRequest(BaseModel):
    is_recurring: bool = False
    course_id: int | None = None

    # Recurring slots
    start_date: dt.date | None = None
    end_date: dt.date | None = None

    # Single slot
    start_time: dt.time | None = None
    end_time: dt.time | None = None
    date: dt.date | None = None

    # Recurring weekday slots
    repeat_schedule: dict[str, list[TimeSlot]] | None = None
    repeat_days: list[str] = []

    @field_validator('repeat_schedule')
    @classmethod
    def check_repeat_schedule(cls, value: dict[str, list[TimeSlot]] | None) -> dict[str, list[TimeSlot]] | None:
        if value is None:
            return None
        return {normalize_weekday(day): slots for day, slots in value.items() if slots}

    @field_validator('repeat_days')
    @classmethod
    def check_repeat_days(cls, value: list[str]) -> list[str]:
        return [normalize_weekday(day) for day in value]

    @model_validator(mode='after')
    def check_shape(self):
        if self.start_time and self.end_time and self.end_time <= self.start_time:
            raise ValueError('End time must be after start time.')

        if not self.is_recurring:
            if self.date is None or self.start_time is None or self.end_time is None:
                raise ValueError('A single schedule needs date, start_time and end_time.')
            return self

        if self.start_date is None or self.end_date is None:
            raise ValueError('A recurring schedule needs start_date and end_date.')
        if self.end_date < self.start_date:
            raise ValueError('End date must not be before start date.')
        if (self.end_date - self.start_date).days > MAX_RECURRING_DAYS:
            raise ValueError(f'A recurring schedule can span at most {MAX_RECURRING_DAYS} days.')

        has_repeat_schedule = bool(self.repeat_schedule)
        has_repeat_days = bool(self.repeat_days) and self.start_time is not None and self.end_time is not None
        if not has_repeat_schedule and not has_repeat_days:
            raise ValueError('Provide repeat_schedule, or repeat_days with start_time and end_time.')
        return self

    def slots_by_weekday(self) -> dict[str, list[tuple[dt.time, dt.time]]]:
        if self.repeat_schedule:
            return {
                day: [(slot.start_time, slot.end_time) for slot in slots]
                for day, slots in self.repeat_schedule.items()
            }
        return {day: [(self.start_time, self.end_time)] for day in self.repeat_days}


class ScheduleResponse(BaseModel):
    id: int
    tutor_id: int
    course_id: int | None = None
    date: dt.date
    start_time: dt.time
    end_time: dt.time
    is_recurring: bool
    status: str

    class Config:
        from_attributes = True


class ScheduleCreateResponse(BaseModel):
    total_created: int
    skipped: int
    message: str


class PublicTimeSlot(BaseModel):
    id: int
    start_time: dt.time
    end_time: dt.time


class AvailableDay(BaseModel):
    date: dt.date
    time_slots: list[PublicTimeSlot]


def iterate_days(start: dt.date, end: dt.date):
    current = start
    while current <= end:
        yield current
        current += dt.timedelta(days=1)


def plan_recurring_slots(
    start: dt.date,
    end: dt.date,
    slots_by_weekday: dict[str, list[tuple[dt.time, dt.time]]],
    existing_by_date: dict[dt.date, list[tuple[dt.time, dt.time]]],
) -> tuple[list[tuple[dt.date, dt.time, dt.time]], int]:
    """Expand weekday slots across a date range, skipping any that overlap.

    Returns the slots to create and the number skipped. Slots planned earlier
    in the same run count as existing for later ones.
    """
    planned: list[tuple[dt.date, dt.time, dt.time]] = []
    skipped = 0
    taken = defaultdict(list, {day: list(ranges) for day, ranges in existing_by_date.items()})

    for day in iterate_days(start, end):
        weekday = WEEKDAYS[day.weekday()]
        for start_time, end_time in slots_by_weekday.get(weekday, []):
            if any(ranges_overlap(start_time, end_time, other_start, other_end) for other_start, other_end in taken[day]):
                skipped += 1
                continue
            taken[day].append((start_time, end_time))
            planned.append((day, start_time, end_time))

    return planned, skipped


def group_slots_by_date(slots: list[TeachingSchedule]) -> list[dict]:
    grouped: dict[dt.date, list[dict]] = defaultdict(list)
    for slot in sorted(slots, key=lambda item: (item.date, item.start_time)):
        grouped[slot.date].append({'id': slot.id, 'start_time': slot.start_time, 'end_time': slot.end_time})
    return [{'date': day, 'time_slots': time_slots} for day, time_slots in grouped.items()]


def get_existing_ranges(
    tutor_id: int,
    start: dt.date,
    end: dt.date,
    db: Session,
) -> dict[dt.date, list[tuple[dt.time, dt.time]]]:
    rows = db.query(TeachingSchedule.date, TeachingSchedule.start_time, TeachingSchedule.end_time).filter(
        TeachingSchedule.tutor_id == tutor_id,
        TeachingSchedule.date >= start,
        TeachingSchedule.date <= end,
        TeachingSchedule.status != 'cancelled',
    ).all()
    existing: dict[dt.date, list[tuple[dt.time, dt.time]]] = defaultdict(list)
    for day, start_time, end_time in rows:
        existing[day].append((start_time, end_time))
    return existing


def get_owned_schedule_or_404(schedule_id: int, profile: TutorProfile, db: Session) -> TeachingSchedule:
    schedule = db.get(TeachingSchedule, schedule_id)
    if schedule is None or schedule.tutor_id != profile.id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Schedule not found.')
    return schedule


@router.post('', response_model=ScheduleCreateResponse, status_code=status.HTTP_201_CREATED)
def create_schedule(
    data: ScheduleCreateRequest,
    current_user: User = Depends(require_tutor),
    db: Session = Depends(get_db),
):
    profile = get_tutor_profile_for_user(current_user, db)
    today = dt.date.today()

    if data.course_id is not None:
        course = db.get(Course, data.course_id)
        if course is None or course.tutor_id != profile.id:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Course not found.')

    first_day = data.start_date if data.is_recurring else data.date
    if first_day < today:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Schedules cannot start in the past.')

    try:
        if not data.is_recurring:
            existing = get_existing_ranges(profile.id, data.date, data.date, db)
            if any(
                ranges_overlap(data.start_time, data.end_time, other_start, other_end)
                for other_start, other_end in existing[data.date]
            ):
                raise HTTPException(
                    status_code=status.HTTP_409_CONFLICT,
                    detail='This time overlaps an existing schedule.',
                )

            db.add(TeachingSchedule(
                tutor_id=profile.id,
                course_id=data.course_id,
                date=data.date,
                start_time=data.start_time,
                end_time=data.end_time,
                is_recurring=False,
                status='available',
            ))
            db.commit()
            return ScheduleCreateResponse(total_created=1, skipped=0, message='Schedule created successfully.')

        existing = get_existing_ranges(profile.id, data.start_date, data.end_date, db)
        planned, skipped = plan_recurring_slots(data.start_date, data.end_date, data.slots_by_weekday(), existing)
        db.add_all([
            TeachingSchedule(
                tutor_id=profile.id,
                course_id=data.course_id,
                date=day,
                start_time=start_time,
                end_time=end_time,
                is_recurring=True,
                status='available',
            )
            for day, start_time, end_time in planned
        ])
        db.commit()
        logger.info('Tutor %s created %s recurring slots (%s skipped)', profile.id, len(planned), skipped)
        return ScheduleCreateResponse(
            total_created=len(planned),
            skipped=skipped,
            message=f'{len(planned)} schedules created. {skipped} skipped due to conflicts.',
        )
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('/tutor', response_model=list[ScheduleResponse])
def list_own_schedules(
    start_date: dt.date | None = Query(default=None),
    end_date: dt.date | None = Query(default=None),
    current_user: User = Depends(require_tutor),
    db: Session = Depends(get_db),
):
    profile = get_tutor_profile_for_user(current_user, db)
    query = db.query(TeachingSchedule).filter(TeachingSchedule.tutor_id == profile.id)
    if start_date is not None:
        query = query.filter(TeachingSchedule.date >= start_date)
    if end_date is not None:
        query = query.filter(TeachingSchedule.date <= end_date)
    return query.order_by(TeachingSchedule.date, TeachingSchedule.start_time).all()


@router.delete('/{schedule_id}', response_model=ScheduleResponse)
def cancel_schedule(
    schedule_id: int,
    current_user: User = Depends(require_tutor),
    db: Session = Depends(get_db),
):
    profile = get_tutor_profile_for_user(current_user, db)
    schedule = get_owned_schedule_or_404(schedule_id, profile, db)

    if schedule.status == 'booked':
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='A booked schedule cannot be cancelled.',
        )

    try:
        schedule.status = 'cancelled'
        db.commit()
        db.refresh(schedule)
        return schedule
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.delete('/{schedule_id}/permanent', status_code=status.HTTP_204_NO_CONTENT)
def delete_schedule_permanently(
    schedule_id: int,
    current_user: User = Depends(require_tutor),
    db: Session = Depends(get_db),
):
    profile = get_tutor_profile_for_user(current_user, db)
    schedule = db.query(TeachingSchedule).filter(
        TeachingSchedule.id == schedule_id,
        TeachingSchedule.tutor_id == profile.id,
        TeachingSchedule.status == 'cancelled',
    ).first()
    if schedule is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Cancelled schedule not found.')

    try:
        db.query(BookingSession).filter(BookingSession.schedule_id == schedule.id).update(
            {BookingSession.schedule_id: None},
            synchronize_session=False,
        )
        db.delete(schedule)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('/{tutor_id}', response_model=list[AvailableDay])
def list_available_slots(
    tutor_id: int,
    course_id: int | None = Query(default=None),
    start_date: dt.date | None = Query(default=None),
    end_date: dt.date | None = Query(default=None),
    db: Session = Depends(get_db),
):
    if db.get(TutorProfile, tutor_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Tutor not found.')

    today = dt.date.today()
    window_start = max(today, start_date) if start_date else today
    window_end = end_date or today + dt.timedelta(days=PUBLIC_WINDOW_DAYS)

    query = db.query(TeachingSchedule).filter(
        TeachingSchedule.tutor_id == tutor_id,
        TeachingSchedule.status == 'available',
        TeachingSchedule.date >= window_start,
        TeachingSchedule.date <= window_end,
    )
    if course_id is not None:
        query = query.filter((TeachingSchedule.course_id == course_id) | TeachingSchedule.course_id.is_(None))
    slots = query.all()

    booked: dict[dt.date, list[tuple[dt.time, dt.time]]] = defaultdict(list)
    for day, start_time, end_time in db.query(
        BookingSession.date,
        BookingSession.start_time,
        BookingSession.end_time,
    ).join(BookingRequest, BookingRequest.id == BookingSession.request_id).filter(
        BookingRequest.tutor_id == tutor_id,
        BookingSession.status.in_(ACTIVE_SESSION_STATUSES),
        BookingSession.date >= window_start,
        BookingSession.date <= window_end,
    ).all():
        booked[day].append((start_time, end_time))

    open_slots = [
        slot for slot in slots
        if not any(
            ranges_overlap(slot.start_time, slot.end_time, other_start, other_end)
            for other_start, other_end in booked[slot.date]
        )
    ]
    return group_slots_by_date(open_slots)
