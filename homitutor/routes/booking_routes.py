"""Booking requests, their sessions and per-session notes.

A booking request moves through ``pending -> confirmed -> completed`` or ends
early as ``cancelled`` (by the student) or ``rejected`` (by the tutor). Status
changes on the request cascade to its sessions and to the schedule slots the
sessions occupy. Session status changes flow back up: once every session of a
request has finished the request itself is completed or cancelled.
"""

import logging
from datetime import date, datetime, time
from decimal import ROUND_HALF_UP, Decimal

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator, model_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from homitutor.auth.dependencies import get_current_user, require_student, require_tutor
from homitutor.database import get_db
from homitutor.models.booking import (
    ACTIVE_SESSION_STATUSES,
    BOOKING_STATUSES,
    SESSION_STATUSES,
    BookingRequest,
    BookingSession,
    SessionNote,
)
from homitutor.models.course import Course
from homitutor.models.schedule import TeachingSchedule
from homitutor.models.tutor import TutorProfile
from homitutor.models.user import User
from homitutor.routes.common import (
    CourseResponse,
    UserContactResponse,
    database_unavailable,
    duration_minutes,
    get_tutor_profile_for_user,
    ranges_overlap,
    recompute_tutor_rating,
)
from homitutor.routes.user_routes import normalize_optional_text, validate_url

logger = logging.getLogger(__name__)

router = APIRouter(tags=['bookings'])

BOOKING_MODES = ('online', 'offline')
BOOKING_PAYMENT_METHODS = ('direct', 'online')
MAX_NOTE_LENGTH = 2000

# Allowed request transitions per role: target status -> statuses it may leave.
STUDENT_TRANSITIONS = {
    'cancelled': ('pending', 'confirmed'),
}
TUTOR_TRANSITIONS = {
    'confirmed': ('pending',),
    'rejected': ('pending',),
    'completed': ('confirmed',),
}

SESSION_TUTOR_TRANSITIONS = {
    'confirmed': ('pending',),
    'completed': ('confirmed',),
    'cancelled': ('pending', 'confirmed'),
}
SESSION_STUDENT_TRANSITIONS = {
    'cancelled': ('pending', 'confirmed'),
}


class SessionInput(BaseModel):
    schedule_id: int
    date: date
    start_time: time
    end_time: time

    @model_validator(mode='after')
    def check_order(self):
        if self.end_time <= self.start_time:
            raise ValueError('Session end time must be after its start time.')
        return self


class BookingCreateRequest(BaseModel):
    tutor_id: int
    course_id: int
    mode: str = 'online'
    location: str | None = None
    note: str | None = Field(default=None, max_length=MAX_NOTE_LENGTH)
    title: str | None = None
    description: str | None = None
    payment_method: str = 'direct'
    sessions: list[SessionInput] = Field(min_length=1)

    @field_validator('mode')
    @classmethod
    def check_mode(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in BOOKING_MODES:
            raise ValueError('Mode must be online or offline.')
        return normalized

    @field_validator('payment_method')
    @classmethod
    def check_payment_method(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in BOOKING_PAYMENT_METHODS:
            raise ValueError('Payment method must be direct or online.')
        return normalized

    @field_validator('location', 'note', 'title', 'description')
    @classmethod
    def strip_text(cls, value: str | None) -> str | None:
        return normalize_optional_text(value)

    @model_validator(mode='after')
    def check_location(self):
        if self.mode == 'offline' and not self.location:
            raise ValueError('Location is required for offline lessons.')
        return self


class BookingStatusUpdate(BaseModel):
    status: str
    reason: str | None = Field(default=None, max_length=MAX_NOTE_LENGTH)
    meeting_url: str | None = None

    @field_validator('status')
    @classmethod
    def check_status(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in BOOKING_STATUSES:
            raise ValueError('Invalid status.')
        return normalized

    @field_validator('reason')
    @classmethod
    def strip_reason(cls, value: str | None) -> str | None:
        return normalize_optional_text(value)

    @field_validator('meeting_url')
    @classmethod
    def check_meeting_url(cls, value: str | None) -> str | None:
        return validate_url(value)


class SessionStatusUpdate(BaseModel):
    status: str

    @field_validator('status')
    @classmethod
    def check_status(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in SESSION_STATUSES:
            raise ValueError(f'Status must be one of: {", ".join(SESSION_STATUSES)}.')
        return normalized


class SessionNoteRequest(BaseModel):
    tutor_notes: str | None = Field(default=None, max_length=MAX_NOTE_LENGTH)
    student_rating: int | None = Field(default=None, ge=1, le=5)
    student_feedback: str | None = Field(default=None, max_length=MAX_NOTE_LENGTH)

    @field_validator('tutor_notes', 'student_feedback')
    @classmethod
    def strip_text(cls, value: str | None) -> str | None:
        return normalize_optional_text(value)


class SessionNoteResponse(BaseModel):
    id: int
    session_id: int
    tutor_notes: str | None = None
    student_rating: int | None = None
    student_feedback: str | None = None
    updated_at: datetime

    class Config:
        from_attributes = True


class BookingSessionResponse(BaseModel):
    id: int
    request_id: int
    schedule_id: int | None = None
    date: date
    start_time: time
    end_time: time
    status: str
    note: SessionNoteResponse | None = None

    class Config:
        from_attributes = True


class BookingTutorResponse(BaseModel):
    id: int
    user: UserContactResponse

    class Config:
        from_attributes = True


class BookingPaymentSummary(BaseModel):
    id: int
    transaction_id: str | None = None
    amount: float
    status: str
    payment_method: str

    class Config:
        from_attributes = True


class BookingResponse(BaseModel):
    id: int
    student_id: int
    tutor_id: int
    course_id: int | None = None
    title: str
    description: str | None = None
    mode: str
    location: str | None = None
    note: str | None = None
    meeting_url: str | None = None
    payment_method: str
    hourly_rate: float
    total_hours: float
    total_amount: float
    status: str
    rejection_reason: str | None = None
    student: UserContactResponse
    tutor: BookingTutorResponse
    course: CourseResponse | None = None
    sessions: list[BookingSessionResponse] = []
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class BookingDetailResponse(BookingResponse):
    payment: BookingPaymentSummary | None = None


# Pure booking rules


def compute_booking_totals(hourly_rate: Decimal, sessions: list[SessionInput]) -> tuple[Decimal, Decimal]:
    """Return (total_hours, total_amount) for the requested sessions."""
    minutes = sum(duration_minutes(session.start_time, session.end_time) for session in sessions)
    total_hours = (Decimal(minutes) / Decimal(60)).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
    total_amount = (Decimal(hourly_rate) * Decimal(minutes) / Decimal(60)).quantize(
        Decimal('0.01'),
        rounding=ROUND_HALF_UP,
    )
    return total_hours, total_amount


def sessions_overlap_each_other(sessions: list[SessionInput]) -> bool:
    ordered = sorted(sessions, key=lambda session: (session.date, session.start_time))
    for previous, current in zip(ordered, ordered[1:]):
        if previous.date == current.date and ranges_overlap(
            previous.start_time, previous.end_time, current.start_time, current.end_time,
        ):
            return True
    return False


def session_fits_schedule(session: SessionInput, schedule: TeachingSchedule) -> bool:
    return (
        schedule.date == session.date
        and schedule.start_time <= session.start_time
        and session.end_time <= schedule.end_time
    )


def validate_status_transition(role: str, current: str, target: str) -> None:
    """Raise 400 unless ``role`` may move a booking request from ``current`` to ``target``."""
    transitions = STUDENT_TRANSITIONS if role == 'student' else TUTOR_TRANSITIONS
    allowed_from = transitions.get(target)

    if allowed_from is None:
        if role == 'student':
            detail = 'Students can only cancel a booking.'
        elif target == 'cancelled':
            detail = 'Tutors cannot cancel a booking. Reject it instead.'
        else:
            detail = f'Tutors cannot set a booking to {target}.'
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)

    if current not in allowed_from:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f'Cannot change a {current} booking to {target}.',
        )


def validate_session_transition(role: str, current: str, target: str) -> None:
    transitions = SESSION_STUDENT_TRANSITIONS if role == 'student' else SESSION_TUTOR_TRANSITIONS
    allowed_from = transitions.get(target)
    if allowed_from is None or current not in allowed_from:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f'Cannot change a {current} session to {target}.',
        )


def apply_status_cascade(booking: BookingRequest, target: str) -> None:
    """Propagate a request status change to its sessions and schedule slots."""
    for session in booking.sessions:
        if target == 'confirmed':
            if session.status == 'pending':
                session.status = 'confirmed'
                if session.schedule is not None:
                    session.schedule.status = 'booked'
        elif target in ('cancelled', 'rejected'):
            if session.status != 'completed':
                session.status = 'cancelled'
                if session.schedule is not None and session.schedule.status == 'booked':
                    session.schedule.status = 'available'
        elif target == 'completed':
            if session.status != 'cancelled':
                session.status = 'completed'
                if session.schedule is not None:
                    session.schedule.status = 'completed'


def resolve_request_status(current: str, session_statuses: list[str]) -> str:
    """Return the request status implied by its sessions' statuses."""
    if not session_statuses or current not in ('pending', 'confirmed'):
        return current
    if all(session_status == 'cancelled' for session_status in session_statuses):
        return 'cancelled'
    if current == 'confirmed' and all(
        session_status in ('completed', 'cancelled') for session_status in session_statuses
    ):
        return 'completed'
    return current


# Access helpers


def get_booking_or_404(booking_id: int, db: Session) -> BookingRequest:
    booking = db.get(BookingRequest, booking_id)
    if booking is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Booking not found.')
    return booking


def participant_role(booking: BookingRequest, user: User) -> str | None:
    if booking.student_id == user.id:
        return 'student'
    if booking.tutor is not None and booking.tutor.user_id == user.id:
        return 'tutor'
    return None


def require_participant(booking: BookingRequest, user: User) -> str:
    role = participant_role(booking, user)
    if role is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail='You do not have permission to access this booking.',
        )
    return role


def filter_by_status(query, status_filter: str):
    normalized = (status_filter or 'all').strip().lower()
    if normalized == 'all':
        return query
    if normalized not in BOOKING_STATUSES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Invalid status filter.')
    return query.filter(BookingRequest.status == normalized)


# Endpoints


@router.post('', response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
def create_booking(
    data: BookingCreateRequest,
    current_user: User = Depends(require_student),
    db: Session = Depends(get_db),
):
    tutor = db.get(TutorProfile, data.tutor_id)
    if tutor is None or not tutor.is_verified:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Tutor not found.')

    course = db.get(Course, data.course_id)
    if course is None or course.tutor_id != tutor.id or course.status != 'active':
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Course not found.')

    today = date.today()
    if any(session.date < today for session in data.sessions):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Sessions cannot be in the past.')

    if sessions_overlap_each_other(data.sessions):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Requested sessions overlap each other.')

    for session in data.sessions:
        schedule = db.get(TeachingSchedule, session.schedule_id)
        if (
            schedule is None
            or schedule.tutor_id != tutor.id
            or schedule.status != 'available'
            or (schedule.course_id is not None and schedule.course_id != course.id)
            or not session_fits_schedule(session, schedule)
        ):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f'The session on {session.date.isoformat()} is not within an available schedule slot.',
            )

        conflicts = db.query(BookingSession).join(
            BookingRequest, BookingRequest.id == BookingSession.request_id,
        ).filter(
            BookingRequest.tutor_id == tutor.id,
            BookingSession.date == session.date,
            BookingSession.status.in_(ACTIVE_SESSION_STATUSES),
            BookingSession.start_time < session.end_time,
            BookingSession.end_time > session.start_time,
        ).first()
        if conflicts:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f'The session on {session.date.isoformat()} at '
                       f'{session.start_time.strftime("%H:%M")} is already booked.',
            )

    total_hours, total_amount = compute_booking_totals(course.hourly_rate, data.sessions)

    try:
        booking = BookingRequest(
            student_id=current_user.id,
            tutor_id=tutor.id,
            course_id=course.id,
            title=data.title or course.title,
            description=data.description,
            mode=data.mode,
            location=data.location,
            note=data.note,
            payment_method=data.payment_method,
            hourly_rate=course.hourly_rate,
            total_hours=total_hours,
            total_amount=total_amount,
            status='pending',
        )
        db.add(booking)
        db.flush()

        db.add_all([
            BookingSession(
                request_id=booking.id,
                schedule_id=session.schedule_id,
                date=session.date,
                start_time=session.start_time,
                end_time=session.end_time,
                status='pending',
            )
            for session in data.sessions
        ])
        db.commit()
        db.refresh(booking)
        logger.info(
            'Student %s requested booking %s with tutor %s (%s sessions)',
            current_user.id, booking.id, tutor.id, len(data.sessions),
        )
        return booking
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('/student', response_model=list[BookingResponse])
def list_student_bookings(
    status_filter: str = Query(default='all', alias='status'),
    current_user: User = Depends(require_student),
    db: Session = Depends(get_db),
):
    query = db.query(BookingRequest).filter(BookingRequest.student_id == current_user.id)
    query = filter_by_status(query, status_filter)
    return query.order_by(BookingRequest.created_at.desc(), BookingRequest.id.desc()).all()


@router.get('/tutor', response_model=list[BookingResponse])
def list_tutor_bookings(
    status_filter: str = Query(default='all', alias='status'),
    current_user: User = Depends(require_tutor),
    db: Session = Depends(get_db),
):
    profile = get_tutor_profile_for_user(current_user, db)
    query = db.query(BookingRequest).filter(BookingRequest.tutor_id == profile.id)
    query = filter_by_status(query, status_filter)
    return query.order_by(BookingRequest.created_at.desc(), BookingRequest.id.desc()).all()


@router.get('/{booking_id}', response_model=BookingDetailResponse)
def get_booking(
    booking_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    booking = get_booking_or_404(booking_id, db)
    if current_user.role != 'admin':
        require_participant(booking, current_user)
    return booking


@router.patch('/{booking_id}/status', response_model=BookingResponse)
def update_booking_status(
    booking_id: int,
    data: BookingStatusUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    booking = get_booking_or_404(booking_id, db)
    role = require_participant(booking, current_user)
    validate_status_transition(role, booking.status, data.status)

    if data.status == 'rejected' and not data.reason:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='A rejection reason is required.')

    try:
        previous_status = booking.status
        booking.status = data.status
        if data.status == 'rejected':
            booking.rejection_reason = data.reason
        if data.status == 'confirmed' and data.meeting_url:
            booking.meeting_url = data.meeting_url
        apply_status_cascade(booking, data.status)
        db.commit()
        db.refresh(booking)
        logger.info('Booking %s moved from %s to %s by %s', booking.id, previous_status, data.status, role)
        return booking
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.patch('/sessions/{session_id}/status', response_model=BookingSessionResponse)
def update_session_status(
    session_id: int,
    data: SessionStatusUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    session = db.get(BookingSession, session_id)
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Session not found.')

    booking = session.request
    role = require_participant(booking, current_user)
    validate_session_transition(role, session.status, data.status)

    try:
        session.status = data.status
        if session.schedule is not None:
            if data.status == 'confirmed':
                session.schedule.status = 'booked'
            elif data.status == 'completed':
                session.schedule.status = 'completed'
            elif data.status == 'cancelled' and session.schedule.status == 'booked':
                session.schedule.status = 'available'

        booking.status = resolve_request_status(booking.status, [item.status for item in booking.sessions])
        db.commit()
        db.refresh(session)
        return session
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.post('/sessions/{session_id}/notes', response_model=SessionNoteResponse)
def save_session_note(
    session_id: int,
    data: SessionNoteRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    session = db.get(BookingSession, session_id)
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Session not found.')

    booking = session.request
    role = require_participant(booking, current_user)
    provided = data.model_dump(exclude_none=True)

    if role == 'tutor':
        if set(provided) - {'tutor_notes'}:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Tutors can only add tutor notes.')
    else:
        if 'tutor_notes' in provided:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Students cannot add tutor notes.')
        if provided and session.status != 'completed':
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail='You can only rate a completed session.',
            )

    if not provided:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='No valid fields to update.')

    try:
        note = session.note
        if note is None:
            note = SessionNote(session_id=session.id)
            db.add(note)
        for field_name, value in provided.items():
            setattr(note, field_name, value)
        db.flush()

        if 'student_rating' in provided:
            recompute_tutor_rating(booking.tutor, db)

        db.commit()
        db.refresh(note)
        return note
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc
