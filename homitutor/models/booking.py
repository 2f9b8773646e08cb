"""Booking request, session and session note model definitions."""

from datetime import datetime

from sqlalchemy import Column, Date, DateTime, ForeignKey, Integer, Numeric, String, Text, Time
from sqlalchemy.orm import relationship

from homitutor.database import Base

BOOKING_STATUSES = ('pending', 'confirmed', 'completed', 'cancelled', 'rejected')
SESSION_STATUSES = ('pending', 'confirmed', 'completed', 'cancelled')
ACTIVE_SESSION_STATUSES = ('pending', 'confirmed')


class BookingRequest(Base):
    """A student's request to book one or more sessions with a tutor."""
    __tablename__ = "booking_requests"

    id = Column(Integer, primary_key=True)
    student_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    tutor_id = Column(Integer, ForeignKey("tutor_profiles.id"), nullable=False)
    course_id = Column(Integer, ForeignKey("courses.id"))
    title = Column(String, nullable=False)
    description = Column(Text)
    mode = Column(String, nullable=False)  # online/offline
    location = Column(String)
    note = Column(Text)
    meeting_url = Column(String)
    payment_method = Column(String, nullable=False, default='direct')
    hourly_rate = Column(Numeric(10, 2), nullable=False)
    total_hours = Column(Numeric(5, 2), nullable=False)
    total_amount = Column(Numeric(10, 2), nullable=False)
    status = Column(String, nullable=False, default='pending')
    rejection_reason = Column(Text)
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)

    student = relationship('User')
    tutor = relationship('TutorProfile')
    course = relationship('Course')
    sessions = relationship(
        'BookingSession',
        back_populates='request',
        order_by=lambda: (BookingSession.date, BookingSession.start_time),
    )
    payment = relationship('Payment', back_populates='request', uselist=False)


class BookingSession(Base):
    """An individual scheduled time slot belonging to a booking request."""
    __tablename__ = "booking_sessions"

    id = Column(Integer, primary_key=True)
    request_id = Column(Integer, ForeignKey("booking_requests.id"), nullable=False)
    schedule_id = Column(Integer, ForeignKey("teaching_schedules.id"))
    date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    status = Column(String, nullable=False, default='pending')
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)

    request = relationship('BookingRequest', back_populates='sessions')
    schedule = relationship('TeachingSchedule')
    note = relationship('SessionNote', back_populates='session', uselist=False)


class SessionNote(Base):
    """Tutor notes and the student's rating for one session."""
    __tablename__ = "session_notes"

    id = Column(Integer, primary_key=True)
    session_id = Column(Integer, ForeignKey("booking_sessions.id"), unique=True, nullable=False)
    tutor_notes = Column(Text)
    student_rating = Column(Integer)
    student_feedback = Column(Text)
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)

    session = relationship('BookingSession', back_populates='note')
