"""Teaching schedule model definitions."""

from datetime import datetime

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, String, Time
from sqlalchemy.orm import relationship

from homitutor.database import Base

SCHEDULE_STATUSES = ('available', 'booked', 'completed', 'cancelled')


class TeachingSchedule(Base):
    """Represents a time slot a tutor is available to teach."""
    __tablename__ = "teaching_schedules"

    id = Column(Integer, primary_key=True)
    tutor_id = Column(Integer, ForeignKey("tutor_profiles.id"), nullable=False)
    course_id = Column(Integer, ForeignKey("courses.id"))
    date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    is_recurring = Column(Boolean, nullable=False, default=False)
    status = Column(String, nullable=False, default='available')
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)

    course = relationship('Course')
