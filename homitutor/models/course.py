"""Course model definitions."""

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship

from homitutor.database import Base

TEACHING_MODES = ('online', 'offline', 'both')
COURSE_STATUSES = ('active', 'inactive')


class Course(Base):
    """A course a tutor offers for a subject at an education level."""
    __tablename__ = "courses"

    id = Column(Integer, primary_key=True)
    tutor_id = Column(Integer, ForeignKey("tutor_profiles.id"), nullable=False, index=True)
    subject_id = Column(Integer, ForeignKey("subjects.id"), nullable=False)
    level_id = Column(Integer, ForeignKey("education_levels.id"), nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text)
    hourly_rate = Column(Numeric(10, 2), nullable=False)
    teaching_mode = Column(String(50), nullable=False, default='online')
    status = Column(String(50), nullable=False, default='active')
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)

    tutor = relationship('TutorProfile')
    subject = relationship('Subject')
    level = relationship('EducationLevel')
