"""Tutor profile model definitions."""

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from homitutor.database import Base

TEACHING_REQUEST_STATUSES = ('pending', 'approved', 'rejected')


class TutorProfile(Base):
    """Represents the public profile of a tutor user."""
    __tablename__ = "tutor_profiles"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    bio = Column(Text)
    availability = Column(Text)
    certifications = Column(Text)  # JSON list of URLs
    is_verified = Column(Boolean, nullable=False, default=False)
    is_featured = Column(Boolean, nullable=False, default=False)
    rating = Column(Numeric(3, 2), nullable=False, default=0)
    total_reviews = Column(Integer, nullable=False, default=0)
    rejection_reason = Column(Text)
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)

    user = relationship('User', back_populates='tutor_profile')
    subjects = relationship('Subject', secondary='tutor_subjects', order_by='Subject.name', viewonly=True)
    education_levels = relationship(
        'EducationLevel',
        secondary='tutor_education_levels',
        order_by='EducationLevel.name',
        viewonly=True,
    )


class TutorSubject(Base):
    __tablename__ = "tutor_subjects"
    __table_args__ = (UniqueConstraint('tutor_id', 'subject_id', name='unique_tutor_subject'),)

    id = Column(Integer, primary_key=True)
    tutor_id = Column(Integer, ForeignKey("tutor_profiles.id"), nullable=False)
    subject_id = Column(Integer, ForeignKey("subjects.id"), nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.now)


class TutorEducationLevel(Base):
    __tablename__ = "tutor_education_levels"
    __table_args__ = (UniqueConstraint('tutor_id', 'level_id', name='unique_tutor_level'),)

    id = Column(Integer, primary_key=True)
    tutor_id = Column(Integer, ForeignKey("tutor_profiles.id"), nullable=False)
    level_id = Column(Integer, ForeignKey("education_levels.id"), nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.now)


class TeachingRequest(Base):
    """A tutor's request to be approved for teaching a subject at a level."""
    __tablename__ = "teaching_requests"

    id = Column(Integer, primary_key=True)
    tutor_id = Column(Integer, ForeignKey("tutor_profiles.id"), nullable=False)
    subject_id = Column(Integer, ForeignKey("subjects.id"), nullable=False)
    level_id = Column(Integer, ForeignKey("education_levels.id"), nullable=False)
    introduction = Column(Text)
    experience = Column(Text)
    certifications = Column(Text)
    status = Column(String, nullable=False, default='pending')
    rejection_reason = Column(Text)
    approved_by = Column(Integer, ForeignKey("users.id"))
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)

    tutor = relationship('TutorProfile')
    subject = relationship('Subject')
    level = relationship('EducationLevel')


class FavoriteTutor(Base):
    __tablename__ = "favorite_tutors"
    __table_args__ = (UniqueConstraint('student_id', 'tutor_id', name='unique_student_favorite'),)

    id = Column(Integer, primary_key=True)
    student_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    tutor_id = Column(Integer, ForeignKey("tutor_profiles.id"), nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.now)

    tutor = relationship('TutorProfile')
