"""Conversation and message model definitions."""

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from homitutor.database import Base


class Conversation(Base):
    """A messaging thread between a student and a tutor user."""
    __tablename__ = "conversations"
    __table_args__ = (UniqueConstraint('student_id', 'tutor_id', name='unique_student_tutor'),)

    id = Column(Integer, primary_key=True)
    student_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    tutor_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    last_message_at = Column(DateTime, nullable=False, default=datetime.now)
    created_at = Column(DateTime, nullable=False, default=datetime.now)

    student = relationship('User', foreign_keys=[student_id])
    tutor = relationship('User', foreign_keys=[tutor_id])
    messages = relationship('Message', back_populates='conversation', order_by=lambda: (Message.created_at, Message.id))


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    content = Column(Text, nullable=False)
    attachment_url = Column(String)
    read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=datetime.now)

    conversation = relationship('Conversation', back_populates='messages')
