import logging
from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from homitutor.auth.dependencies import get_current_user, require_student
from homitutor.database import get_db
from homitutor.models.conversation import Conversation, Message
from homitutor.models.tutor import TutorProfile
from homitutor.models.user import User
from homitutor.routes.common import UserSummaryResponse, database_unavailable
from homitutor.routes.user_routes import validate_url

logger = logging.getLogger(__name__)

router = APIRouter(tags=['conversations'])

MAX_MESSAGE_LENGTH = 2000
MESSAGE_GROUP_WINDOW = timedelta(minutes=5)


def normalize_message_content(value: str) -> str:
    normalized = value.strip()
    if not normalized:
        raise ValueError('Message content cannot be empty.')
    if len(normalized) > MAX_MESSAGE_LENGTH:
        raise ValueError(f'Messages must be {MAX_MESSAGE_LENGTH} characters or fewer.')
    return normalized


class MessageCreateRequest(BaseModel):
    content: str
    attachment_url: str | None = None

    @field_validator('content')
    @classmethod
    def check_content(cls, value: str) -> str:
        return normalize_message_content(value)

    @field_validator('attachment_url')
    @classmethod
    def check_attachment_url(cls, value: str | None) -> str | None:
        return validate_url(value)


class StartConversationRequest(BaseModel):
    message: str | None = Field(default=None, max_length=MAX_MESSAGE_LENGTH)

    @field_validator('message')
    @classmethod
    def strip_message(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()


class ChatMessageResponse(BaseModel):
    id: int
    conversation_id: int
    sender_id: int
    content: str
    attachment_url: str | None = None
    read: bool
    created_at: datetime

    class Config:
        from_attributes = True


class ParticipantResponse(UserSummaryResponse):
    role: str


class ConversationSummaryResponse(BaseModel):
    id: int
    student_id: int
    tutor_id: int
    other_user: ParticipantResponse
    last_message: ChatMessageResponse | None = None
    unread_count: int = 0
    last_message_at: datetime
    created_at: datetime


class MessageGroupResponse(BaseModel):
    sender_id: int
    messages: list[ChatMessageResponse]
    last_timestamp: datetime


class ConversationDetailResponse(BaseModel):
    id: int
    student_id: int
    tutor_id: int
    other_user: ParticipantResponse
    messages: list[ChatMessageResponse]
    message_groups: list[MessageGroupResponse]
    last_message_at: datetime


def group_messages(messages: list, window: timedelta = MESSAGE_GROUP_WINDOW) -> list[dict]:
    """Merge consecutive messages from one sender sent less than ``window`` apart.

    ``messages`` must already be in chronological order.
    """
    groups: list[dict] = []
    for message in messages:
        current = groups[-1] if groups else None
        if (
            current is not None
            and current['sender_id'] == message.sender_id
            and message.created_at - current['last_timestamp'] < window
        ):
            current['messages'].append(message)
            current['last_timestamp'] = message.created_at
            continue

        groups.append({
            'sender_id': message.sender_id,
            'messages': [message],
            'last_timestamp': message.created_at,
        })
    return groups


def other_participant(conversation: Conversation, user: User) -> User:
    return conversation.tutor if conversation.student_id == user.id else conversation.student


def get_conversation_for_user(conversation_id: int, user: User, db: Session) -> Conversation:
    conversation = db.get(Conversation, conversation_id)
    if conversation is None or user.id not in (conversation.student_id, conversation.tutor_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Conversation not found.')
    return conversation


def find_or_create_conversation(student_id: int, tutor_user_id: int, db: Session) -> tuple[Conversation, bool]:
    """Return the conversation between the two users, creating it if needed."""
    conversation = db.query(Conversation).filter(
        Conversation.student_id == student_id,
        Conversation.tutor_id == tutor_user_id,
    ).first()
    if conversation is not None:
        return conversation, False

    conversation = Conversation(student_id=student_id, tutor_id=tutor_user_id, last_message_at=datetime.now())
    db.add(conversation)
    try:
        db.commit()
    except IntegrityError:
        # Another request created the same pair first.
        db.rollback()
        conversation = db.query(Conversation).filter(
            Conversation.student_id == student_id,
            Conversation.tutor_id == tutor_user_id,
        ).one()
        return conversation, False

    db.refresh(conversation)
    return conversation, True


def add_message(
    conversation: Conversation,
    sender: User,
    content: str,
    db: Session,
    attachment_url: str | None = None,
) -> Message:
    now = datetime.now()
    message = Message(
        conversation_id=conversation.id,
        sender_id=sender.id,
        content=content,
        attachment_url=attachment_url,
        read=False,
        created_at=now,
    )
    db.add(message)
    conversation.last_message_at = now
    db.commit()
    db.refresh(message)
    return message


def reject_admin(user: User) -> None:
    if user.role == 'admin':
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Admins cannot use messaging.')


@router.post('/tutor/{tutor_id}', response_model=ConversationSummaryResponse)
def start_conversation_with_tutor(
    tutor_id: int,
    response: Response,
    data: StartConversationRequest | None = None,
    current_user: User = Depends(require_student),
    db: Session = Depends(get_db),
):
    tutor = db.get(TutorProfile, tutor_id)
    if tutor is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Tutor not found.')

    try:
        conversation, created = find_or_create_conversation(current_user.id, tutor.user_id, db)
        last_message = None
        if created and data is not None and data.message:
            last_message = add_message(conversation, current_user, data.message, db)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    if created:
        response.status_code = status.HTTP_201_CREATED
        logger.info('Student %s started conversation %s with tutor %s', current_user.id, conversation.id, tutor.id)
    else:
        last_message = db.query(Message).filter(Message.conversation_id == conversation.id).order_by(
            Message.created_at.desc(), Message.id.desc(),
        ).first()

    return ConversationSummaryResponse(
        id=conversation.id,
        student_id=conversation.student_id,
        tutor_id=conversation.tutor_id,
        other_user=ParticipantResponse.model_validate(conversation.tutor),
        last_message=ChatMessageResponse.model_validate(last_message) if last_message else None,
        unread_count=0,
        last_message_at=conversation.last_message_at,
        created_at=conversation.created_at,
    )


@router.get('', response_model=list[ConversationSummaryResponse])
def list_conversations(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    reject_admin(current_user)

    conversations = db.query(Conversation).filter(
        or_(Conversation.student_id == current_user.id, Conversation.tutor_id == current_user.id),
    ).order_by(Conversation.last_message_at.desc(), Conversation.id.desc()).all()

    unread_counts = dict(
        db.query(Message.conversation_id, func.count(Message.id)).filter(
            Message.conversation_id.in_([conversation.id for conversation in conversations]),
            Message.sender_id != current_user.id,
            Message.read.is_(False),
        ).group_by(Message.conversation_id).all()
    ) if conversations else {}

    results = []
    for conversation in conversations:
        last_message = conversation.messages[-1] if conversation.messages else None
        results.append(ConversationSummaryResponse(
            id=conversation.id,
            student_id=conversation.student_id,
            tutor_id=conversation.tutor_id,
            other_user=ParticipantResponse.model_validate(other_participant(conversation, current_user)),
            last_message=ChatMessageResponse.model_validate(last_message) if last_message else None,
            unread_count=unread_counts.get(conversation.id, 0),
            last_message_at=conversation.last_message_at,
            created_at=conversation.created_at,
        ))
    return results


@router.get('/{conversation_id}', response_model=ConversationDetailResponse)
def get_conversation(
    conversation_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    conversation = get_conversation_for_user(conversation_id, current_user, db)

    try:
        db.query(Message).filter(
            Message.conversation_id == conversation.id,
            Message.sender_id != current_user.id,
            Message.read.is_(False),
        ).update({Message.read: True}, synchronize_session=False)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    db.refresh(conversation)
    messages = list(conversation.messages)
    return ConversationDetailResponse(
        id=conversation.id,
        student_id=conversation.student_id,
        tutor_id=conversation.tutor_id,
        other_user=ParticipantResponse.model_validate(other_participant(conversation, current_user)),
        messages=[ChatMessageResponse.model_validate(message) for message in messages],
        message_groups=[
            MessageGroupResponse(
                sender_id=group['sender_id'],
                messages=[ChatMessageResponse.model_validate(message) for message in group['messages']],
                last_timestamp=group['last_timestamp'],
            )
            for group in group_messages(messages)
        ],
        last_message_at=conversation.last_message_at,
    )


@router.post('/{conversation_id}/messages', response_model=ChatMessageResponse, status_code=status.HTTP_201_CREATED)
def send_message(
    conversation_id: int,
    data: MessageCreateRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    conversation = get_conversation_for_user(conversation_id, current_user, db)
    try:
        return add_message(conversation, current_user, data.content, db, attachment_url=data.attachment_url)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.patch('/{conversation_id}/messages/{message_id}/read', response_model=ChatMessageResponse)
def mark_message_read(
    conversation_id: int,
    message_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    conversation = get_conversation_for_user(conversation_id, current_user, db)
    message = db.get(Message, message_id)
    if message is None or message.conversation_id != conversation.id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Message not found.')

    if message.sender_id == current_user.id or message.read:
        return message

    try:
        message.read = True
        db.commit()
        db.refresh(message)
        return message
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc
