from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from homitutor.auth.dependencies import get_current_user
from homitutor.database import get_db
from homitutor.models.user import User
from homitutor.routes.common import database_unavailable
from homitutor.routes.conversation_routes import (
    ChatMessageResponse,
    MessageCreateRequest,
    add_message,
    find_or_create_conversation,
    reject_admin,
)

router = APIRouter(tags=['messages'])

# Which role each sender role may write to.
ALLOWED_RECIPIENT_ROLES = {
    'student': 'tutor',
    'tutor': 'student',
}


class DirectMessageRequest(MessageCreateRequest):
    recipient_id: int


class DirectMessageResponse(BaseModel):
    conversation_id: int
    message: ChatMessageResponse


@router.post('', response_model=DirectMessageResponse, status_code=status.HTTP_201_CREATED)
def send_direct_message(
    data: DirectMessageRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    reject_admin(current_user)

    recipient = db.get(User, data.recipient_id)
    if recipient is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Recipient not found.')

    expected_role = ALLOWED_RECIPIENT_ROLES.get(current_user.role)
    if recipient.role != expected_role:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f'A {current_user.role} can only message a {expected_role}.',
        )

    if current_user.role == 'student':
        student_id, tutor_user_id = current_user.id, recipient.id
    else:
        student_id, tutor_user_id = recipient.id, current_user.id

    try:
        conversation, _ = find_or_create_conversation(student_id, tutor_user_id, db)
        message = add_message(conversation, current_user, data.content, db, attachment_url=data.attachment_url)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return DirectMessageResponse(
        conversation_id=conversation.id,
        message=ChatMessageResponse.model_validate(message),
    )
