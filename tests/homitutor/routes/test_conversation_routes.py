import os
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from fastapi import HTTPException, Response
from pydantic import ValidationError

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from homitutor.models.conversation import Conversation  # noqa: E402
from homitutor.routes.conversation_routes import (  # noqa: E402
    MessageCreateRequest,
    StartConversationRequest,
    get_conversation,
    group_messages,
    list_conversations,
    mark_message_read,
    send_message,
    start_conversation_with_tutor,
)
from homitutor.routes.message_routes import DirectMessageRequest, send_direct_message  # noqa: E402
from tests.factories import make_tutor, make_user  # noqa: E402


def _message(sender_id: int, minute: int, second: int = 0):
    return SimpleNamespace(sender_id=sender_id, created_at=datetime(2026, 3, 2, 9, minute, second))


def test_group_messages_merges_consecutive_messages_within_window() -> None:
    messages = [_message(1, 0), _message(1, 3), _message(1, 7), _message(2, 8), _message(1, 9)]

    groups = group_messages(messages)

    assert [(group['sender_id'], len(group['messages'])) for group in groups] == [(1, 3), (2, 1), (1, 1)]
    assert groups[0]['last_timestamp'] == datetime(2026, 3, 2, 9, 7)


def test_group_messages_splits_on_exact_window_gap() -> None:
    groups = group_messages([_message(1, 0), _message(1, 5)], window=timedelta(minutes=5))

    assert len(groups) == 2


def test_group_messages_handles_empty_list() -> None:
    assert group_messages([]) == []


@pytest.mark.parametrize('content', ['   ', 'x' * 2001])
def test_message_content_is_validated(content: str) -> None:
    with pytest.raises(ValidationError):
        MessageCreateRequest(content=content)


def test_start_conversation_creates_once(db) -> None:
    tutor = make_tutor(db)
    student = make_user(db, 'student@example.com')
    first_response = Response()
    second_response = Response()

    first = start_conversation_with_tutor(
        tutor.id,
        first_response,
        data=StartConversationRequest(message='Hello teacher'),
        current_user=student,
        db=db,
    )
    second = start_conversation_with_tutor(tutor.id, second_response, data=None, current_user=student, db=db)

    assert first_response.status_code == 201
    assert second_response.status_code == 200
    assert first.id == second.id
    assert first.tutor_id == tutor.user_id
    assert second.last_message.content == 'Hello teacher'
    assert db.query(Conversation).count() == 1


def test_list_conversations_reports_unread_counts(db) -> None:
    tutor = make_tutor(db)
    student = make_user(db, 'student@example.com')
    conversation = start_conversation_with_tutor(tutor.id, Response(), data=None, current_user=student, db=db)
    send_message(conversation.id, MessageCreateRequest(content='One'), current_user=student, db=db)
    send_message(conversation.id, MessageCreateRequest(content='Two'), current_user=student, db=db)

    tutor_view = list_conversations(current_user=tutor.user, db=db)
    student_view = list_conversations(current_user=student, db=db)

    assert tutor_view[0].unread_count == 2
    assert tutor_view[0].other_user.id == student.id
    assert tutor_view[0].last_message.content == 'Two'
    assert student_view[0].unread_count == 0


def test_get_conversation_marks_incoming_messages_read(db) -> None:
    tutor = make_tutor(db)
    student = make_user(db, 'student@example.com')
    conversation = start_conversation_with_tutor(tutor.id, Response(), data=None, current_user=student, db=db)
    send_message(conversation.id, MessageCreateRequest(content='Hi'), current_user=student, db=db)
    send_message(conversation.id, MessageCreateRequest(content='Are you free?'), current_user=student, db=db)

    detail = get_conversation(conversation.id, current_user=tutor.user, db=db)

    assert [message.read for message in detail.messages] == [True, True]
    assert len(detail.message_groups) == 1
    assert list_conversations(current_user=tutor.user, db=db)[0].unread_count == 0


def test_get_conversation_hides_other_users_threads(db) -> None:
    tutor = make_tutor(db)
    student = make_user(db, 'student@example.com')
    stranger = make_user(db, 'stranger@example.com')
    conversation = start_conversation_with_tutor(tutor.id, Response(), data=None, current_user=student, db=db)

    with pytest.raises(HTTPException) as exception_info:
        get_conversation(conversation.id, current_user=stranger, db=db)

    assert exception_info.value.status_code == 404


def test_mark_message_read_ignores_own_messages(db) -> None:
    tutor = make_tutor(db)
    student = make_user(db, 'student@example.com')
    conversation = start_conversation_with_tutor(tutor.id, Response(), data=None, current_user=student, db=db)
    message = send_message(conversation.id, MessageCreateRequest(content='Hi'), current_user=student, db=db)

    own = mark_message_read(conversation.id, message.id, current_user=student, db=db)
    assert own.read is False

    theirs = mark_message_read(conversation.id, message.id, current_user=tutor.user, db=db)
    assert theirs.read is True


def test_admin_cannot_list_conversations(db) -> None:
    admin = make_user(db, 'admin@example.com', role='admin')

    with pytest.raises(HTTPException) as exception_info:
        list_conversations(current_user=admin, db=db)

    assert exception_info.value.status_code == 403


def test_direct_message_reuses_conversation_from_tutor_side(db) -> None:
    tutor = make_tutor(db)
    student = make_user(db, 'student@example.com')

    first = send_direct_message(DirectMessageRequest(recipient_id=tutor.user_id, content='Hello'), current_user=student, db=db)
    reply = send_direct_message(DirectMessageRequest(recipient_id=student.id, content='Hi!'), current_user=tutor.user, db=db)

    assert first.conversation_id == reply.conversation_id
    assert reply.message.sender_id == tutor.user_id


def test_direct_message_rejects_same_role_recipient(db) -> None:
    student = make_user(db, 'student@example.com')
    classmate = make_user(db, 'classmate@example.com')

    with pytest.raises(HTTPException) as exception_info:
        send_direct_message(DirectMessageRequest(recipient_id=classmate.id, content='Hello'), current_user=student, db=db)

    assert exception_info.value.status_code == 400
    assert exception_info.value.detail == 'A student can only message a tutor.'
