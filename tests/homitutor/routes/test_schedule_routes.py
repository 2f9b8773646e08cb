import os
from datetime import date, time, timedelta

import pytest
from fastapi import HTTPException
from pydantic import ValidationError

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from homitutor.models.schedule import TeachingSchedule  # noqa: E402
from homitutor.routes.schedule_routes import (  # noqa: E402
    ScheduleCreateRequest,
    cancel_schedule,
    create_schedule,
    delete_schedule_permanently,
    list_available_slots,
    plan_recurring_slots,
)
from tests.factories import make_booking, make_catalog, make_course, make_schedule, make_tutor, make_user  # noqa: E402


def _next_weekday(weekday: int) -> date:
    today = date.today()
    return today + timedelta(days=(weekday - today.weekday()) % 7 or 7)


def test_single_schedule_requires_date_and_times() -> None:
    with pytest.raises(ValidationError):
        ScheduleCreateRequest(start_time=time(9, 0), end_time=time(10, 0))


def test_schedule_request_parses_date_fields_from_strings() -> None:
    single = ScheduleCreateRequest.model_validate({'date': '2026-05-04', 'start_time': '09:00', 'end_time': '10:00'})
    recurring = ScheduleCreateRequest.model_validate({
        'is_recurring': True,
        'start_date': '2026-05-01',
        'end_date': '2026-05-31',
        'repeat_days': ['friday'],
        'start_time': '09:00',
        'end_time': '10:00',
    })

    assert single.date == date(2026, 5, 4)
    assert single.start_time == time(9, 0)
    assert recurring.start_date == date(2026, 5, 1)
    assert recurring.end_date == date(2026, 5, 31)
    assert recurring.date is None


def test_schedule_rejects_end_before_start() -> None:
    with pytest.raises(ValidationError):
        ScheduleCreateRequest(date=date(2026, 5, 4), start_time=time(10, 0), end_time=time(9, 0))


def test_recurring_schedule_rejects_range_over_180_days() -> None:
    with pytest.raises(ValidationError):
        ScheduleCreateRequest(
            is_recurring=True,
            start_date=date(2026, 1, 1),
            end_date=date(2026, 7, 1),
            repeat_days=['monday'],
            start_time=time(9, 0),
            end_time=time(10, 0),
        )


def test_recurring_schedule_rejects_unknown_day_name() -> None:
    with pytest.raises(ValidationError):
        ScheduleCreateRequest(
            is_recurring=True,
            start_date=date(2026, 1, 1),
            end_date=date(2026, 1, 31),
            repeat_schedule={'funday': [{'start_time': '09:00', 'end_time': '10:00'}]},
        )


def test_recurring_schedule_accepts_repeat_days_with_shared_times() -> None:
    request = ScheduleCreateRequest(
        is_recurring=True,
        start_date=date(2026, 1, 1),
        end_date=date(2026, 1, 31),
        repeat_days=['Monday', 'wednesday'],
        start_time=time(9, 0),
        end_time=time(10, 30),
    )

    assert request.slots_by_weekday() == {
        'monday': [(time(9, 0), time(10, 30))],
        'wednesday': [(time(9, 0), time(10, 30))],
    }


def test_plan_recurring_slots_expands_weekdays_across_range() -> None:
    # 2026-01-05 is a Monday.
    planned, skipped = plan_recurring_slots(
        date(2026, 1, 5),
        date(2026, 1, 18),
        {'monday': [(time(9, 0), time(10, 0))], 'friday': [(time(14, 0), time(15, 0))]},
        {},
    )

    assert skipped == 0
    assert planned == [
        (date(2026, 1, 5), time(9, 0), time(10, 0)),
        (date(2026, 1, 9), time(14, 0), time(15, 0)),
        (date(2026, 1, 12), time(9, 0), time(10, 0)),
        (date(2026, 1, 16), time(14, 0), time(15, 0)),
    ]


def test_plan_recurring_slots_skips_overlaps_with_existing_and_planned() -> None:
    planned, skipped = plan_recurring_slots(
        date(2026, 1, 5),
        date(2026, 1, 12),
        {'monday': [(time(9, 0), time(10, 0)), (time(9, 30), time(11, 0))]},
        {date(2026, 1, 12): [(time(8, 0), time(9, 15))]},
    )

    assert planned == [
        (date(2026, 1, 5), time(9, 0), time(10, 0)),
        (date(2026, 1, 12), time(9, 30), time(11, 0)),
    ]
    assert skipped == 2


def test_plan_recurring_slots_allows_back_to_back_slots() -> None:
    planned, skipped = plan_recurring_slots(
        date(2026, 1, 5),
        date(2026, 1, 5),
        {'monday': [(time(10, 0), time(11, 0))]},
        {date(2026, 1, 5): [(time(9, 0), time(10, 0))]},
    )

    assert len(planned) == 1
    assert skipped == 0


def test_create_schedule_rejects_overlapping_single_slot(db) -> None:
    tutor = make_tutor(db)
    day = date.today() + timedelta(days=3)
    make_schedule(db, tutor, day=day, start=time(9, 0), end=time(11, 0))

    with pytest.raises(HTTPException) as exception_info:
        create_schedule(
            ScheduleCreateRequest(date=day, start_time=time(10, 0), end_time=time(12, 0)),
            current_user=tutor.user,
            db=db,
        )

    assert exception_info.value.status_code == 409


def test_create_schedule_rejects_past_dates(db) -> None:
    tutor = make_tutor(db)

    with pytest.raises(HTTPException) as exception_info:
        create_schedule(
            ScheduleCreateRequest(
                date=date.today() - timedelta(days=1),
                start_time=time(9, 0),
                end_time=time(10, 0),
            ),
            current_user=tutor.user,
            db=db,
        )

    assert exception_info.value.status_code == 400


def test_create_schedule_rejects_course_of_another_tutor(db) -> None:
    tutor = make_tutor(db)
    other = make_tutor(db, 'other@example.com')
    subject, level = make_catalog(db)
    course = make_course(db, other, subject, level)

    with pytest.raises(HTTPException) as exception_info:
        create_schedule(
            ScheduleCreateRequest(
                course_id=course.id,
                date=date.today() + timedelta(days=1),
                start_time=time(9, 0),
                end_time=time(10, 0),
            ),
            current_user=tutor.user,
            db=db,
        )

    assert exception_info.value.status_code == 404


def test_create_recurring_schedule_reports_created_and_skipped(db) -> None:
    tutor = make_tutor(db)
    first_monday = _next_weekday(0)
    make_schedule(db, tutor, day=first_monday, start=time(9, 0), end=time(10, 0))

    result = create_schedule(
        ScheduleCreateRequest(
            is_recurring=True,
            start_date=first_monday,
            end_date=first_monday + timedelta(days=13),
            repeat_schedule={'monday': [{'start_time': '09:00', 'end_time': '10:00'}]},
        ),
        current_user=tutor.user,
        db=db,
    )

    assert result.total_created == 1
    assert result.skipped == 1
    assert result.message == '1 schedules created. 1 skipped due to conflicts.'
    assert db.query(TeachingSchedule).filter(TeachingSchedule.is_recurring.is_(True)).count() == 1


def test_cancel_schedule_rejects_booked_slot(db) -> None:
    tutor = make_tutor(db)
    schedule = make_schedule(db, tutor, status='booked')

    with pytest.raises(HTTPException) as exception_info:
        cancel_schedule(schedule.id, current_user=tutor.user, db=db)

    assert exception_info.value.status_code == 400


def test_cancel_schedule_rejects_other_tutors_slot(db) -> None:
    tutor = make_tutor(db)
    other = make_tutor(db, 'other@example.com')
    schedule = make_schedule(db, other)

    with pytest.raises(HTTPException) as exception_info:
        cancel_schedule(schedule.id, current_user=tutor.user, db=db)

    assert exception_info.value.status_code == 404


def test_delete_schedule_permanently_requires_cancelled_slot(db) -> None:
    tutor = make_tutor(db)
    schedule = make_schedule(db, tutor)

    with pytest.raises(HTTPException) as exception_info:
        delete_schedule_permanently(schedule.id, current_user=tutor.user, db=db)
    cancel_schedule(schedule.id, current_user=tutor.user, db=db)
    delete_schedule_permanently(schedule.id, current_user=tutor.user, db=db)

    assert exception_info.value.status_code == 404
    assert db.get(TeachingSchedule, schedule.id) is None


def test_list_available_slots_hides_slots_taken_by_active_sessions(db) -> None:
    tutor = make_tutor(db)
    subject, level = make_catalog(db)
    course = make_course(db, tutor, subject, level)
    student = make_user(db, 'student@example.com')
    day = date.today() + timedelta(days=2)
    taken = make_schedule(db, tutor, day=day, start=time(9, 0), end=time(11, 0))
    free = make_schedule(db, tutor, day=day, start=time(14, 0), end=time(16, 0))
    make_schedule(db, tutor, day=day, start=time(18, 0), end=time(19, 0), status='cancelled')
    make_booking(db, student, tutor, course, taken)

    result = list_available_slots(tutor.id, course_id=None, start_date=None, end_date=None, db=db)

    assert result == [{
        'date': day,
        'time_slots': [{'id': free.id, 'start_time': time(14, 0), 'end_time': time(16, 0)}],
    }]


def test_list_available_slots_requires_known_tutor(db) -> None:
    with pytest.raises(HTTPException) as exception_info:
        list_available_slots(404, course_id=None, start_date=None, end_date=None, db=db)

    assert exception_info.value.status_code == 404
