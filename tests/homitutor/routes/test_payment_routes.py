import os
from datetime import datetime
from decimal import Decimal
from types import SimpleNamespace
from urllib.parse import parse_qsl, urlsplit

import pytest
from fastapi import HTTPException

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from homitutor.core import config  # noqa: E402
from homitutor.models.payment import Payment  # noqa: E402
from homitutor.routes import payment_routes  # noqa: E402
from homitutor.routes.payment_routes import (  # noqa: E402
    PaymentCreateRequest,
    approve_tutor_payout,
    build_vnpay_url,
    calculate_fee,
    create_payment,
    get_payment,
    list_payment_history,
    payment_callback,
    sign_vnpay_params,
    verify_vnpay_signature,
)
from tests.factories import make_booking, make_catalog, make_course, make_schedule, make_tutor, make_user  # noqa: E402

SECRET = 'TESTSECRET'


class _FakeRequest:
    def __init__(self, query_params=None, headers=None):
        self.query_params = query_params or {}
        self.headers = headers or {}
        self.client = SimpleNamespace(host='127.0.0.1')


@pytest.fixture
def vnpay_config(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, 'VNPAY_ENABLED', True)
    monkeypatch.setattr(config, 'VNPAY_HASH_SECRET', SECRET)
    monkeypatch.setattr(config, 'VNPAY_TMN_CODE', 'HOMITEST')
    monkeypatch.setattr(config, 'FRONTEND_BASE_URL', 'http://frontend.test')


@pytest.fixture
def booking(db):
    tutor = make_tutor(db)
    subject, level = make_catalog(db)
    course = make_course(db, tutor, subject, level, hourly_rate=Decimal('150000'))
    schedule = make_schedule(db, tutor)
    student = make_user(db, 'student@example.com')
    return make_booking(db, student, tutor, course, schedule)


def _signed_callback_params(txn_ref: str, response_code: str = '00') -> dict[str, str]:
    params = {
        'vnp_Amount': '30000000',
        'vnp_BankCode': 'NCB',
        'vnp_BankTranNo': 'VNP14123456',
        'vnp_CardType': 'ATM',
        'vnp_OrderInfo': 'Thanh toan buoi hoc',
        'vnp_ResponseCode': response_code,
        'vnp_TxnRef': txn_ref,
        'vnp_TransactionNo': '14123456',
        'vnp_PayDate': '20260302093000',
    }
    params['vnp_SecureHash'] = sign_vnpay_params(params, SECRET)
    return params


def test_calculate_fee_rounds_half_up_to_cents() -> None:
    fee, net_amount = calculate_fee(Decimal('100000.05'), Decimal('0.10'))

    assert fee == Decimal('10000.01')
    assert net_amount == Decimal('90000.04')


def test_calculate_fee_uses_configured_rate(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, 'PLATFORM_FEE_RATE', '0.15')

    fee, net_amount = calculate_fee(Decimal('200000'))

    assert fee == Decimal('30000.00')
    assert net_amount == Decimal('170000.00')


def test_sign_vnpay_params_is_independent_of_key_order() -> None:
    first = sign_vnpay_params({'vnp_B': '2', 'vnp_A': 'x y'}, SECRET)
    second = sign_vnpay_params({'vnp_A': 'x y', 'vnp_B': '2'}, SECRET)

    assert first == second
    assert len(first) == 128


def test_verify_vnpay_signature_accepts_signed_params() -> None:
    params = _signed_callback_params('HT1')
    params['vnp_SecureHashType'] = 'HmacSHA512'

    assert verify_vnpay_signature(params, SECRET) is True


def test_verify_vnpay_signature_rejects_tampering() -> None:
    params = _signed_callback_params('HT1')
    params['vnp_Amount'] = '1'

    assert verify_vnpay_signature(params, SECRET) is False
    assert verify_vnpay_signature(_signed_callback_params('HT1'), 'OTHER') is False
    assert verify_vnpay_signature({'vnp_TxnRef': 'HT1'}, SECRET) is False


def test_build_vnpay_url_appends_verifiable_signature() -> None:
    url = build_vnpay_url({'vnp_TxnRef': 'HT1', 'vnp_OrderInfo': 'Thanh toan'}, SECRET, 'https://pay.test/vpcpay.html')

    parts = urlsplit(url)
    params = dict(parse_qsl(parts.query))
    assert f'{parts.scheme}://{parts.netloc}{parts.path}' == 'https://pay.test/vpcpay.html'
    assert verify_vnpay_signature(params, SECRET) is True


def test_create_payment_returns_signed_vnpay_url(db, booking, vnpay_config) -> None:
    result = create_payment(
        PaymentCreateRequest(booking_id=booking.id),
        _FakeRequest(),
        current_user=booking.student,
        db=db,
    )

    params = dict(parse_qsl(urlsplit(result.payment_url).query))
    assert result.payment.status == 'pending'
    assert result.payment.amount == 300000.0
    assert result.payment.fee == 30000.0
    assert result.payment.net_amount == 270000.0
    assert result.payment.payee_id == booking.tutor.user_id
    assert params['vnp_Amount'] == '30000000'
    assert params['vnp_TmnCode'] == 'HOMITEST'
    assert params['vnp_TxnRef'] == result.payment.transaction_id
    assert verify_vnpay_signature(params, SECRET) is True


def test_create_payment_reuses_payment_with_new_transaction(db, booking, vnpay_config) -> None:
    first = create_payment(PaymentCreateRequest(booking_id=booking.id), _FakeRequest(), current_user=booking.student, db=db)
    second = create_payment(PaymentCreateRequest(booking_id=booking.id), _FakeRequest(), current_user=booking.student, db=db)

    assert first.payment.id == second.payment.id
    assert first.payment.transaction_id != second.payment.transaction_id
    assert db.query(Payment).count() == 1


def test_create_payment_requires_vnpay_configuration(db, booking, vnpay_config, monkeypatch) -> None:
    monkeypatch.setattr(config, 'VNPAY_HASH_SECRET', '')

    with pytest.raises(HTTPException) as exception_info:
        create_payment(PaymentCreateRequest(booking_id=booking.id), _FakeRequest(), current_user=booking.student, db=db)

    assert exception_info.value.status_code == 503


def test_create_payment_rejects_other_students_booking(db, booking, vnpay_config) -> None:
    stranger = make_user(db, 'stranger@example.com')

    with pytest.raises(HTTPException) as exception_info:
        create_payment(PaymentCreateRequest(booking_id=booking.id), _FakeRequest(), current_user=stranger, db=db)

    assert exception_info.value.status_code == 404


def test_create_payment_rejects_cancelled_booking(db, booking, vnpay_config) -> None:
    booking.status = 'cancelled'
    db.commit()

    with pytest.raises(HTTPException) as exception_info:
        create_payment(PaymentCreateRequest(booking_id=booking.id), _FakeRequest(), current_user=booking.student, db=db)

    assert exception_info.value.status_code == 400


def test_successful_callback_completes_payment_and_confirms_booking(db, booking, vnpay_config) -> None:
    created = create_payment(PaymentCreateRequest(booking_id=booking.id), _FakeRequest(), current_user=booking.student, db=db)

    response = payment_callback(_FakeRequest(_signed_callback_params(created.payment.transaction_id)), db=db)
    payment = db.get(Payment, created.payment.id)
    db.refresh(booking)

    assert response.status_code == 302
    assert response.headers['location'] == f'http://frontend.test/payment/success?id={payment.id}'
    assert payment.status == 'completed'
    assert payment.payment_data['vnp_TransactionNo'] == '14123456'
    assert payment.payment_data['vnp_TxnRef'] == created.payment.transaction_id
    assert payment.payment_data['vnp_OrderInfo'] == 'Thanh toan buoi hoc'
    assert payment.payment_data['vnp_CardType'] == 'ATM'
    assert 'vnp_SecureHash' not in payment.payment_data
    assert booking.status == 'confirmed'
    assert [session.status for session in booking.sessions] == ['confirmed']


def test_failed_callback_marks_payment_failed(db, booking, vnpay_config) -> None:
    created = create_payment(PaymentCreateRequest(booking_id=booking.id), _FakeRequest(), current_user=booking.student, db=db)

    response = payment_callback(_FakeRequest(_signed_callback_params(created.payment.transaction_id, '24')), db=db)
    db.refresh(booking)

    assert response.headers['location'].startswith('http://frontend.test/payment/failed')
    assert db.get(Payment, created.payment.id).status == 'failed'
    assert booking.status == 'pending'


def test_callback_rejects_bad_signature(db, booking, vnpay_config) -> None:
    params = _signed_callback_params('HT1')
    params['vnp_SecureHash'] = '0' * 128

    with pytest.raises(HTTPException) as exception_info:
        payment_callback(_FakeRequest(params), db=db)

    assert exception_info.value.status_code == 400
    assert exception_info.value.detail == 'Invalid payment signature.'


def test_callback_rejects_unknown_transaction(db, vnpay_config) -> None:
    with pytest.raises(HTTPException) as exception_info:
        payment_callback(_FakeRequest(_signed_callback_params('HT-missing')), db=db)

    assert exception_info.value.status_code == 404


def test_payment_visibility_is_limited_to_parties_and_admin(db, booking, vnpay_config) -> None:
    created = create_payment(PaymentCreateRequest(booking_id=booking.id), _FakeRequest(), current_user=booking.student, db=db)
    admin = make_user(db, 'admin@example.com', role='admin')
    stranger = make_user(db, 'stranger@example.com')

    assert get_payment(created.payment.id, current_user=booking.tutor.user, db=db).id == created.payment.id
    assert get_payment(created.payment.id, current_user=admin, db=db).id == created.payment.id
    with pytest.raises(HTTPException) as exception_info:
        get_payment(created.payment.id, current_user=stranger, db=db)

    assert exception_info.value.status_code == 403


def test_payment_history_shows_payee_side_for_tutors(db, booking, vnpay_config) -> None:
    create_payment(PaymentCreateRequest(booking_id=booking.id), _FakeRequest(), current_user=booking.student, db=db)

    tutor_history = list_payment_history(status_filter='all', current_user=booking.tutor.user, db=db)
    student_history = list_payment_history(status_filter='pending', current_user=booking.student, db=db)

    assert len(tutor_history) == 1
    assert len(student_history) == 1


def test_payout_requires_completed_booking(db, booking, vnpay_config) -> None:
    created = create_payment(PaymentCreateRequest(booking_id=booking.id), _FakeRequest(), current_user=booking.student, db=db)
    payment_callback(_FakeRequest(_signed_callback_params(created.payment.transaction_id)), db=db)
    admin = make_user(db, 'admin@example.com', role='admin')

    with pytest.raises(HTTPException) as exception_info:
        approve_tutor_payout(created.payment.id, current_user=admin, db=db)

    booking.status = 'completed'
    db.commit()
    paid = approve_tutor_payout(created.payment.id, current_user=admin, db=db)

    assert exception_info.value.status_code == 400
    assert paid.status == 'tutor_paid'


def test_replayed_callback_does_not_reopen_paid_out_payment(db, booking, vnpay_config) -> None:
    created = create_payment(PaymentCreateRequest(booking_id=booking.id), _FakeRequest(), current_user=booking.student, db=db)
    params = _signed_callback_params(created.payment.transaction_id)
    payment_callback(_FakeRequest(params), db=db)
    booking.status = 'completed'
    db.commit()
    admin = make_user(db, 'admin@example.com', role='admin')
    approve_tutor_payout(created.payment.id, current_user=admin, db=db)

    response = payment_callback(_FakeRequest(params), db=db)
    payment = db.get(Payment, created.payment.id)

    assert response.headers['location'] == f'http://frontend.test/payment/success?id={payment.id}'
    assert payment.status == 'tutor_paid'
    with pytest.raises(HTTPException) as exception_info:
        approve_tutor_payout(created.payment.id, current_user=admin, db=db)
    assert exception_info.value.status_code == 400


def test_stale_failure_callback_keeps_completed_payment(db, booking, vnpay_config) -> None:
    created = create_payment(PaymentCreateRequest(booking_id=booking.id), _FakeRequest(), current_user=booking.student, db=db)
    payment_callback(_FakeRequest(_signed_callback_params(created.payment.transaction_id)), db=db)

    response = payment_callback(_FakeRequest(_signed_callback_params(created.payment.transaction_id, '24')), db=db)
    payment = db.get(Payment, created.payment.id)

    assert response.headers['location'].startswith('http://frontend.test/payment/success')
    assert payment.status == 'completed'
    assert payment.payment_data['vnp_ResponseCode'] == '00'


def test_new_transaction_ids_are_unique() -> None:
    now = datetime(2026, 3, 2, 9, 30)

    first = payment_routes.new_transaction_id(7, now=now)
    second = payment_routes.new_transaction_id(7, now=now)

    assert first.startswith('HT7T20260302093000')
    assert first != second
