import hashlib
import hmac
import logging
import secrets
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from urllib.parse import quote_plus, urlencode

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from homitutor.auth.dependencies import get_current_user, require_admin, require_student
from homitutor.core import config
from homitutor.core.ratelimit import get_client_ip
from homitutor.database import get_db
from homitutor.models.booking import BookingRequest
from homitutor.models.payment import PAYMENT_METHODS, PAYMENT_STATUSES, Payment
from homitutor.models.user import User
from homitutor.routes.booking_routes import apply_status_cascade
from homitutor.routes.common import database_unavailable

logger = logging.getLogger(__name__)

router = APIRouter(tags=['payments'])

VNPAY_VERSION = '2.1.0'
VNPAY_SUCCESS_CODE = '00'
VNPAY_SIGNATURE_FIELDS = ('vnp_SecureHash', 'vnp_SecureHashType')
SETTLED_PAYMENT_STATUSES = ('completed', 'tutor_paid')
CENT = Decimal('0.01')


class PaymentCreateRequest(BaseModel):
    booking_id: int
    payment_method: str = 'vnpay'
    return_url: str | None = None

    @field_validator('payment_method')
    @classmethod
    def check_payment_method(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in PAYMENT_METHODS:
            raise ValueError(f'Payment method must be one of: {", ".join(PAYMENT_METHODS)}.')
        return normalized


class PaymentResponse(BaseModel):
    id: int
    request_id: int
    transaction_id: str | None = None
    amount: float
    fee: float
    net_amount: float
    payer_id: int
    payee_id: int
    status: str
    payment_method: str
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class PaymentCreateResponse(BaseModel):
    payment: PaymentResponse
    payment_url: str | None = None


# Amounts and signatures


def calculate_fee(amount: Decimal, rate: Decimal | None = None) -> tuple[Decimal, Decimal]:
    """Return (fee, net_amount) with the fee rounded half-up to cents."""
    rate = Decimal(config.PLATFORM_FEE_RATE) if rate is None else rate
    fee = (Decimal(amount) * rate).quantize(CENT, rounding=ROUND_HALF_UP)
    return fee, Decimal(amount) - fee


def new_transaction_id(booking_id: int, now: datetime | None = None) -> str:
    now = now or datetime.now()
    return f'HT{booking_id}T{now:%Y%m%d%H%M%S}{secrets.token_hex(3).upper()}'


def vnpay_query_string(params: dict[str, str]) -> str:
    return urlencode(sorted(params.items()), quote_via=quote_plus)


def sign_vnpay_params(params: dict[str, str], secret: str) -> str:
    message = vnpay_query_string(params)
    return hmac.new(secret.encode('utf-8'), message.encode('utf-8'), hashlib.sha512).hexdigest()


def build_vnpay_url(params: dict[str, str], secret: str, base_url: str) -> str:
    signature = sign_vnpay_params(params, secret)
    return f'{base_url}?{vnpay_query_string(params)}&vnp_SecureHash={signature}'


def verify_vnpay_signature(params: dict[str, str], secret: str) -> bool:
    provided = params.get('vnp_SecureHash', '')
    if not provided:
        return False

    signed_params = {
        key: value
        for key, value in params.items()
        if key.startswith('vnp_') and key not in VNPAY_SIGNATURE_FIELDS
    }
    expected = sign_vnpay_params(signed_params, secret)
    return hmac.compare_digest(provided.lower(), expected.lower())


def build_vnpay_params(payment: Payment, client_ip: str, return_url: str, now: datetime | None = None) -> dict[str, str]:
    now = now or datetime.now()
    return {
        'vnp_Version': VNPAY_VERSION,
        'vnp_Command': 'pay',
        'vnp_TmnCode': config.VNPAY_TMN_CODE,
        'vnp_Amount': str(int(Decimal(payment.amount) * 100)),
        'vnp_CurrCode': 'VND',
        'vnp_TxnRef': payment.transaction_id,
        'vnp_OrderInfo': f'Thanh toan dat lich {payment.request_id}',
        'vnp_OrderType': 'other',
        'vnp_Locale': 'vn',
        'vnp_ReturnUrl': return_url,
        'vnp_IpAddr': client_ip,
        'vnp_CreateDate': now.strftime('%Y%m%d%H%M%S'),
    }


def payment_result_url(payment_id: int, succeeded: bool) -> str:
    outcome = 'success' if succeeded else 'failed'
    return f'{config.FRONTEND_BASE_URL.rstrip("/")}/payment/{outcome}?id={payment_id}'


# Endpoints


@router.post('', response_model=PaymentCreateResponse, status_code=status.HTTP_201_CREATED)
def create_payment(
    data: PaymentCreateRequest,
    request: Request,
    current_user: User = Depends(require_student),
    db: Session = Depends(get_db),
):
    booking = db.get(BookingRequest, data.booking_id)
    if booking is None or booking.student_id != current_user.id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Booking not found.')

    if booking.status in ('cancelled', 'rejected'):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f'Cannot pay for a {booking.status} booking.',
        )

    payment = booking.payment
    if payment is not None and payment.status in ('completed', 'tutor_paid'):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='This booking has already been paid.')

    if data.payment_method == 'vnpay':
        if not config.VNPAY_ENABLED:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='VNPay payments are disabled.')
        if not config.VNPAY_HASH_SECRET or not config.VNPAY_TMN_CODE:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail='VNPay is not configured.',
            )

    amount = Decimal(booking.total_amount)
    fee, net_amount = calculate_fee(amount)

    try:
        if payment is None:
            payment = Payment(request_id=booking.id, payer_id=current_user.id, payee_id=booking.tutor.user_id)
            db.add(payment)

        payment.transaction_id = new_transaction_id(booking.id)
        payment.amount = amount
        payment.fee = fee
        payment.net_amount = net_amount
        payment.status = 'pending'
        payment.payment_method = data.payment_method
        db.commit()
        db.refresh(payment)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    payment_url = None
    if data.payment_method == 'vnpay':
        params = build_vnpay_params(payment, get_client_ip(request), data.return_url or config.VNPAY_RETURN_URL)
        payment_url = build_vnpay_url(params, config.VNPAY_HASH_SECRET, config.VNPAY_PAYMENT_URL)

    logger.info('Issued payment %s (%s) for booking %s', payment.id, payment.payment_method, booking.id)
    return PaymentCreateResponse(payment=PaymentResponse.model_validate(payment), payment_url=payment_url)


@router.get('/callback')
def payment_callback(request: Request, db: Session = Depends(get_db)):
    params = dict(request.query_params)
    response_code = params.get('vnp_ResponseCode')
    txn_ref = params.get('vnp_TxnRef')

    if not response_code or not txn_ref:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Invalid callback data.')

    if not verify_vnpay_signature(params, config.VNPAY_HASH_SECRET):
        logger.warning('Rejected VNPay callback with bad signature for %s', txn_ref)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Invalid payment signature.')

    payment = db.query(Payment).filter(Payment.transaction_id == txn_ref).first()
    if payment is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Payment not found.')

    if payment.status != 'pending':
        logger.info('Ignoring repeated VNPay callback for payment %s in status %s', payment.id, payment.status)
        return RedirectResponse(
            url=payment_result_url(payment.id, payment.status in SETTLED_PAYMENT_STATUSES),
            status_code=status.HTTP_302_FOUND,
        )

    succeeded = response_code == VNPAY_SUCCESS_CODE

    try:
        payment.status = 'completed' if succeeded else 'failed'
        payment.payment_data = {
            key: value for key, value in params.items()
            if key.startswith('vnp_') and key not in VNPAY_SIGNATURE_FIELDS
        }

        booking = payment.request
        if succeeded and booking.status == 'pending':
            booking.status = 'confirmed'
            apply_status_cascade(booking, 'confirmed')
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    logger.info('VNPay callback for payment %s: response code %s', payment.id, response_code)
    return RedirectResponse(url=payment_result_url(payment.id, succeeded), status_code=status.HTTP_302_FOUND)


@router.get('/user/history', response_model=list[PaymentResponse])
def list_payment_history(
    status_filter: str = Query(default='all', alias='status'),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if current_user.role == 'tutor':
        query = db.query(Payment).filter(Payment.payee_id == current_user.id)
    else:
        query = db.query(Payment).filter(Payment.payer_id == current_user.id)

    normalized = status_filter.strip().lower()
    if normalized != 'all':
        if normalized not in PAYMENT_STATUSES:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Invalid status filter.')
        query = query.filter(Payment.status == normalized)

    return query.order_by(Payment.created_at.desc(), Payment.id.desc()).all()


@router.get('/{payment_id}', response_model=PaymentResponse)
def get_payment(
    payment_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    payment = db.get(Payment, payment_id)
    if payment is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Payment not found.')

    if current_user.role != 'admin' and current_user.id not in (payment.payer_id, payment.payee_id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail='You do not have permission to view this payment.',
        )
    return payment


@router.patch('/admin/{payment_id}/approve', response_model=PaymentResponse)
def approve_tutor_payout(
    payment_id: int,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    payment = db.get(Payment, payment_id)
    if payment is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Payment not found.')

    if payment.status != 'completed':
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Only completed payments can be paid out.')
    if payment.request.status != 'completed':
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='The booking must be completed before paying the tutor.',
        )

    try:
        payment.status = 'tutor_paid'
        db.commit()
        db.refresh(payment)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    logger.info('Admin %s approved payout for payment %s', current_user.id, payment.id)
    return payment
