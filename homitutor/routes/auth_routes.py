import logging
import re

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.orm import Session

from homitutor.auth import jwt_handler, otp
from homitutor.auth.dependencies import get_current_user
from homitutor.auth.passwords import hash_secret, verify_secret
from homitutor.core import config
from homitutor.core.ratelimit import limit_auth_requests
from homitutor.database import get_db
from homitutor.models.user import User
from homitutor.routes.common import MessageResponse, UserResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=['auth'])

EMAIL_PATTERN = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')
OTP_PATTERN = re.compile(r'^\d{6}$')
SELF_REGISTER_ROLES = ('student', 'tutor')


def normalize_email(value: str) -> str:
    normalized = value.strip().lower()
    if not EMAIL_PATTERN.match(normalized):
        raise ValueError('Please enter a valid email.')
    return normalized


class RegisterRequest(BaseModel):
    username: str = Field(min_length=3)
    email: str
    password: str = Field(min_length=6)
    first_name: str = Field(min_length=2)
    last_name: str = Field(min_length=2)
    role: str = 'student'

    @field_validator('email')
    @classmethod
    def validate_email(cls, value: str) -> str:
        return normalize_email(value)

    @field_validator('username', 'first_name', 'last_name')
    @classmethod
    def strip_names(cls, value: str) -> str:
        return value.strip()

    @field_validator('role')
    @classmethod
    def validate_role(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in SELF_REGISTER_ROLES:
            raise ValueError('Role must be student or tutor.')
        return normalized


class LoginRequest(BaseModel):
    email: str
    password: str = Field(min_length=1)

    @field_validator('email')
    @classmethod
    def validate_email(cls, value: str) -> str:
        return normalize_email(value)


class SendOtpRequest(BaseModel):
    email: str

    @field_validator('email')
    @classmethod
    def validate_email(cls, value: str) -> str:
        return normalize_email(value)


class VerifyOtpRequest(SendOtpRequest):
    otp: str

    @field_validator('otp')
    @classmethod
    def validate_otp(cls, value: str) -> str:
        normalized = value.strip()
        if not OTP_PATTERN.match(normalized):
            raise ValueError('OTP must be 6 digits.')
        return normalized


class RegisterResponse(BaseModel):
    success: bool
    message: str


class TokenResponse(BaseModel):
    user: UserResponse
    token: str
    token_type: str = 'bearer'


class CurrentUserResponse(BaseModel):
    user: UserResponse
    message: str


class OtpStatusResponse(BaseModel):
    has_active_otp: bool
    expires_at: str | None = None
    can_resend: bool
    seconds_until_resend: int


def set_auth_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        key=config.AUTH_COOKIE_NAME,
        value=token,
        httponly=True,
        secure=config.is_production(),
        samesite='lax',
        max_age=config.JWT_EXPIRES_MINUTES * 60,
    )


def issue_otp_quietly(email: str, db: Session) -> str | None:
    """Send a fresh OTP, returning a user-facing note when it could not be sent."""
    try:
        otp.generate_and_send_otp(email, db)
    except otp.OtpCooldownError as exc:
        return str(exc)
    except otp.OtpDeliveryError:
        return 'We could not send a verification code. Please use the resend option.'
    return None


@router.post(
    '/register',
    response_model=RegisterResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(limit_auth_requests)],
)
def register(data: RegisterRequest, db: Session = Depends(get_db)):
    existing_user = db.query(User).filter(User.email == data.email).first()
    if existing_user:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail='Email is already in use.')

    user = User(
        username=data.username,
        email=data.email,
        password=hash_secret(data.password),
        first_name=data.first_name,
        last_name=data.last_name,
        role=data.role,
        is_verified=False,
        is_active=True,
    )
    db.add(user)
    db.commit()
    logger.info('Registered %s account %s', user.role, user.id)

    otp_note = issue_otp_quietly(user.email, db)
    if otp_note:
        return RegisterResponse(
            success=True,
            message=f'Account created, but no verification code was sent. {otp_note}',
        )
    return RegisterResponse(success=True, message='A verification code has been sent to your email.')


@router.post('/login', response_model=TokenResponse, dependencies=[Depends(limit_auth_requests)])
def login(data: LoginRequest, response: Response, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.email == data.email).first()
    if user is None or not verify_secret(data.password, user.password):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail='Invalid email or password.')

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail='Account deactivated. Contact an administrator for details.',
        )

    if not user.is_verified:
        otp_note = issue_otp_quietly(user.email, db)
        detail = 'Account is not verified.'
        detail += f' {otp_note}' if otp_note else ' A new verification code has been sent to your email.'
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)

    token = jwt_handler.create_access_token(user.id, user.role)
    set_auth_cookie(response, token)
    return TokenResponse(user=UserResponse.model_validate(user), token=token)


@router.post('/logout', response_model=MessageResponse)
def logout(response: Response):
    response.delete_cookie(config.AUTH_COOKIE_NAME)
    return MessageResponse(message='Logged out.')


@router.get('/me', response_model=CurrentUserResponse)
def me(current_user: User = Depends(get_current_user)):
    message = 'OK' if current_user.is_verified else 'Email address is not verified.'
    return CurrentUserResponse(user=UserResponse.model_validate(current_user), message=message)


@router.post('/verify-otp', response_model=TokenResponse, dependencies=[Depends(limit_auth_requests)])
def verify_otp(data: VerifyOtpRequest, response: Response, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.email == data.email).first()
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='User not found.')

    if not otp.verify_otp(data.email, data.otp, db):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Invalid or expired verification code.')

    user.is_verified = True
    db.commit()
    db.refresh(user)
    logger.info('Verified email for user %s', user.id)

    token = jwt_handler.create_access_token(user.id, user.role)
    set_auth_cookie(response, token)
    return TokenResponse(user=UserResponse.model_validate(user), token=token)


@router.post('/send-otp', response_model=MessageResponse, dependencies=[Depends(limit_auth_requests)])
def send_otp(data: SendOtpRequest, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.email == data.email).first()
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='User not found.')
    if user.is_verified:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Account is already verified.')

    try:
        otp.generate_and_send_otp(data.email, db)
    except otp.OtpCooldownError as exc:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=str(exc),
            headers={'Retry-After': str(exc.seconds_remaining)},
        ) from exc
    except otp.OtpDeliveryError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail='Could not send the verification email.',
        ) from exc

    return MessageResponse(message='A verification code has been sent to your email.')


@router.get('/otp-status', response_model=OtpStatusResponse)
def otp_status(email: str = Query(...), db: Session = Depends(get_db)):
    try:
        normalized_email = normalize_email(email)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    current = otp.get_otp_status(normalized_email, db)
    return OtpStatusResponse(
        has_active_otp=current.has_active_otp,
        expires_at=current.expires_at.isoformat() if current.expires_at else None,
        can_resend=current.can_resend,
        seconds_until_resend=current.seconds_until_resend,
    )
