"""Email one-time passwords used to verify new accounts.

Codes are stored as bcrypt hashes and expire after ``OTP_EXPIRES_MINUTES``.
Issuing a code invalidates every earlier code for the same address, and a
new code can be requested at most once per ``OTP_RESEND_COOLDOWN_SECONDS``.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

import resend
from sqlalchemy.orm import Session

from homitutor.auth.passwords import hash_secret, verify_secret
from homitutor.core import config
from homitutor.models.user import EmailOtp

logger = logging.getLogger(__name__)

OTP_EMAIL_SUBJECT = 'Your HomiTutor verification code'


class OtpCooldownError(Exception):
    """Raised when a code was sent too recently to send another one."""

    def __init__(self, seconds_remaining: int):
        self.seconds_remaining = seconds_remaining
        super().__init__(f'A code was sent recently. Try again in {seconds_remaining} seconds.')


class OtpDeliveryError(Exception):
    """Raised when the verification email could not be sent."""


@dataclass
class OtpStatus:
    has_active_otp: bool
    expires_at: datetime | None
    can_resend: bool
    seconds_until_resend: int


def generate_otp() -> str:
    upper_bound = 10 ** config.OTP_LENGTH
    return str(secrets.randbelow(upper_bound)).zfill(config.OTP_LENGTH)


def get_latest_otp(email: str, db: Session, unused_only: bool = False) -> EmailOtp | None:
    query = db.query(EmailOtp).filter(EmailOtp.email == email)
    if unused_only:
        query = query.filter(EmailOtp.used.is_(False))
    return query.order_by(EmailOtp.created_at.desc(), EmailOtp.id.desc()).first()


def seconds_until_resend(email: str, db: Session, now: datetime | None = None) -> int:
    latest = get_latest_otp(email, db)
    if latest is None:
        return 0

    now = now or datetime.now()
    elapsed = (now - latest.created_at).total_seconds()
    remaining = config.OTP_RESEND_COOLDOWN_SECONDS - elapsed
    return max(0, int(remaining + 0.999))


def save_otp(email: str, otp: str, db: Session, now: datetime | None = None) -> EmailOtp:
    now = now or datetime.now()

    db.query(EmailOtp).filter(
        EmailOtp.email == email,
        EmailOtp.used.is_(False),
    ).update({EmailOtp.used: True}, synchronize_session=False)

    record = EmailOtp(
        email=email,
        otp=hash_secret(otp),
        expires_at=now + timedelta(minutes=config.OTP_EXPIRES_MINUTES),
        created_at=now,
        used=False,
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    return record


def build_otp_email(otp: str) -> str:
    return (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        '<h1 style="color: #2563eb;">Homi<span style="color: #10b981;">Tutor</span></h1>'
        '<p>Use the code below to verify your email address:</p>'
        f'<p style="font-size: 24px; font-weight: bold; letter-spacing: 5px;">{otp}</p>'
        f'<p>The code is valid for <strong>{config.OTP_EXPIRES_MINUTES} minutes</strong>.</p>'
        '<p>If you did not request this code, you can ignore this email.</p>'
        '</div>'
    )


def send_otp_email(email: str, otp: str) -> None:
    if not config.RESEND_API_KEY:
        logger.warning('RESEND_API_KEY is not set; skipping OTP email to %s', email)
        return

    resend.api_key = config.RESEND_API_KEY
    try:
        resend.Emails.send({
            'from': config.MAIL_FROM,
            'to': email,
            'subject': OTP_EMAIL_SUBJECT,
            'html': build_otp_email(otp),
        })
    except Exception as exc:
        logger.exception('Failed to send OTP email to %s', email)
        raise OtpDeliveryError('Failed to send OTP email') from exc

    logger.info('OTP email sent to %s', email)


def generate_and_send_otp(email: str, db: Session) -> EmailOtp:
    remaining = seconds_until_resend(email, db)
    if remaining > 0:
        raise OtpCooldownError(remaining)

    otp = generate_otp()
    record = save_otp(email, otp, db)
    send_otp_email(email, otp)
    return record


def verify_otp(email: str, otp: str, db: Session, now: datetime | None = None) -> bool:
    now = now or datetime.now()
    stored = get_latest_otp(email, db, unused_only=True)

    if stored is None or now > stored.expires_at:
        return False

    if not verify_secret(otp, stored.otp):
        return False

    db.query(EmailOtp).filter(EmailOtp.email == email).update(
        {EmailOtp.used: True},
        synchronize_session=False,
    )
    db.commit()
    return True


def get_otp_status(email: str, db: Session, now: datetime | None = None) -> OtpStatus:
    now = now or datetime.now()
    active = get_latest_otp(email, db, unused_only=True)
    if active is not None and active.expires_at < now:
        active = None

    remaining = seconds_until_resend(email, db, now=now)
    return OtpStatus(
        has_active_otp=active is not None,
        expires_at=active.expires_at if active else None,
        can_resend=remaining == 0,
        seconds_until_resend=remaining,
    )
