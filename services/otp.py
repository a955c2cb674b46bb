"""
One-time codes for password reset and in-person booking completion.

Challenges are keyed by (subject, purpose): issuing again overwrites the live
code, a successful match deletes it. Expiry is checked when a code is
presented; nothing evicts challenges in the background.
"""
import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta

from flask import current_app
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from models import db
from models.otp_challenge import OtpChallenge
from services.errors import OtpExpired, OtpMismatch, OtpNotFound, OtpTokenInvalid, ValidationError
from utils.emailer import notify

logger = logging.getLogger(__name__)

OTP_DIGITS = 6

PURPOSE_PASSWORD_RESET = "PASSWORD_RESET"


def booking_purpose(booking_id: int) -> str:
    return f"BOOKING:{booking_id}"


def generate_code() -> str:
    return f"{secrets.randbelow(10 ** OTP_DIGITS):0{OTP_DIGITS}d}"


def _hash_code(code: str) -> str:
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


def _normalize_subject(subject) -> str:
    value = (subject or "").strip().lower() if isinstance(subject, str) else ""
    if not value:
        raise ValidationError("email or phone is required")
    return value


def _message(purpose: str, code: str, ttl_seconds: int) -> tuple[str, str]:
    minutes = max(ttl_seconds // 60, 1)
    if purpose == PURPOSE_PASSWORD_RESET:
        subject = "OTP Verification"
        body = f"Your OTP is: {code}\n\nIt is valid for {minutes} minutes. If you didn't request it, ignore this email."
    else:
        subject = "Your booking confirmation code"
        body = (
            f"Your booking confirmation code is: {code}\n\n"
            "Share it with the seller only once the service has been delivered. "
            f"It is valid for {minutes} minutes."
        )
    return subject, body


def issue(subject: str, purpose: str = PURPOSE_PASSWORD_RESET, ttl_seconds: int | None = None) -> datetime:
    """Creates or replaces the challenge for subject and sends the code. Returns its expiry."""
    subject = _normalize_subject(subject)
    if ttl_seconds is None:
        ttl_seconds = current_app.config.get("OTP_TTL_SECONDS", 300)

    code = generate_code()
    expires_at = datetime.utcnow() + timedelta(seconds=ttl_seconds)

    row = OtpChallenge.query.filter_by(subject=subject, purpose=purpose).first()
    if row:
        row.code_hash = _hash_code(code)
        row.expires_at = expires_at
        row.attempts = 0
        row.created_at = datetime.utcnow()
    else:
        row = OtpChallenge(subject=subject, purpose=purpose, code_hash=_hash_code(code), expires_at=expires_at)
        db.session.add(row)
    db.session.commit()

    mail_subject, body = _message(purpose, code, ttl_seconds)
    notify(subject, mail_subject, body)
    logger.info("Issued %s OTP for %s (expires %s)", purpose, subject, expires_at.isoformat())
    return expires_at


def verify(subject: str, code, purpose: str = PURPOSE_PASSWORD_RESET) -> str:
    """
    Checks code against the live challenge and consumes it.

    Returns an opaque confirmation string; raises OtpNotFound, OtpExpired or
    OtpMismatch. The challenge survives a mismatch until OTP_MAX_ATTEMPTS
    wrong codes have been tried.
    """
    subject = _normalize_subject(subject)
    code = str(code).strip() if code is not None else ""

    row = OtpChallenge.query.filter_by(subject=subject, purpose=purpose).first()
    if not row:
        raise OtpNotFound()

    if datetime.utcnow() > row.expires_at:
        raise OtpExpired()

    if not hmac.compare_digest(row.code_hash, _hash_code(code)):
        max_attempts = current_app.config.get("OTP_MAX_ATTEMPTS", 5)
        row.attempts += 1
        attempts_left = max(max_attempts - row.attempts, 0)
        if attempts_left == 0:
            db.session.delete(row)
        db.session.commit()
        raise OtpMismatch(attempts_left)

    db.session.delete(row)
    db.session.commit()
    return secrets.token_urlsafe(16)


def purge_expired(now: datetime | None = None) -> int:
    now = now or datetime.utcnow()
    count = OtpChallenge.query.filter(OtpChallenge.expires_at < now).delete(synchronize_session=False)
    db.session.commit()
    return count


def _serializer(purpose: str) -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(current_app.config["SECRET_KEY"], salt=f"otp-confirmation:{purpose}")


def sign_confirmation(purpose: str, subject: str, confirmation: str, **claims) -> str:
    payload = {"sub": _normalize_subject(subject), "cnf": confirmation, **claims}
    return _serializer(purpose).dumps(payload)


def load_confirmation(token: str, purpose: str, max_age: int | None = None) -> dict:
    if not token or not isinstance(token, str):
        raise OtpTokenInvalid("Confirmation token is required")
    if max_age is None:
        max_age = current_app.config.get("CONFIRMATION_TOKEN_MAX_AGE_SECONDS", 600)
    try:
        return _serializer(purpose).loads(token, max_age=max_age)
    except SignatureExpired:
        raise OtpTokenInvalid("Confirmation token has expired")
    except BadSignature:
        raise OtpTokenInvalid()
