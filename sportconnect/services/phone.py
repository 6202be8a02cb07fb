"""Phone ownership verification with one-time SMS codes."""
import hashlib
import hmac
import logging
import re
import secrets
from datetime import timedelta

from flask import current_app
from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client

from sportconnect.app import db
from sportconnect.errors import IntegrationUnavailable, ServiceError, ValidationError
from sportconnect.models import PhoneVerification
from sportconnect.time_utils import utcnow_naive

logger = logging.getLogger(__name__)

_CODE_PATTERN = re.compile(r'^\d{6}$')
MIN_PHONE_DIGITS = 10


def normalize_phone(raw_value):
    """Strip formatting and return ``+<digits>``, or None if too short."""
    digits = re.sub(r'\D', '', str(raw_value or ''))
    if len(digits) < MIN_PHONE_DIGITS or len(digits) > 15:
        return None
    return f'+{digits}'


def _hash_code(phone, code):
    secret = str(current_app.config.get('SECRET_KEY') or '').encode('utf-8')
    return hmac.new(secret, f'{phone}:{code}'.encode('utf-8'), hashlib.sha256).hexdigest()


def get_twilio_client():
    account_sid = current_app.config.get('TWILIO_ACCOUNT_SID')
    auth_token = current_app.config.get('TWILIO_AUTH_TOKEN')
    if not account_sid or not auth_token:
        return None
    return Client(account_sid, auth_token)


def send_sms(to_number, body):
    if current_app.config.get('SMS_TEST_MODE'):
        logger.info('[SMS TEST MODE] to=%s body=%s', to_number, body)
        return

    client = get_twilio_client()
    from_number = current_app.config.get('TWILIO_PHONE_NUMBER')
    if not client or not from_number:
        raise IntegrationUnavailable('Phone verification is not available right now')
    try:
        client.messages.create(body=body, from_=from_number, to=to_number)
    except TwilioRestException as exc:
        logger.error('Twilio rejected SMS to %s: %s', to_number, exc)
        raise ServiceError('Unable to send verification code', 502) from exc


def send_code(user, raw_phone):
    """Issue a fresh code for ``raw_phone``. Returns ``(phone, code)``."""
    phone = normalize_phone(raw_phone)
    if not phone:
        raise ValidationError('Please enter a valid phone number')

    code = f'{secrets.randbelow(1_000_000):06d}'
    ttl = int(current_app.config.get('PHONE_CODE_TTL_MINUTES', 10))
    now = utcnow_naive()

    # A new code supersedes any earlier one for this user.
    PhoneVerification.query.filter(
        PhoneVerification.user_id == user.id,
        PhoneVerification.consumed_at.is_(None),
    ).update({'consumed_at': now}, synchronize_session=False)

    db.session.add(PhoneVerification(
        user_id=user.id,
        phone=phone,
        code_hash=_hash_code(phone, code),
        attempts=0,
        expires_at=now + timedelta(minutes=ttl),
    ))
    send_sms(phone, f'Your SportConnect verification code is {code}')
    db.session.commit()
    return phone, code


def verify_code(user, raw_phone, raw_code):
    phone = normalize_phone(raw_phone)
    if not phone:
        raise ValidationError('Please enter a valid phone number')
    code = str(raw_code or '').strip()
    if not _CODE_PATTERN.match(code):
        raise ValidationError('Please enter the 6-digit code sent to your phone')

    pending = PhoneVerification.query.filter(
        PhoneVerification.user_id == user.id,
        PhoneVerification.phone == phone,
        PhoneVerification.consumed_at.is_(None),
    ).order_by(PhoneVerification.created_at.desc(), PhoneVerification.id.desc()).first()
    if not pending:
        raise ValidationError('No verification code was sent to this number')

    now = utcnow_naive()
    if pending.expires_at <= now:
        raise ValidationError('Verification code expired; request a new one')
    max_attempts = int(current_app.config.get('PHONE_CODE_MAX_ATTEMPTS', 5))
    if pending.attempts >= max_attempts:
        raise ValidationError('Too many attempts; request a new code')

    if not hmac.compare_digest(pending.code_hash, _hash_code(phone, code)):
        pending.attempts += 1
        db.session.commit()
        raise ValidationError('Invalid verification code')

    pending.consumed_at = now
    user.phone = phone
    user.phone_verified = True
    db.session.commit()
    logger.info('User %s verified phone ending %s', user.id, phone[-4:])
    return user
