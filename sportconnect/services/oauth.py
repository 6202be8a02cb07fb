"""Google and Apple identity-token verification and account linking."""
import logging
import re
import secrets
import time

import jwt
import requests
from flask import current_app
from werkzeug.security import generate_password_hash

from sportconnect.app import db
from sportconnect.errors import (
    AuthenticationFailed, Conflict, IntegrationUnavailable, ServiceError,
)
from sportconnect.models import User

logger = logging.getLogger(__name__)

_GOOGLE_TOKEN_INFO_URL = 'https://oauth2.googleapis.com/tokeninfo'
_ALLOWED_GOOGLE_ISSUERS = {'accounts.google.com', 'https://accounts.google.com'}
_APPLE_KEYS_URL = 'https://appleid.apple.com/auth/keys'
_APPLE_ISSUER = 'https://appleid.apple.com'

_apple_jwk_client = None


def configured_admin_emails():
    raw_value = current_app.config.get('ADMIN_EMAILS', '')
    return {
        item.strip().lower()
        for item in str(raw_value).split(',')
        if item and item.strip()
    }


def is_configured_admin_email(email):
    return (email or '').strip().lower() in configured_admin_emails()


def _normalize_username_base(raw_value):
    cleaned = re.sub(r'[^a-zA-Z0-9_]+', '', str(raw_value or '').strip().lower())
    if not cleaned:
        cleaned = f'user{secrets.randbelow(100000):05d}'
    if cleaned[0].isdigit():
        cleaned = f'u_{cleaned}'
    return cleaned[:70]


def build_unique_username(raw_value):
    base = _normalize_username_base(raw_value)
    candidate = base
    suffix = 1
    while User.query.filter_by(username=candidate).first():
        suffix += 1
        candidate = f'{base[:max(1, 79 - len(str(suffix)))]}{suffix}'
    return candidate


def verify_google_id_token(id_token):
    client_id = str(current_app.config.get('GOOGLE_CLIENT_ID') or '').strip()
    if not client_id:
        raise IntegrationUnavailable('Google login is not configured')

    try:
        response = requests.get(
            _GOOGLE_TOKEN_INFO_URL,
            params={'id_token': id_token},
            timeout=5,
        )
    except requests.RequestException as exc:
        raise ServiceError('Unable to verify Google token', 502) from exc

    if response.status_code != 200:
        raise AuthenticationFailed('Invalid Google token')

    try:
        token_info = response.json()
    except ValueError as exc:
        raise ServiceError('Invalid Google verification response', 502) from exc

    if str(token_info.get('aud') or '').strip() != client_id:
        raise AuthenticationFailed('Invalid Google token audience')
    if str(token_info.get('iss') or '').strip() not in _ALLOWED_GOOGLE_ISSUERS:
        raise AuthenticationFailed('Invalid Google token issuer')

    try:
        exp_ts = int(token_info.get('exp'))
    except (TypeError, ValueError):
        raise AuthenticationFailed('Invalid Google token expiration') from None
    if exp_ts <= int(time.time()):
        raise AuthenticationFailed('Google token expired')

    email_verified = str(token_info.get('email_verified') or '').strip().lower()
    if email_verified not in {'true', '1'}:
        raise AuthenticationFailed('Google account email is not verified')
    if not token_info.get('sub') or not token_info.get('email'):
        raise AuthenticationFailed('Google token missing required fields')

    return {
        'sub': str(token_info['sub']).strip(),
        'email': str(token_info['email']).strip().lower(),
        'name': str(token_info.get('name') or '').strip(),
        'picture': str(token_info.get('picture') or '').strip(),
    }


def _get_apple_jwk_client():
    global _apple_jwk_client
    if _apple_jwk_client is None:
        _apple_jwk_client = jwt.PyJWKClient(_APPLE_KEYS_URL)
    return _apple_jwk_client


def verify_apple_id_token(id_token):
    client_id = str(current_app.config.get('APPLE_CLIENT_ID') or '').strip()
    if not client_id:
        raise IntegrationUnavailable('Apple login is not configured')

    try:
        signing_key = _get_apple_jwk_client().get_signing_key_from_jwt(id_token)
    except jwt.PyJWKClientError as exc:
        raise ServiceError('Unable to verify Apple token', 502) from exc
    except jwt.InvalidTokenError as exc:
        raise AuthenticationFailed('Invalid Apple token') from exc

    try:
        claims = jwt.decode(
            id_token,
            signing_key.key,
            algorithms=['RS256'],
            audience=client_id,
            issuer=_APPLE_ISSUER,
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationFailed('Apple token expired') from None
    except jwt.InvalidTokenError:
        raise AuthenticationFailed('Invalid Apple token') from None

    email = str(claims.get('email') or '').strip().lower()
    if not claims.get('sub') or not email:
        raise AuthenticationFailed('Apple token missing required fields')
    if str(claims.get('email_verified', 'true')).strip().lower() not in {'true', '1'}:
        raise AuthenticationFailed('Apple account email is not verified')
    return {'sub': str(claims['sub']).strip(), 'email': email, 'name': '', 'picture': ''}


def find_or_create_oauth_user(provider, identity):
    """Link ``identity`` to an account by provider subject, then by email."""
    subject_field = f'{provider}_sub'
    user = User.query.filter(getattr(User, subject_field) == identity['sub']).first()
    if not user:
        user = User.query.filter_by(email=identity['email']).first()
        if user:
            linked_sub = getattr(user, subject_field)
            if linked_sub and linked_sub != identity['sub']:
                raise Conflict(f'Email is already linked to another {provider.capitalize()} account')
            setattr(user, subject_field, identity['sub'])
        else:
            email = identity['email']
            user = User(
                username=build_unique_username(email.split('@', 1)[0] if '@' in email else identity['name']),
                email=email,
                password_hash=generate_password_hash(secrets.token_urlsafe(32)),
                is_admin=is_configured_admin_email(email),
                full_name=identity['name'],
                avatar_url=identity['picture'] or None,
            )
            setattr(user, subject_field, identity['sub'])
            db.session.add(user)
            logger.info('Created account for %s sign-in', provider)

    if identity['name'] and not user.full_name:
        user.full_name = identity['name']
    if identity['picture'] and not user.avatar_url:
        user.avatar_url = identity['picture']
    if not user.is_admin and is_configured_admin_email(user.email):
        user.is_admin = True

    db.session.commit()
    return user
