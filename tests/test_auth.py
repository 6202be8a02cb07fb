"""Tests for authentication routes."""
import json
import time
from datetime import timedelta

import jwt
from cryptography.hazmat.primitives.asymmetric import rsa

from sportconnect.app import db
from sportconnect.models import PhoneVerification, User
from sportconnect.time_utils import utcnow_naive

GOOGLE_CLIENT_ID = 'google-client-id.apps.googleusercontent.com'
APPLE_CLIENT_ID = 'com.sportconnect.app'

_APPLE_PRIVATE_KEY = rsa.generate_private_key(public_exponent=65537, key_size=2048)


class _FakeGoogleResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        return self._payload


def _google_payload(**overrides):
    payload = {
        'aud': GOOGLE_CLIENT_ID,
        'iss': 'https://accounts.google.com',
        'exp': '9999999999',
        'email_verified': 'true',
        'sub': 'google-sub-123',
        'email': 'googleuser@test.com',
        'name': 'Google User',
        'picture': 'https://example.com/avatar.png',
    }
    payload.update(overrides)
    return payload


def _register(client, username='authuser', password='password123'):
    res = client.post('/api/auth/register', json={
        'username': username,
        'email': f'{username}@test.com',
        'password': password,
    })
    return json.loads(res.data)


def test_register(client):
    res = client.post('/api/auth/register', json={
        'username': 'testuser', 'email': 'Test@Test.com',
        'password': 'password123', 'full_name': 'Test User',
    })
    assert res.status_code == 201
    data = json.loads(res.data)
    assert data['token']
    assert data['csrf_token']
    assert data['user']['username'] == 'testuser'
    assert data['user']['email'] == 'test@test.com'
    assert data['user']['full_name'] == 'Test User'
    assert data['user']['phone_verified'] is False
    assert data['user']['profile_complete'] is False


def test_register_missing_fields(client):
    res = client.post('/api/auth/register', json={'username': 'x'})
    assert res.status_code == 400


def test_register_duplicate_username(client):
    client.post('/api/auth/register', json={
        'username': 'dup', 'email': 'dup@test.com', 'password': 'password123',
    })
    res = client.post('/api/auth/register', json={
        'username': 'dup', 'email': 'dup2@test.com', 'password': 'password123',
    })
    assert res.status_code == 409


def test_register_duplicate_email(client):
    _register(client, 'first_email')
    res = client.post('/api/auth/register', json={
        'username': 'second_email', 'email': 'first_email@test.com', 'password': 'password123',
    })
    assert res.status_code == 409
    assert json.loads(res.data)['error'] == 'Email already registered'


def test_register_rejects_weak_password(client):
    res = client.post('/api/auth/register', json={
        'username': 'weakpw',
        'email': 'weakpw@test.com',
        'password': 'abcdefgh',
    })
    assert res.status_code == 400
    assert 'Password must' in json.loads(res.data)['error']


def test_register_rejects_bad_username_and_email(client):
    bad_username = client.post('/api/auth/register', json={
        'username': 'no spaces!', 'email': 'ok@test.com', 'password': 'password123',
    })
    assert bad_username.status_code == 400
    bad_email = client.post('/api/auth/register', json={
        'username': 'okname', 'email': 'not-an-email', 'password': 'password123',
    })
    assert bad_email.status_code == 400


def test_login(client):
    _register(client, 'loginuser')
    res = client.post('/api/auth/login', json={
        'email': 'LoginUser@test.com', 'password': 'password123',
    })
    assert res.status_code == 200
    data = json.loads(res.data)
    assert data['token']
    assert data['user']['username'] == 'loginuser'


def test_login_bad_password(client):
    _register(client, 'badpw')
    res = client.post('/api/auth/login', json={
        'email': 'badpw@test.com', 'password': 'wrong',
    })
    assert res.status_code == 401


def test_session_and_logout_revokes_tokens(client):
    token = _register(client, 'sessionuser')['token']
    headers = {'Authorization': f'Bearer {token}'}

    session = client.get('/api/auth/session', headers=headers)
    assert session.status_code == 200
    data = json.loads(session.data)
    assert data['user']['username'] == 'sessionuser'
    assert data['profile']['sports'] == []
    assert data['unread_notifications'] == 0

    assert client.post('/api/auth/logout', headers=headers).status_code == 200
    revoked = client.get('/api/auth/session', headers=headers)
    assert revoked.status_code == 401
    assert json.loads(revoked.data)['error'] == 'Session has been signed out'

    fresh = client.post('/api/auth/login', json={
        'email': 'sessionuser@test.com', 'password': 'password123',
    })
    fresh_token = json.loads(fresh.data)['token']
    again = client.get('/api/auth/session', headers={'Authorization': f'Bearer {fresh_token}'})
    assert again.status_code == 200


def test_session_rejects_garbage_token(client):
    res = client.get('/api/auth/session', headers={'Authorization': 'Bearer not-a-jwt'})
    assert res.status_code == 401
    assert json.loads(res.data)['error'] == 'Invalid token'


def test_phone_verification_flow(client):
    token = _register(client, 'phoneuser')['token']
    headers = {'Authorization': f'Bearer {token}'}

    sent = client.post('/api/auth/phone/send', json={'phone': '+1 (415) 555-0199'}, headers=headers)
    assert sent.status_code == 200
    sent_data = json.loads(sent.data)
    assert sent_data['phone'] == '+14155550199'
    code = sent_data['test_code']
    assert len(code) == 6

    wrong_code = '000000' if code != '000000' else '111111'
    wrong = client.post('/api/auth/phone/verify', json={
        'phone': '+14155550199', 'code': wrong_code,
    }, headers=headers)
    assert wrong.status_code == 400
    assert json.loads(wrong.data)['error'] == 'Invalid verification code'

    ok = client.post('/api/auth/phone/verify', json={
        'phone': '+14155550199', 'code': code,
    }, headers=headers)
    assert ok.status_code == 200
    user = json.loads(ok.data)['user']
    assert user['phone'] == '+14155550199'
    assert user['phone_verified'] is True

    reused = client.post('/api/auth/phone/verify', json={
        'phone': '+14155550199', 'code': code,
    }, headers=headers)
    assert reused.status_code == 400


def test_phone_code_stores_only_a_hash(client):
    token = _register(client, 'hashuser')['token']
    headers = {'Authorization': f'Bearer {token}'}
    sent = client.post('/api/auth/phone/send', json={'phone': '4155550123'}, headers=headers)
    code = json.loads(sent.data)['test_code']

    row = PhoneVerification.query.one()
    assert row.code_hash != code
    assert code not in row.code_hash


def test_phone_send_rejects_short_number(client):
    token = _register(client, 'shortphone')['token']
    res = client.post('/api/auth/phone/send', json={'phone': '555-0199'}, headers={
        'Authorization': f'Bearer {token}',
    })
    assert res.status_code == 400


def test_phone_verify_locks_after_max_attempts(client):
    client.application.config['PHONE_CODE_MAX_ATTEMPTS'] = 2
    token = _register(client, 'lockphone')['token']
    headers = {'Authorization': f'Bearer {token}'}
    code = json.loads(client.post(
        '/api/auth/phone/send', json={'phone': '4155550111'}, headers=headers,
    ).data)['test_code']
    wrong_code = '000000' if code != '000000' else '111111'

    for _ in range(2):
        res = client.post('/api/auth/phone/verify', json={
            'phone': '4155550111', 'code': wrong_code,
        }, headers=headers)
        assert res.status_code == 400

    locked = client.post('/api/auth/phone/verify', json={
        'phone': '4155550111', 'code': code,
    }, headers=headers)
    assert locked.status_code == 400
    assert 'Too many attempts' in json.loads(locked.data)['error']


def test_phone_verify_rejects_expired_code(client):
    token = _register(client, 'expiredphone')['token']
    headers = {'Authorization': f'Bearer {token}'}
    code = json.loads(client.post(
        '/api/auth/phone/send', json={'phone': '4155550122'}, headers=headers,
    ).data)['test_code']

    row = PhoneVerification.query.one()
    row.expires_at = utcnow_naive() - timedelta(minutes=1)
    db.session.commit()

    res = client.post('/api/auth/phone/verify', json={
        'phone': '4155550122', 'code': code,
    }, headers=headers)
    assert res.status_code == 400
    assert 'expired' in json.loads(res.data)['error']


def test_new_phone_code_supersedes_previous(client):
    token = _register(client, 'resendphone')['token']
    headers = {'Authorization': f'Bearer {token}'}
    first = json.loads(client.post(
        '/api/auth/phone/send', json={'phone': '4155550133'}, headers=headers,
    ).data)['test_code']
    second = json.loads(client.post(
        '/api/auth/phone/send', json={'phone': '4155550133'}, headers=headers,
    ).data)['test_code']

    if first != second:
        stale = client.post('/api/auth/phone/verify', json={
            'phone': '4155550133', 'code': first,
        }, headers=headers)
        assert stale.status_code == 400

    ok = client.post('/api/auth/phone/verify', json={
        'phone': '4155550133', 'code': second,
    }, headers=headers)
    assert ok.status_code == 200


def test_google_config_endpoint(client):
    client.application.config['GOOGLE_CLIENT_ID'] = ''
    disabled = client.get('/api/auth/google/config')
    assert disabled.status_code == 200
    assert json.loads(disabled.data)['enabled'] is False

    client.application.config['GOOGLE_CLIENT_ID'] = GOOGLE_CLIENT_ID
    enabled = client.get('/api/auth/google/config')
    payload = json.loads(enabled.data)
    assert payload['enabled'] is True
    assert payload['client_id'] == GOOGLE_CLIENT_ID


def test_google_login_creates_user(client, monkeypatch):
    client.application.config['GOOGLE_CLIENT_ID'] = GOOGLE_CLIENT_ID

    def fake_google_verify(url, params=None, timeout=0):
        assert params['id_token'] == 'valid-google-token'
        return _FakeGoogleResponse(200, _google_payload())

    monkeypatch.setattr('sportconnect.services.oauth.requests.get', fake_google_verify)

    res = client.post('/api/auth/google', json={'id_token': 'valid-google-token'})
    assert res.status_code == 200
    data = json.loads(res.data)
    assert data['token']
    assert data['user']['email'] == 'googleuser@test.com'
    assert data['user']['full_name'] == 'Google User'
    assert data['user']['username'] == 'googleuser'

    user = User.query.filter_by(email='googleuser@test.com').one()
    assert user.google_sub == 'google-sub-123'


def test_google_login_links_existing_email_account(client, monkeypatch):
    client.application.config['GOOGLE_CLIENT_ID'] = GOOGLE_CLIENT_ID
    existing = _register(client, 'existinggoogle')

    monkeypatch.setattr(
        'sportconnect.services.oauth.requests.get',
        lambda url, params=None, timeout=0: _FakeGoogleResponse(200, _google_payload(
            sub='google-sub-xyz', email='existinggoogle@test.com', name='Existing Google',
        )),
    )

    res = client.post('/api/auth/google', json={'id_token': 'valid-google-token'})
    assert res.status_code == 200
    assert json.loads(res.data)['user']['id'] == existing['user']['id']
    assert User.query.filter_by(email='existinggoogle@test.com').count() == 1
    assert db.session.get(User, existing['user']['id']).google_sub == 'google-sub-xyz'


def test_google_login_rejects_invalid_token(client, monkeypatch):
    client.application.config['GOOGLE_CLIENT_ID'] = GOOGLE_CLIENT_ID
    monkeypatch.setattr(
        'sportconnect.services.oauth.requests.get',
        lambda url, params=None, timeout=0: _FakeGoogleResponse(400, {'error': 'invalid_token'}),
    )
    res = client.post('/api/auth/google', json={'id_token': 'bad-token'})
    assert res.status_code == 401


def test_google_login_rejects_wrong_audience(client, monkeypatch):
    client.application.config['GOOGLE_CLIENT_ID'] = GOOGLE_CLIENT_ID
    monkeypatch.setattr(
        'sportconnect.services.oauth.requests.get',
        lambda url, params=None, timeout=0: _FakeGoogleResponse(200, _google_payload(aud='someone-else')),
    )
    res = client.post('/api/auth/google', json={'id_token': 'valid-google-token'})
    assert res.status_code == 401
    assert User.query.count() == 0


def test_google_login_unconfigured_returns_503(client):
    client.application.config['GOOGLE_CLIENT_ID'] = ''
    res = client.post('/api/auth/google', json={'id_token': 'anything'})
    assert res.status_code == 503


class _FakeAppleSigningKey:
    def __init__(self, key):
        self.key = key


class _FakeAppleJWKClient:
    def get_signing_key_from_jwt(self, token):
        return _FakeAppleSigningKey(_APPLE_PRIVATE_KEY.public_key())


def _apple_token(**overrides):
    claims = {
        'iss': 'https://appleid.apple.com',
        'aud': APPLE_CLIENT_ID,
        'sub': 'apple-sub-123',
        'email': 'appleuser@privaterelay.appleid.com',
        'email_verified': 'true',
        'iat': int(time.time()),
        'exp': int(time.time()) + 600,
    }
    claims.update(overrides)
    return jwt.encode(claims, _APPLE_PRIVATE_KEY, algorithm='RS256')


def _enable_apple(client, monkeypatch):
    client.application.config['APPLE_CLIENT_ID'] = APPLE_CLIENT_ID
    monkeypatch.setattr('sportconnect.services.oauth._get_apple_jwk_client', lambda: _FakeAppleJWKClient())


def test_apple_login_creates_user_with_name_from_request(client, monkeypatch):
    _enable_apple(client, monkeypatch)

    res = client.post('/api/auth/apple', json={'id_token': _apple_token(), 'full_name': '  Apple User  '})
    assert res.status_code == 200
    data = json.loads(res.data)
    assert data['token']
    assert data['user']['email'] == 'appleuser@privaterelay.appleid.com'
    assert data['user']['full_name'] == 'Apple User'
    assert data['user']['username'] == 'appleuser'

    user = User.query.filter_by(email='appleuser@privaterelay.appleid.com').one()
    assert user.apple_sub == 'apple-sub-123'

    # Later sign-ins omit the name and find the account by subject.
    again = client.post('/api/auth/apple', json={'id_token': _apple_token(email='APPLEUSER@privaterelay.appleid.com')})
    assert again.status_code == 200
    assert json.loads(again.data)['user']['id'] == user.id
    assert json.loads(again.data)['user']['full_name'] == 'Apple User'
    assert User.query.count() == 1


def test_apple_login_links_existing_email_account(client, monkeypatch):
    _enable_apple(client, monkeypatch)
    existing = _register(client, 'existingapple')

    res = client.post('/api/auth/apple', json={
        'id_token': _apple_token(sub='apple-sub-xyz', email='existingapple@test.com'),
    })
    assert res.status_code == 200
    assert json.loads(res.data)['user']['id'] == existing['user']['id']
    assert User.query.filter_by(email='existingapple@test.com').count() == 1
    assert db.session.get(User, existing['user']['id']).apple_sub == 'apple-sub-xyz'


def test_apple_login_rejects_wrong_audience_and_expired_token(client, monkeypatch):
    _enable_apple(client, monkeypatch)

    wrong_audience = client.post('/api/auth/apple', json={'id_token': _apple_token(aud='com.someone.else')})
    assert wrong_audience.status_code == 401

    expired = client.post('/api/auth/apple', json={'id_token': _apple_token(exp=int(time.time()) - 60)})
    assert expired.status_code == 401
    assert 'expired' in json.loads(expired.data)['error']
    assert User.query.count() == 0


def test_apple_login_unconfigured_returns_503(client):
    client.application.config['APPLE_CLIENT_ID'] = ''
    res = client.post('/api/auth/apple', json={'id_token': 'anything'})
    assert res.status_code == 503

    missing = client.post('/api/auth/apple', json={})
    assert missing.status_code == 400


def test_admin_emails_config_sets_admin_on_register_and_login(client):
    client.application.config['ADMIN_EMAILS'] = 'boss@test.com'
    registered = _register(client, 'boss')
    assert registered['user']['is_admin'] is True

    client.application.config['ADMIN_EMAILS'] = ''
    _register(client, 'later_admin')
    client.application.config['ADMIN_EMAILS'] = 'later_admin@test.com'
    login = client.post('/api/auth/login', json={
        'email': 'later_admin@test.com', 'password': 'password123',
    })
    assert json.loads(login.data)['user']['is_admin'] is True


def test_mutating_api_rejects_disallowed_origin(client):
    client.application.config['CORS_ALLOWED_ORIGINS'] = 'https://allowed.example'
    res = client.post('/api/auth/register', json={
        'username': 'originblocked',
        'email': 'originblocked@test.com',
        'password': 'password123',
    }, headers={'Origin': 'https://evil.example'})
    assert res.status_code == 403

    allowed = client.post('/api/auth/register', json={
        'username': 'originallowed',
        'email': 'originallowed@test.com',
        'password': 'password123',
    }, headers={'Origin': 'https://allowed.example'})
    assert allowed.status_code == 201


def test_authenticated_mutation_requires_csrf_token_with_origin(client):
    client.application.config['CORS_ALLOWED_ORIGINS'] = 'https://allowed.example'
    registered = _register(client, 'csrfuser')
    base_headers = {
        'Authorization': f'Bearer {registered["token"]}',
        'Origin': 'https://allowed.example',
    }

    missing_csrf = client.post('/api/notifications/read', json={'ids': []}, headers=base_headers)
    assert missing_csrf.status_code == 403
    assert json.loads(missing_csrf.data)['error'] == 'Invalid CSRF token'

    with_csrf = client.post('/api/notifications/read', json={'ids': []}, headers={
        **base_headers, 'X-CSRF-Token': registered['csrf_token'],
    })
    assert with_csrf.status_code == 200
