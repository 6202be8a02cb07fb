import re

from flask import Blueprint, request, jsonify, current_app
from werkzeug.security import generate_password_hash, check_password_hash
from sportconnect.app import db
from sportconnect.models import User
from sportconnect.auth_utils import generate_token, login_required, csrf_token_for_bearer
from sportconnect.services import oauth, phone
from sportconnect.services.notifications import emit_to_users, unread_count
from sportconnect.services.profiles import get_profile

auth_bp = Blueprint('auth', __name__)

_EMAIL_PATTERN = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')
_USERNAME_PATTERN = re.compile(r'^[A-Za-z0-9_]{3,80}$')


def _password_complexity_error(raw_password):
    password = str(raw_password or '')
    if len(password) < 8:
        return 'Password must be at least 8 characters long'
    if not re.search(r'[A-Za-z]', password) or not re.search(r'\d', password):
        return 'Password must include at least one letter and one number'
    return None


def _session_payload(user, status=200):
    token = generate_token(user)
    return jsonify({
        'token': token,
        'csrf_token': csrf_token_for_bearer(token),
        'user': user.to_dict(),
    }), status


def _json_payload():
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        return None
    return data


@auth_bp.route('/register', methods=['POST'])
def register():
    data = _json_payload()
    if not data or not data.get('username') or not data.get('email') or not data.get('password'):
        return jsonify({'error': 'Username, email, and password are required'}), 400

    username = str(data['username']).strip()
    email = str(data['email']).strip().lower()
    if not _USERNAME_PATTERN.match(username):
        return jsonify({'error': 'Username must be 3-80 letters, numbers or underscores'}), 400
    if not _EMAIL_PATTERN.match(email):
        return jsonify({'error': 'Please enter a valid email address'}), 400
    password_error = _password_complexity_error(data.get('password'))
    if password_error:
        return jsonify({'error': password_error}), 400

    if User.query.filter_by(username=username).first():
        return jsonify({'error': 'Username already taken'}), 409
    if User.query.filter_by(email=email).first():
        return jsonify({'error': 'Email already registered'}), 409

    user = User(
        username=username,
        email=email,
        password_hash=generate_password_hash(data['password']),
        is_admin=oauth.is_configured_admin_email(email),
        full_name=str(data.get('full_name') or '').strip()[:120],
    )
    db.session.add(user)
    db.session.commit()
    return _session_payload(user, 201)


@auth_bp.route('/login', methods=['POST'])
def login():
    data = _json_payload()
    if not data or not data.get('email') or not data.get('password'):
        return jsonify({'error': 'Email and password are required'}), 400

    email = str(data['email']).strip().lower()
    user = User.query.filter_by(email=email).first()
    if not user or not check_password_hash(user.password_hash, str(data['password'])):
        return jsonify({'error': 'Invalid email or password'}), 401

    if not user.is_admin and oauth.is_configured_admin_email(user.email):
        user.is_admin = True
        db.session.commit()
    return _session_payload(user)


@auth_bp.route('/google/config', methods=['GET'])
def google_config():
    client_id = str(current_app.config.get('GOOGLE_CLIENT_ID') or '').strip()
    return jsonify({
        'enabled': bool(client_id),
        'client_id': client_id if client_id else None,
    })


@auth_bp.route('/google', methods=['POST'])
def google_login():
    data = _json_payload() or {}
    id_token = str(data.get('id_token') or '').strip()
    if not id_token:
        return jsonify({'error': 'Google ID token is required'}), 400

    identity = oauth.verify_google_id_token(id_token)
    user = oauth.find_or_create_oauth_user('google', identity)
    return _session_payload(user)


@auth_bp.route('/apple', methods=['POST'])
def apple_login():
    data = _json_payload() or {}
    id_token = str(data.get('id_token') or '').strip()
    if not id_token:
        return jsonify({'error': 'Apple ID token is required'}), 400

    identity = oauth.verify_apple_id_token(id_token)
    # Apple only sends the name on the first authorization, outside the token.
    identity['name'] = str(data.get('full_name') or '').strip()[:120]
    user = oauth.find_or_create_oauth_user('apple', identity)
    return _session_payload(user)


@auth_bp.route('/phone/send', methods=['POST'])
@login_required
def send_phone_code():
    data = _json_payload() or {}
    sent_to, code = phone.send_code(request.current_user, data.get('phone'))
    payload = {'message': 'Verification code sent', 'phone': sent_to}
    if current_app.config.get('SMS_TEST_MODE'):
        payload['test_code'] = code
    return jsonify(payload)


@auth_bp.route('/phone/verify', methods=['POST'])
@login_required
def verify_phone_code():
    data = _json_payload() or {}
    user = phone.verify_code(request.current_user, data.get('phone'), data.get('code'))
    emit_to_users('session_update', (user.id,), {'reason': 'profile_updated'})
    return jsonify({'message': 'Phone verified', 'user': user.to_dict()})


@auth_bp.route('/logout', methods=['POST'])
@login_required
def logout():
    """Sign out everywhere by invalidating every token issued so far."""
    user = request.current_user
    user.token_version = int(user.token_version or 0) + 1
    db.session.commit()
    emit_to_users('session_update', (user.id,), {'reason': 'signed_out'})
    return jsonify({'message': 'Signed out'})


@auth_bp.route('/session', methods=['GET'])
@login_required
def get_session():
    user = request.current_user
    return jsonify({
        'user': user.to_dict(),
        'profile': get_profile(user.id, include_private=True),
        'unread_notifications': unread_count(user),
    })
