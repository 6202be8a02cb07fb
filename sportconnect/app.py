import logging

from flask import Flask, request, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_socketio import SocketIO
from flask_cors import CORS
from sportconnect.config import config
from sportconnect.errors import ServiceError

db = SQLAlchemy()
socketio = SocketIO()

logger = logging.getLogger(__name__)


def _parse_allowed_origins(raw_origins):
    if not raw_origins:
        return '*'

    if isinstance(raw_origins, (list, tuple, set)):
        cleaned = [origin for origin in raw_origins if origin]
        return cleaned or '*'

    raw_text = str(raw_origins).strip()
    if not raw_text or raw_text == '*':
        return '*'

    origins = [origin.strip() for origin in raw_text.split(',') if origin.strip()]
    return origins or '*'


def _configure_logging(app):
    level_name = str(app.config.get('LOG_LEVEL') or 'INFO').upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(
        level=level,
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s',
    )
    logging.getLogger('sportconnect').setLevel(level)


def _warn_missing_integrations(app):
    """Optional integrations degrade to 503 responses instead of failing startup."""
    if not str(app.config.get('GOOGLE_CLIENT_ID') or '').strip():
        logger.warning('GOOGLE_CLIENT_ID is not set; Google sign-in is disabled')
    if not str(app.config.get('APPLE_CLIENT_ID') or '').strip():
        logger.warning('APPLE_CLIENT_ID is not set; Apple sign-in is disabled')
    if app.config.get('PAYMENT_PROCESSOR') == 'stripe' and not app.config.get('STRIPE_SECRET_KEY'):
        logger.error('PAYMENT_PROCESSOR=stripe but STRIPE_SECRET_KEY is missing; bid challenges will fail')
    if not app.config.get('SMS_TEST_MODE'):
        twilio_keys = ('TWILIO_ACCOUNT_SID', 'TWILIO_AUTH_TOKEN', 'TWILIO_PHONE_NUMBER')
        missing = [key for key in twilio_keys if not app.config.get(key)]
        if missing:
            logger.error('Twilio settings missing (%s); phone verification is disabled', ', '.join(missing))
    if not app.config.get('TRACKER_WEBHOOK_SECRET'):
        logger.warning('TRACKER_WEBHOOK_SECRET is not set; tracker attestations are rejected')


def create_app(config_name='development'):
    app = Flask(__name__)
    app.config.from_object(config[config_name])
    _configure_logging(app)

    allowed_origins = _parse_allowed_origins(app.config.get('CORS_ALLOWED_ORIGINS', '*'))
    if str(config_name).strip().lower() == 'production':
        secret_key = str(app.config.get('SECRET_KEY') or '').strip()
        if not secret_key or secret_key == 'dev-secret-key-change-in-prod':
            raise RuntimeError('SECRET_KEY must be set to a non-default value in production')
        if allowed_origins == '*':
            raise RuntimeError('CORS_ALLOWED_ORIGINS must be explicitly set in production')
        if not app.config.get('SQLALCHEMY_DATABASE_URI'):
            raise RuntimeError('DATABASE_URL must be set in production')

    db.init_app(app)
    socketio.init_app(
        app,
        cors_allowed_origins=allowed_origins,
        async_mode=app.config.get('SOCKETIO_ASYNC_MODE', 'threading'),
    )
    CORS(app, resources={r'/api/*': {'origins': allowed_origins}})

    @app.before_request
    def _enforce_origin_for_mutating_api_requests():
        if request.method in {'GET', 'HEAD', 'OPTIONS'}:
            return None
        if not request.path.startswith('/api/'):
            return None

        origin = str(request.headers.get('Origin') or '').strip()
        if not origin:
            return None

        configured_origins = _parse_allowed_origins(
            app.config.get('CORS_ALLOWED_ORIGINS', '*')
        )
        if configured_origins != '*' and origin not in configured_origins:
            return jsonify({'error': 'Invalid request origin'}), 403

        auth_header = str(request.headers.get('Authorization') or '').strip()
        if not auth_header:
            return None

        csrf_header = request.headers.get('X-CSRF-Token')
        from sportconnect.auth_utils import csrf_token_matches
        if not csrf_token_matches(auth_header, csrf_header):
            return jsonify({'error': 'Invalid CSRF token'}), 403
        return None

    @app.errorhandler(ServiceError)
    def _handle_service_error(exc):
        db.session.rollback()
        if exc.status_code >= 500:
            logger.error('%s %s failed: %s', request.method, request.path, exc.message)
        return jsonify(exc.to_dict()), exc.status_code

    from sportconnect.routes.auth import auth_bp
    from sportconnect.routes.profile import profile_bp
    from sportconnect.routes.challenges import challenges_bp
    from sportconnect.routes.matches import matches_bp
    from sportconnect.routes.leaderboard import leaderboard_bp
    from sportconnect.routes.notifications import notifications_bp
    from sportconnect.routes.posts import posts_bp
    from sportconnect.routes import realtime  # noqa: F401

    app.register_blueprint(auth_bp, url_prefix='/api/auth')
    app.register_blueprint(profile_bp, url_prefix='/api/profile')
    app.register_blueprint(challenges_bp, url_prefix='/api/challenges')
    app.register_blueprint(matches_bp, url_prefix='/api/matches')
    app.register_blueprint(leaderboard_bp, url_prefix='/api/leaderboard')
    app.register_blueprint(notifications_bp, url_prefix='/api/notifications')
    app.register_blueprint(posts_bp, url_prefix='/api/posts')

    @app.route('/api/health')
    def health():
        return jsonify({'status': 'ok'})

    with app.app_context():
        from sportconnect import models  # noqa: F401
        db.create_all()

    _warn_missing_integrations(app)
    return app
