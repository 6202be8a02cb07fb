import os

basedir = os.path.abspath(os.path.dirname(__file__))


def _env_bool(name, default=False):
    raw = os.environ.get(name)
    if raw is None:
        return default
    return str(raw).strip().lower() in {'1', 'true', 'yes', 'on'}


def _env_int(name, default):
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def _env_float(name, default):
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def _env_int_tuple(name, default):
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        values = tuple(int(item) for item in str(raw).split(',') if item.strip())
    except (TypeError, ValueError):
        return default
    return values or default


def _normalize_database_url(raw_url):
    if not raw_url:
        return raw_url
    if raw_url.startswith('postgres://'):
        return raw_url.replace('postgres://', 'postgresql://', 1)
    return raw_url


class BaseConfig:
    SECRET_KEY = os.environ.get('SECRET_KEY', 'dev-secret-key-change-in-prod')
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    JWT_EXPIRATION_HOURS = _env_int('JWT_EXPIRATION_HOURS', 24)
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
    ADMIN_EMAILS = os.environ.get('ADMIN_EMAILS', '')
    CORS_ALLOWED_ORIGINS = os.environ.get('CORS_ALLOWED_ORIGINS', '*')
    SOCKETIO_ASYNC_MODE = os.environ.get('SOCKETIO_ASYNC_MODE', 'threading')

    # OAuth
    GOOGLE_CLIENT_ID = os.environ.get('GOOGLE_CLIENT_ID', '')
    APPLE_CLIENT_ID = os.environ.get('APPLE_CLIENT_ID', '')

    # Rating engine
    ELO_K_FACTOR = _env_float('ELO_K_FACTOR', 32.0)
    ELO_SEED_RATING = _env_float('ELO_SEED_RATING', 1000.0)
    DEFAULT_DISTRICT = os.environ.get('DEFAULT_DISTRICT', 'unassigned')
    # Upper (exclusive) rank bound of the gold, red and blue badge tiers.
    RANK_TIER_BOUNDS = _env_int_tuple('RANK_TIER_BOUNDS', (25, 50, 75))
    LEADERBOARD_LIMIT = _env_int('LEADERBOARD_LIMIT', 100)

    # Match verification; 0 disables timeout-based auto verification.
    AUTO_VERIFY_HOURS = _env_int('AUTO_VERIFY_HOURS', 48)
    TRACKER_WEBHOOK_SECRET = os.environ.get('TRACKER_WEBHOOK_SECRET', '')

    # Challenges
    NEARBY_DEFAULT_RADIUS_M = _env_float('NEARBY_DEFAULT_RADIUS_M', 50_000.0)
    NEARBY_MAX_RADIUS_M = _env_float('NEARBY_MAX_RADIUS_M', 500_000.0)
    MAX_BID_AMOUNT = _env_int('MAX_BID_AMOUNT', 100_000)
    PAYMENT_CURRENCY = os.environ.get('PAYMENT_CURRENCY', 'usd')

    # Payments: 'manual' records references only, 'stripe' calls the Stripe API.
    PAYMENT_PROCESSOR = os.environ.get('PAYMENT_PROCESSOR', 'manual')
    STRIPE_SECRET_KEY = os.environ.get('STRIPE_SECRET_KEY', '')
    STRIPE_API_BASE = os.environ.get('STRIPE_API_BASE', 'https://api.stripe.com/v1')
    STRIPE_TIMEOUT_SECONDS = _env_float('STRIPE_TIMEOUT_SECONDS', 10.0)

    # Phone verification
    SMS_TEST_MODE = _env_bool('SMS_TEST_MODE', False)
    TWILIO_ACCOUNT_SID = os.environ.get('TWILIO_ACCOUNT_SID', '')
    TWILIO_AUTH_TOKEN = os.environ.get('TWILIO_AUTH_TOKEN', '')
    TWILIO_PHONE_NUMBER = os.environ.get('TWILIO_PHONE_NUMBER', '')
    PHONE_CODE_TTL_MINUTES = _env_int('PHONE_CODE_TTL_MINUTES', 10)
    PHONE_CODE_MAX_ATTEMPTS = _env_int('PHONE_CODE_MAX_ATTEMPTS', 5)


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    SMS_TEST_MODE = _env_bool('SMS_TEST_MODE', True)
    SQLALCHEMY_DATABASE_URI = _normalize_database_url(
        os.environ.get(
            'DATABASE_URL',
            'sqlite:///' + os.path.join(basedir, '..', 'sportconnect_dev.db')
        )
    )


class TestingConfig(BaseConfig):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    LOG_LEVEL = 'WARNING'
    PAYMENT_PROCESSOR = 'manual'
    SMS_TEST_MODE = True
    TRACKER_WEBHOOK_SECRET = 'tracker-test-secret'
    AUTO_VERIFY_HOURS = 48
    ELO_K_FACTOR = 32.0
    ELO_SEED_RATING = 1000.0


class ProductionConfig(BaseConfig):
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = _normalize_database_url(os.environ.get('DATABASE_URL'))


config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
}
