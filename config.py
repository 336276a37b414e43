import os


def _env_flag(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
    APP_ENV = os.environ.get('APP_ENV', 'development')

    # Shared signing secret for session tokens
    SECRET_KEY = os.environ.get('SECRET_KEY') or os.environ.get('JWT_SECRET') or 'fallback-secret'

    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL', 'sqlite:///geolocation.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {'pool_pre_ping': True}
    # Options for the throwaway engine used by the raw SQL fallback
    FALLBACK_ENGINE_OPTIONS = {'pool_size': 1}

    IPINFO_TOKEN = os.environ.get('IPINFO_TOKEN')
    PROVIDER_TIMEOUT = float(os.environ.get('PROVIDER_TIMEOUT', '5'))
    SYNTHETIC_FALLBACK_ENABLED = _env_flag('SYNTHETIC_FALLBACK_ENABLED', True)
    # Also record authenticated lookups of an explicit IP to the caller's history
    RECORD_AUTHENTICATED_LOOKUPS = _env_flag('RECORD_AUTHENTICATED_LOOKUPS', False)

    AUTH_COOKIE_NAME = 'auth-token'
    AUTH_TOKEN_TTL = 60 * 60 * 24
    AUTH_COOKIE_SECURE = _env_flag('AUTH_COOKIE_SECURE', APP_ENV == 'production')
    AUTH_PROTECTED_PREFIX = os.environ.get('AUTH_PROTECTED_PREFIX', '/jlabs/home')
    AUTH_LOGIN_PATH = os.environ.get('AUTH_LOGIN_PATH', '/jlabs/login')
    AUTH_HOME_PATH = os.environ.get('AUTH_HOME_PATH', '/jlabs/home')

    SEED_EMAIL = os.environ.get('SEED_EMAIL', 'test@example.com')
    SEED_PASSWORD = os.environ.get('SEED_PASSWORD', 'password123')

    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
    LOG_FILE = os.environ.get('LOG_FILE')
