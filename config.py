"""
Configuration classes for the Journey Research service
Loads settings from environment variables
"""

import os
from dotenv import load_dotenv

load_dotenv()


def _split_csv(value):
    return [item.strip() for item in (value or '').split(',') if item.strip()]


class Config:
    """Application configuration"""

    # Flask
    SECRET_KEY = os.environ.get('SECRET_KEY')
    if not SECRET_KEY:
        raise RuntimeError("SECRET_KEY environment variable must be set")

    APP_ENV = os.environ.get('APP_ENV', 'production')
    DEBUG = os.environ.get('FLASK_ENV') == 'development' or os.environ.get('FLASK_DEBUG') == '1'

    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = os.environ.get('SESSION_COOKIE_SAMESITE', 'Lax')
    SESSION_COOKIE_SECURE = os.environ.get('SESSION_COOKIE_SECURE', '1') == '1'

    # Database
    DATABASE_PATH = os.environ.get('DATABASE_PATH') or 'journeys.db'

    # Request bodies carry base64 screenshots, so allow more than a CSV upload
    MAX_CONTENT_LENGTH = int(os.environ.get('MAX_CONTENT_LENGTH', str(20 * 1024 * 1024)))

    # CORS for the single-page client
    CORS_ALLOWED_ORIGINS = _split_csv(os.environ.get('CORS_ALLOWED_ORIGINS', ''))

    # Rate limiting
    RATELIMIT_STORAGE_URI = os.environ.get('RATELIMIT_STORAGE_URI', 'memory://')

    # OpenAI
    OPENAI_API_KEY = os.environ.get('OPENAI_API_KEY')
    OPENAI_BASE_URL = os.environ.get('OPENAI_BASE_URL') or None
    OPENAI_TRANSCRIPT_MODEL = os.environ.get('OPENAI_TRANSCRIPT_MODEL', 'gpt-4o')
    OPENAI_DIAGRAM_MODEL = os.environ.get('OPENAI_DIAGRAM_MODEL', 'gpt-4o-2024-11-20')
    OPENAI_EDIT_MODEL = os.environ.get('OPENAI_EDIT_MODEL', 'gpt-4o-mini')
    OPENAI_TIMEOUT = float(os.environ.get('OPENAI_TIMEOUT', '120'))
    OPENAI_MAX_RETRIES = int(os.environ.get('OPENAI_MAX_RETRIES', '2'))

    # Background jobs
    JOB_DISPATCH_MODE = os.environ.get('JOB_DISPATCH_MODE', 'thread')
    JOB_WORKERS = int(os.environ.get('JOB_WORKERS', '4'))
    JOB_PROCESS_SECRET = os.environ.get('JOB_PROCESS_SECRET')
    JOB_STALE_MINUTES = int(os.environ.get('JOB_STALE_MINUTES', '30'))

    # Mail configuration
    MAIL_ENABLED = os.environ.get('MAIL_ENABLED', '0') == '1'
    MAIL_SERVER = os.environ.get('MAIL_SERVER', 'smtp.sendgrid.net')
    MAIL_PORT = int(os.environ.get('MAIL_PORT', '587'))
    MAIL_USE_TLS = os.environ.get('MAIL_USE_TLS', '1') == '1'
    MAIL_USE_SSL = os.environ.get('MAIL_USE_SSL', '0') == '1'
    MAIL_USERNAME = os.environ.get('MAIL_USERNAME')
    MAIL_PASSWORD = os.environ.get('MAIL_PASSWORD')
    MAIL_DEFAULT_SENDER = os.environ.get('MAIL_DEFAULT_SENDER', 'no-reply@example.com')
    MAIL_MAX_RETRIES = int(os.environ.get('MAIL_MAX_RETRIES', '3'))
    PUBLIC_BASE_URL = os.environ.get('PUBLIC_BASE_URL', 'http://localhost:5000')

    # Monitoring / logging
    SENTRY_DSN = os.environ.get('SENTRY_DSN')
    SENTRY_TRACES_SAMPLE_RATE = float(os.environ.get('SENTRY_TRACES_SAMPLE_RATE', '0.1'))
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
    LOG_DIR = os.environ.get('LOG_DIR', 'logs')
