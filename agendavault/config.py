import os
import tempfile
from datetime import timedelta


def _env_int(name, default):
    value = os.environ.get(name)
    return int(value) if value else default


def _env_float(name, default):
    value = os.environ.get(name)
    return float(value) if value else default


class Config:
    """Base configuration"""

    # Flask
    # Get SECRET_KEY from environment, or generate a persistent one in development
    SECRET_KEY = os.environ.get('SECRET_KEY')
    if not SECRET_KEY:
        # Try to read from persistent file in /data directory
        secret_file = '/data/.secret_key'
        if os.path.exists(secret_file):
            with open(secret_file, 'r') as f:
                SECRET_KEY = f.read().strip()
        else:
            # Fallback for development mode - this will cause issues in production
            import secrets
            SECRET_KEY = secrets.token_hex(32)
            print("WARNING: Using non-persistent SECRET_KEY. Set SECRET_KEY environment variable.")

    # Database
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/agendavault.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Session
    PERMANENT_SESSION_LIFETIME = timedelta(hours=24)
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'

    # CSRF
    WTF_CSRF_ENABLED = True
    WTF_CSRF_TIME_LIMIT = None

    # Logging
    LOG_DIR = os.environ.get('LOG_DIR')

    # Remote storage: 's3' (credentials in the database) or 'local' (directory)
    STORAGE_BACKEND = os.environ.get('STORAGE_BACKEND') or 's3'
    LOCAL_STORAGE_DIR = os.environ.get('LOCAL_STORAGE_DIR') or '/data/remote'
    LOCAL_STORAGE_ACCOUNT = os.environ.get('LOCAL_STORAGE_ACCOUNT') or 'local-account'
    S3_ROOT_PREFIX = os.environ.get('S3_ROOT_PREFIX') or 'agenda-vault'

    # Device filesystem holding client attachments (None = desktop, no attachments)
    DEVICE_FILES_DIR = os.environ.get('DEVICE_FILES_DIR')
    DEVICE_CLASS = os.environ.get('DEVICE_CLASS')  # 'mobile' | 'desktop', derived when unset

    # Backup pipeline
    BACKUP_FILE_PREFIX = os.environ.get('BACKUP_FILE_PREFIX') or 'smart-agenda'
    BACKUP_KEEP_COUNT = _env_int('BACKUP_KEEP_COUNT', 10)
    BACKUP_KEY_SALT = 'SmartAgenda-v3.0-backup'
    BACKUP_PBKDF2_ITERATIONS = _env_int('BACKUP_PBKDF2_ITERATIONS', 100000)
    PROGRESS_RELEASE_DELAY = 1.0
    RELOAD_DELAY = 2.0
    SIMULATED_PROGRESS_INTERVAL = 2.0
    SIMULATED_PROGRESS_STEP = 2
    SIMULATED_PROGRESS_CEILING = 94

    # Scheduler
    AUTO_BACKUP_ENABLED = os.environ.get('AUTO_BACKUP_ENABLED', 'true').lower() == 'true'
    AUTO_BACKUP_CHECK_MINUTES = _env_int('AUTO_BACKUP_CHECK_MINUTES', 60)
    SCHEDULER_TIMEZONE = 'UTC'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "agendavault.db")}'
    STORAGE_BACKEND = os.environ.get('STORAGE_BACKEND') or 'local'
    LOCAL_STORAGE_DIR = os.path.join(DATA_DIR, 'remote')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False

    # Production security
    SESSION_COOKIE_SECURE = os.environ.get('HTTPS_ENABLED', 'false').lower() == 'true'


class TestingConfig(Config):
    """Test configuration: in-memory database, no delays, cheap key derivation"""
    TESTING = True
    LOG_DIR = os.path.join(tempfile.gettempdir(), 'agendavault-test-logs')
    DEBUG = False
    SECRET_KEY = 'test-secret-key'
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    WTF_CSRF_ENABLED = False
    STORAGE_BACKEND = 'local'
    LOCAL_STORAGE_DIR = None
    BACKUP_PBKDF2_ITERATIONS = 1000
    PROGRESS_RELEASE_DELAY = 0
    RELOAD_DELAY = 0
    SIMULATED_PROGRESS_INTERVAL = 0.01
    AUTO_BACKUP_ENABLED = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
