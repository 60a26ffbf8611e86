# VanIt Boarding & Emergency Service Configuration

import os
from datetime import timedelta
from pathlib import Path

# Base directory
BASE_DIR = Path(__file__).parent.absolute()


def _env_flag(name, default='False'):
    return os.environ.get(name, default).lower() in ['true', 'on', '1']


class Config:
    """Base configuration class"""

    # Flask Configuration
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'vanit-secret-key-2025'

    # Database Configuration
    DATABASE_PATH = BASE_DIR / 'database' / 'vanit.db'

    # Boarding Session Configuration
    SESSION_TTL_MINUTES = int(os.environ.get('SESSION_TTL_MINUTES') or 30)
    SESSION_ARCHIVE_GRACE_MINUTES = int(os.environ.get('SESSION_ARCHIVE_GRACE_MINUTES') or 60)
    SESSION_SWEEP_ENABLED = _env_flag('SESSION_SWEEP_ENABLED', 'True')
    SESSION_SWEEP_INTERVAL_SECONDS = int(os.environ.get('SESSION_SWEEP_INTERVAL_SECONDS') or 60)

    # QR Code Configuration
    QR_SECRET_KEY = os.environ.get('QR_SECRET_KEY') or 'vanit-qr-secret-key-2025'
    QR_CODE_SIZE = 10
    QR_CODE_BORDER = 4
    QR_CODE_SECURITY_TOKEN_LENGTH = 32

    # Notification Configuration
    NOTIFICATIONS_MAX_QUEUE_SIZE = 1000

    # Logging Configuration
    LOG_LEVEL = os.environ.get('LOG_LEVEL') or 'INFO'
    LOG_FILE = BASE_DIR / 'logs' / 'vanit.log'
    LOG_MAX_BYTES = 10 * 1024 * 1024  # 10MB
    LOG_BACKUP_COUNT = 5

    # Development Configuration
    DEBUG = _env_flag('DEBUG')
    TESTING = False

    # WebSocket Configuration
    WEBSOCKET_ENABLED = _env_flag('WEBSOCKET_ENABLED', 'True')
    WEBSOCKET_PING_TIMEOUT = 60
    WEBSOCKET_PING_INTERVAL = 25
    CORS_ORIGINS = os.environ.get('CORS_ORIGINS', 'http://localhost:3000,http://localhost:5173').split(',')

    @staticmethod
    def init_app(app):
        """Initialize application configuration"""
        # Create necessary directories
        directories = [
            Path(app.config['DATABASE_PATH']).parent,
            Config.LOG_FILE.parent
        ]

        for directory in directories:
            directory.mkdir(parents=True, exist_ok=True)


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    TESTING = False

    DATABASE_PATH = BASE_DIR / 'database' / 'vanit_dev.db'

    # Short sessions make expiry visible while developing
    SESSION_TTL_MINUTES = 10

    # More verbose logging
    LOG_LEVEL = 'DEBUG'


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    DEBUG = True

    DATABASE_PATH = BASE_DIR / 'database' / 'vanit_test.db'

    # Sweeps are driven explicitly by the tests
    SESSION_TTL_MINUTES = 30
    SESSION_ARCHIVE_GRACE_MINUTES = 60
    SESSION_SWEEP_ENABLED = False

    QR_SECRET_KEY = 'vanit-test-qr-secret'
    NOTIFICATIONS_MAX_QUEUE_SIZE = 50


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    TESTING = False

    # Production database path
    DATABASE_PATH = BASE_DIR / 'database' / 'vanit_prod.db'

    # Production logging
    LOG_LEVEL = 'WARNING'

    @classmethod
    def init_app(cls, app):
        Config.init_app(app)

        # Production-specific initialization
        import logging
        from logging.handlers import RotatingFileHandler

        # Setup file logging
        if not app.debug:
            file_handler = RotatingFileHandler(
                cls.LOG_FILE,
                maxBytes=cls.LOG_MAX_BYTES,
                backupCount=cls.LOG_BACKUP_COUNT
            )
            file_handler.setFormatter(logging.Formatter(
                '%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
            ))
            file_handler.setLevel(logging.INFO)
            app.logger.addHandler(file_handler)

            app.logger.setLevel(logging.INFO)
            app.logger.info('VanIt boarding service startup')


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': DevelopmentConfig
}


class DatabaseConfig:
    """Database specific configuration"""

    # Connection settings
    TIMEOUT = 30.0
    CHECK_SAME_THREAD = False

    # WAL mode lets readers proceed while a scan transaction commits
    JOURNAL_MODE = 'WAL'
    SYNCHRONOUS = 'NORMAL'


# Environment-specific configurations
def get_config():
    """Get configuration based on environment variable"""
    return config.get(os.environ.get('FLASK_ENV', 'default'), DevelopmentConfig)


# Validation functions
def validate_config(config_class):
    """Validate configuration settings"""
    errors = []

    if config_class.SESSION_TTL_MINUTES <= 0:
        errors.append(f"SESSION_TTL_MINUTES must be positive, got {config_class.SESSION_TTL_MINUTES}")

    if config_class.SESSION_ARCHIVE_GRACE_MINUTES < 0:
        errors.append("SESSION_ARCHIVE_GRACE_MINUTES cannot be negative")

    if config_class.SESSION_SWEEP_ENABLED and config_class.SESSION_SWEEP_INTERVAL_SECONDS <= 0:
        errors.append("SESSION_SWEEP_INTERVAL_SECONDS must be positive when the sweep is enabled")

    if not config_class.QR_SECRET_KEY:
        errors.append("QR_SECRET_KEY is required to sign boarding QR codes")

    if config_class.QR_CODE_SECURITY_TOKEN_LENGTH < 16:
        errors.append("QR_CODE_SECURITY_TOKEN_LENGTH must be at least 16 bytes")

    return errors


# Initialize configuration
def init_config(app, config_name=None):
    """Initialize application with configuration"""
    if config_name is None:
        config_class = get_config()
    else:
        config_class = config.get(config_name, DevelopmentConfig)
    app.config.from_object(config_class)

    # Validate configuration
    errors = validate_config(config_class)
    if errors:
        for error in errors:
            app.logger.error(f"Configuration error: {error}")
        raise RuntimeError("Configuration validation failed")

    return config_class


def session_ttl(config_mapping):
    """Session time-to-live as a timedelta from a Flask config mapping."""
    return timedelta(minutes=config_mapping['SESSION_TTL_MINUTES'])


def session_grace(config_mapping):
    return timedelta(minutes=config_mapping['SESSION_ARCHIVE_GRACE_MINUTES'])
