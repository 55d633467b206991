import os
import tempfile


class Config:
    """Base configuration"""

    # Data directory (database, logs, lock markers)
    DATA_DIR = os.environ.get('DATA_DIR') or '/data'

    # Database
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or f'sqlite:///{os.path.join(DATA_DIR, "replicator.db")}'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Logging
    LOG_DIR = os.environ.get('LOG_DIR') or os.path.join(DATA_DIR, 'logs')

    # Run lock markers, one per job
    LOCK_DIR = os.environ.get('LOCK_DIR') or os.path.join(DATA_DIR, 'locks')

    # Transfer
    RSYNC_BINARY = os.environ.get('RSYNC_BINARY') or 'rsync'
    SSH_CONNECT_TIMEOUT = int(os.environ.get('SSH_CONNECT_TIMEOUT', 5))

    # Scheduler
    SCHEDULER_ENABLED = os.environ.get('SCHEDULER_ENABLED', 'true').lower() == 'true'
    SCHEDULER_TIMEZONE = 'UTC'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = False

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "replicator.db")}'
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    LOCK_DIR = os.path.join(DATA_DIR, 'locks')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    DATA_DIR = os.path.join(tempfile.gettempdir(), 'replicator-tests')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    LOCK_DIR = os.path.join(DATA_DIR, 'locks')
    SCHEDULER_ENABLED = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
