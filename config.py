import os

class Config:
    SECRET_KEY = os.environ.get('SESSION_SECRET', 'dev-key-placeholder')
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL', 'sqlite:///study.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    LOCAL_STORE_PATH = os.environ.get('LOCAL_STORE_PATH', 'local_store.db')
    WEBHOOK_SECRET = os.environ.get('WEBHOOK_SECRET')
    IDENTITY_HEADER = os.environ.get('IDENTITY_HEADER', 'X-User-Id')
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    # Timer defaults, in seconds
    FOCUS_SECONDS = 25 * 60
    SHORT_BREAK_SECONDS = 5 * 60
    LONG_BREAK_SECONDS = 15 * 60
    CYCLES_UNTIL_LONG_BREAK = 4
    AUTO_START_DELAY_SECONDS = 2

    SAVE_INTERVAL_SECONDS = 60
    SESSION_IDLE_TIMEOUT_SECONDS = int(os.environ.get('SESSION_IDLE_TIMEOUT_SECONDS', 300))

    # A day counts towards the streak after 5 minutes of study
    STREAK_MIN_SECONDS = 300
    ANALYTICS_DAYS = 30


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = 'test-key'
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    WEBHOOK_SECRET = None
