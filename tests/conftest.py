import base64
from datetime import datetime, timedelta

import pytest

import storage
from app import create_app
from config import TestingConfig
from errors import BackendUnavailable
from models import db

USER = 'user_2abc'
WEBHOOK_SECRET = 'whsec_' + base64.b64encode(b'study-tracker-test-secret').decode()


class FakeClock:
    def __init__(self, now=datetime(2026, 3, 4, 9, 0, 0)):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def app(tmp_path, clock):
    class Config(TestingConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'study.db'}"
        LOCAL_STORE_PATH = str(tmp_path / 'local_store.db')
        FOCUS_SECONDS = 10
        SHORT_BREAK_SECONDS = 3
        LONG_BREAK_SECONDS = 5
        CYCLES_UNTIL_LONG_BREAK = 2

    Config.WEBHOOK_SECRET = WEBHOOK_SECRET
    app = create_app(Config, clock=clock)
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth():
    return {'X-User-Id': USER}


@pytest.fixture
def app_context(app):
    with app.app_context():
        yield


@pytest.fixture
def local_store(app):
    return app.extensions['local_store']


@pytest.fixture
def remote_down(monkeypatch):
    """Every remote backend call fails as if the database were unreachable."""
    def unreachable(*args, **kwargs):
        raise BackendUnavailable("connection refused")

    for backend in (storage.SqlTimerBackend, storage.SqlTaskBackend, storage.SqlNoteBackend):
        for operation in ('read', 'read_range', 'write', 'list', 'get', 'create', 'update', 'delete'):
            if hasattr(backend, operation):
                monkeypatch.setattr(backend, operation, unreachable)
    monkeypatch.setattr(storage, 'ping_remote', unreachable)


@pytest.fixture
def local_down(monkeypatch):
    def unreachable(*args, **kwargs):
        raise BackendUnavailable("disk I/O error")

    for operation in ('get', 'set', 'delete', 'keys'):
        monkeypatch.setattr(storage.LocalStore, operation, unreachable)
