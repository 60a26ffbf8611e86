"""Shared fixtures for the VanIt boarding and emergency tests.

Each test gets its own SQLite file under tmp_path, a clock it can move
forward, and a fanout whose deliveries are recorded instead of pushed to
sockets.
"""
from datetime import datetime, timedelta

import pytest

from vanit.modules.alert_lifecycle import AlertLifecycle
from vanit.modules.attendance_validator import AttendanceValidator
from vanit.modules.database_manager import DatabaseManager
from vanit.modules.entity_locks import EntityLocks
from vanit.modules.notification_fanout import NotificationFanout
from vanit.modules.qr_generator import QRGenerator
from vanit.modules.session_tracker import SessionTracker


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start=datetime(2026, 10, 17, 7, 30)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class RecordingTransport:
    """Fanout transport remembering every (handle, event) delivery."""

    def __init__(self):
        self.deliveries = []

    def __call__(self, handle, event):
        self.deliveries.append((handle, event))

    def events_for(self, handle, event_type=None):
        return [event for target, event in self.deliveries
                if target == handle and (event_type is None or event.event_type == event_type)]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db(tmp_path):
    manager = DatabaseManager(tmp_path / 'vanit.db')
    yield manager
    manager.close_connection()


@pytest.fixture
def qr():
    return QRGenerator('test-qr-secret', token_length=16)


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def notifier(transport, clock):
    return NotificationFanout(transport=transport, history_size=50, clock=clock)


@pytest.fixture
def locks():
    return EntityLocks()


@pytest.fixture
def sessions(db, qr, notifier, clock, locks):
    return SessionTracker(db, qr, notifier=notifier,
                          ttl=timedelta(minutes=30),
                          archive_grace=timedelta(minutes=60),
                          clock=clock, locks=locks)


@pytest.fixture
def validator(db, sessions, qr, notifier, clock, locks):
    return AttendanceValidator(db, sessions, qr, notifier=notifier, clock=clock, locks=locks)


@pytest.fixture
def alerts(db, notifier, clock, locks):
    return AlertLifecycle(db, notifier=notifier, clock=clock, locks=locks)


@pytest.fixture
def app(tmp_path, clock):
    from app import create_app

    application = create_app('testing', clock=clock, DATABASE_PATH=str(tmp_path / 'app.db'))
    yield application
    application.extensions['vanit']['db'].close_connection()


@pytest.fixture
def client(app):
    return app.test_client()
