"""Tests for SQLite connection handling."""
import gc
import sqlite3
import threading
import time
import weakref
from unittest import mock

import pytest


class TrackedConnection(sqlite3.Connection):
    """Connection subclass so tests can hold weak references to it."""


@pytest.fixture
def tracked_connections():
    live = weakref.WeakSet()
    connect = sqlite3.connect

    def tracked_connect(*args, **kwargs):
        connection = connect(*args, factory=TrackedConnection, **kwargs)
        live.add(connection)
        return connection

    with mock.patch('sqlite3.connect', tracked_connect):
        yield live


def test_connections_of_finished_threads_are_released(db, tracked_connections):
    def run_query():
        assert db.execute_query("SELECT 1 AS one") == [{'one': 1}]

    for _ in range(100):
        worker = threading.Thread(target=run_query)
        worker.start()
        worker.join()

    deadline = time.monotonic() + 2.0
    while tracked_connections and time.monotonic() < deadline:
        gc.collect()
        time.sleep(0.01)

    assert len(tracked_connections) == 0


def test_close_connection_is_repeatable_and_reconnects(db):
    with db.get_connection() as conn:
        first = conn

    db.close_connection()
    db.close_connection()

    with pytest.raises(sqlite3.ProgrammingError):
        first.execute("SELECT 1")
    assert db.execute_query("SELECT 1 AS one", fetch_all=False) == {'one': 1}


def test_request_teardown_closes_the_connection(app, client):
    db = app.extensions['vanit']['db']

    assert client.get('/api/sessions/active').status_code == 200

    assert getattr(db._local, 'connection', None) is None


def test_constraint_violation_rolls_back_the_transaction(db):
    db.execute_update(
        """INSERT INTO boarding_sessions (session_id, token, route_id, captain_id, created_at, expires_at)
           VALUES ('s1', 't1', 'R1', 'C1', '2026-10-17T07:30:00.000000', '2026-10-17T08:00:00.000000')""")

    with pytest.raises(sqlite3.IntegrityError):
        with db.transaction() as conn:
            conn.execute("UPDATE boarding_sessions SET onboarded_count = 5 WHERE session_id = 's1'")
            conn.execute(
                """INSERT INTO boarding_sessions (session_id, token, route_id, captain_id, created_at, expires_at)
                   VALUES ('s2', 't2', 'R1', 'C1', '2026-10-17T07:31:00.000000', '2026-10-17T08:01:00.000000')""")

    row = db.execute_query("SELECT onboarded_count FROM boarding_sessions WHERE session_id = 's1'",
                           fetch_all=False)
    assert row['onboarded_count'] == 0
