"""Tests for configuration validation and helpers."""
from datetime import timedelta

import pytest
from flask import Flask

from config import (DatabaseConfig, TestingConfig, config, get_config, init_config, session_grace,
                    session_ttl, validate_config)
from vanit.modules import get_module_info


def test_testing_config_is_valid():
    assert validate_config(TestingConfig) == []


def test_invalid_settings_are_reported():
    class Broken(TestingConfig):
        SESSION_TTL_MINUTES = 0
        QR_SECRET_KEY = ''
        QR_CODE_SECURITY_TOKEN_LENGTH = 8

    errors = validate_config(Broken)

    assert len(errors) == 3
    assert any('SESSION_TTL_MINUTES' in error for error in errors)


def test_init_config_rejects_invalid_config(monkeypatch):
    class Broken(TestingConfig):
        SESSION_ARCHIVE_GRACE_MINUTES = -1

    monkeypatch.setitem(config, 'broken', Broken)

    with pytest.raises(RuntimeError):
        init_config(Flask(__name__), 'broken')


def test_session_durations():
    settings = {'SESSION_TTL_MINUTES': 15, 'SESSION_ARCHIVE_GRACE_MINUTES': 90}

    assert session_ttl(settings) == timedelta(minutes=15)
    assert session_grace(settings) == timedelta(minutes=90)


def test_module_registry_lists_core_modules():
    modules = get_module_info()

    for name in ('session_tracker', 'attendance_validator', 'alert_lifecycle', 'notification_fanout'):
        assert name in modules


def test_init_config_follows_flask_env(monkeypatch):
    monkeypatch.setenv('FLASK_ENV', 'testing')

    assert get_config() is TestingConfig
    assert init_config(Flask(__name__)) is TestingConfig


def test_database_manager_receives_connection_settings(app):
    db = app.extensions['vanit']['db']

    assert db.check_same_thread is DatabaseConfig.CHECK_SAME_THREAD
    assert db.timeout == DatabaseConfig.TIMEOUT
