"""
Shared pytest configuration
"""

import datetime

import pytest
import pytz


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Fast isolated tests")
    config.addinivalue_line("markers", "slow: Tests that take > 1s")


@pytest.fixture
def fixed_now():
    return datetime.datetime(2026, 10, 18, 12, 0, 0, tzinfo=pytz.UTC)


@pytest.fixture(autouse=True)
def no_telegram(monkeypatch):
    """Never talk to Telegram from tests"""
    from forum_sniper.config import Config
    monkeypatch.setattr(Config, "TELEGRAM_TOKEN", None)
    monkeypatch.setattr(Config, "TELEGRAM_CHAT_ID", None)
