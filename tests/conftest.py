"""Shared fixtures for the kernel build pipeline tests."""

from datetime import datetime
from unittest.mock import Mock

import pytest

from kernel_build import BuildConfig, TelegramNotifier


BUILD_TIME = datetime(2026, 10, 19, 8, 5)


@pytest.fixture
def config(tmp_path):
    """BuildConfig rooted in a temporary source tree with a fixed timestamp."""
    return BuildConfig.create(tmp_path, now=BUILD_TIME, env={})


@pytest.fixture
def notifier():
    """A notifier double that records calls instead of talking to Telegram."""
    double = Mock(spec=TelegramNotifier)
    double.notify_failure.return_value = True
    double.notify_success.return_value = True
    return double


@pytest.fixture
def http_response():
    """Factory for fake requests.Response objects."""
    def make(text="", status_code=200, json_data=None):
        response = Mock()
        response.text = text
        response.status_code = status_code
        response.ok = 200 <= status_code < 300
        response.json.return_value = json_data if json_data is not None else {}
        return response
    return make
