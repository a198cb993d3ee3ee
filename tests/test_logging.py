import logging

import pytest

from utils import logging as dash_logging


@pytest.mark.parametrize("value, expected", [
    ("debug", logging.DEBUG),
    (" Info ", logging.INFO),
    ("LOUD", logging.WARNING),
    ("", logging.WARNING),
])
def test_level_from_env(monkeypatch, value, expected):
    monkeypatch.setenv(dash_logging.LEVEL_ENV, value)
    assert dash_logging._env_level() == expected


def test_bad_env_level_does_not_break_setup(monkeypatch):
    root = logging.getLogger(dash_logging.ROOT_NAME)
    monkeypatch.setenv(dash_logging.LEVEL_ENV, "verbose")
    monkeypatch.setattr(dash_logging, "_configured", False)
    monkeypatch.setattr(root, "handlers", [])
    monkeypatch.setattr(root, "level", root.level)
    log = dash_logging.get_logger("test")
    assert log.name == "coin_dashboard.test"
    assert root.level == logging.WARNING
    assert len(root.handlers) == 1
