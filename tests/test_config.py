import logging

import pytest
from pydantic import ValidationError

from examinsight.core.config import Settings
from examinsight.core.logging import configure_logging


def test_cors_origins_from_comma_list():
    settings = Settings(_env_file=None, CORS_ORIGINS="http://a.test, http://b.test")
    assert settings.CORS_ORIGINS == ["http://a.test", "http://b.test"]


def test_log_format_is_checked():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, LOG_FORMAT="xml")


def test_analytics_config_follows_settings():
    settings = Settings(_env_file=None, MIN_POPULATION_SIZE=10, COEFFICIENT_TABLES={"LGS": {"MAT": 2.0}})
    config = settings.analytics_config()
    assert config.min_population_size == 10
    assert config.coefficient_tables == {"LGS": {"MAT": 2.0}}
    assert config.fingerprint() != Settings(_env_file=None).analytics_config().fingerprint()


def test_environment_env_var(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "production")
    assert Settings(_env_file=None).is_production()


def test_json_logging():
    root = logging.getLogger()
    saved = (list(root.handlers), root.level)
    try:
        configure_logging(Settings(_env_file=None, LOG_FORMAT="JSON", LOG_LEVEL="debug"))
        assert len(root.handlers) == 1
        assert root.level == logging.DEBUG
        assert type(root.handlers[0].formatter).__name__ == "JsonFormatter"
    finally:
        root.handlers[:] = saved[0]
        root.setLevel(saved[1])
