"""Tests for configuration loading and validation."""

import logging
import pytest

from app.services.config import (
    ConfigService,
    ConfigValidationException,
    default_config_path,
    setup_logging,
)


def write_config(tmp_path, text):
    path = tmp_path / "config.yaml"
    path.write_text(text)
    return str(path)


class TestLoadAndValidate:

    def test_valid_config(self, tmp_path):
        path = write_config(tmp_path, """
prices:
  exchanges: [kraken]
  quote_currencies: [USD]
  cache_ttl_seconds: 30
pnl:
  week_start: monday
logging:
  level: DEBUG
""")
        service = ConfigService(path)

        config = service.load_and_validate()

        assert config["pnl"]["week_start"] == "monday"
        assert service.get("prices.exchanges") == ["kraken"]
        assert service.get("prices.cache_ttl_seconds") == 30

    def test_missing_file_uses_defaults(self, tmp_path):
        service = ConfigService(str(tmp_path / "absent.yaml"))

        assert service.load_and_validate() == {}
        assert service.get("pnl.week_start", "sunday") == "sunday"

    def test_empty_file(self, tmp_path):
        service = ConfigService(write_config(tmp_path, ""))

        assert service.load_and_validate() == {}

    def test_invalid_yaml(self, tmp_path):
        service = ConfigService(write_config(tmp_path, "prices: [unclosed"))

        with pytest.raises(ConfigValidationException) as exc_info:
            service.load_and_validate()

        assert "Invalid YAML" in exc_info.value.errors[0].message

    def test_top_level_must_be_mapping(self, tmp_path):
        service = ConfigService(write_config(tmp_path, "- a\n- b\n"))

        with pytest.raises(ConfigValidationException):
            service.load_and_validate()

    def test_reports_every_error(self, tmp_path):
        path = write_config(tmp_path, """
prices:
  exchanges: binance
  cache_ttl_seconds: -5
pnl:
  week_start: friday
database: {}
""")

        with pytest.raises(ConfigValidationException) as exc_info:
            ConfigService(path).load_and_validate()

        paths = {error.path for error in exc_info.value.errors}
        assert paths == {"prices.exchanges", "prices.cache_ttl_seconds", "pnl.week_start", "database"}

    def test_list_items_are_type_checked(self, tmp_path):
        path = write_config(tmp_path, "prices:\n  quote_currencies: [USDT, 5]\n")

        with pytest.raises(ConfigValidationException) as exc_info:
            ConfigService(path).load_and_validate()

        assert exc_info.value.errors[0].path == "prices.quote_currencies[1]"

    def test_bool_is_not_an_int(self, tmp_path):
        path = write_config(tmp_path, "prices:\n  cache_ttl_seconds: true\n")

        with pytest.raises(ConfigValidationException):
            ConfigService(path).load_and_validate()


class TestConfigPath:

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("PNL_CONFIG", "/etc/pnl/config.yaml")

        assert default_config_path() == "/etc/pnl/config.yaml"

    def test_default_location(self, monkeypatch):
        monkeypatch.delenv("PNL_CONFIG", raising=False)

        assert default_config_path().endswith("config.yaml")


class TestGet:

    def test_missing_keys_return_default(self, tmp_path):
        service = ConfigService(write_config(tmp_path, "pnl:\n  week_start: sunday\n"))
        service.load_and_validate()

        assert service.get("pnl.week_start") == "sunday"
        assert service.get("pnl.week_start.nested", "x") == "x"
        assert service.get("logging.level") is None


def test_setup_logging_applies_level(tmp_path):
    service = ConfigService(write_config(tmp_path, "logging:\n  level: WARNING\n"))
    service.load_and_validate()

    setup_logging(service)

    assert logging.getLogger().level == logging.WARNING
    assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
