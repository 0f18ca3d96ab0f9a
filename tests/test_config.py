"""
Unit tests for configuration loading.

Tests strict YAML validation and the pricing override.
"""

import logging
import os
import tempfile
from decimal import Decimal

import pytest
import yaml

from voravia_meter.config.loader import (
    DEFAULT_LOG_FORMAT,
    LoggingConfig,
    MeterConfig,
    configure_logging,
    load_meter_config,
)
from voravia_meter.core.pricing import DEFAULT_RATE_CARD, compute_cost


def write_config(temp_dir, content):
    path = os.path.join(temp_dir, "meter.yaml")
    with open(path, "w", encoding="utf-8") as f:
        f.write(content)
    return path


class TestDefaults:

    def test_no_path_returns_defaults(self):
        config = load_meter_config(None)
        assert config == MeterConfig.default()
        assert config.database.path == "voravia_meter.db"
        assert config.query.max_event_limit == 500
        assert config.rollup.interval_minutes == 60
        assert config.logging.level == "INFO"
        assert config.logging.format == DEFAULT_LOG_FORMAT
        assert config.pricing is DEFAULT_RATE_CARD

    def test_empty_file_returns_defaults(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            path = write_config(temp_dir, "")
            assert load_meter_config(path) == MeterConfig.default()

    def test_partial_config_keeps_other_defaults(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            path = write_config(temp_dir, "rollup:\n  interval_minutes: 15\n")
            config = load_meter_config(path)
            assert config.rollup.interval_minutes == 15
            assert config.query.max_event_limit == 500
            assert config.pricing is DEFAULT_RATE_CARD


class TestFullConfig:

    def test_load_complete_config(self):
        content = """
database:
  path: /var/lib/voravia/meter.db
query:
  max_event_limit: 200
rollup:
  interval_minutes: 30
logging:
  level: debug
  format: "%(levelname)s %(message)s"
pricing:
  version: "2025-06"
  token_rates:
    openai:
      openai_scan_vision:
        input_per_million: 0.40
        output_per_million: 1.60
  flat_rates:
    google:
      google_places_searchNearby: 0.035
"""
        with tempfile.TemporaryDirectory() as temp_dir:
            config = load_meter_config(write_config(temp_dir, content))

        assert config.database.path == "/var/lib/voravia/meter.db"
        assert config.query.max_event_limit == 200
        assert config.rollup.interval_minutes == 30
        assert config.logging.level == "debug"
        assert config.pricing.version == "2025-06"
        rate = config.pricing.token_rate("openai", "openai_scan_vision")
        assert rate.input_per_million == Decimal("0.4")
        assert config.pricing.flat_rate("google", "google_places_searchNearby") == Decimal("0.035")

    def test_pricing_section_replaces_default_card(self):
        content = """
pricing:
  version: "flat-only"
  flat_rates:
    google:
      google_places_searchNearby: 0.04
"""
        with tempfile.TemporaryDirectory() as temp_dir:
            card = load_meter_config(write_config(temp_dir, content)).pricing

        assert compute_cost("google", "google_places_searchNearby", 1, rate_card=card).cost_usd == 0.04
        assert compute_cost("openai", "openai_scan_vision", 1, rate_card=card).priced is False


class TestValidation:

    @pytest.mark.parametrize("content, message", [
        ("unknown: 1\n", "Unknown configuration keys"),
        ("rollup:\n  interval: 5\n", "Unknown rollup keys"),
        ("rollup:\n  interval_minutes: 0\n", "interval_minutes"),
        ("rollup:\n  interval_minutes: true\n", "interval_minutes"),
        ("query:\n  max_event_limit: -1\n", "max_event_limit"),
        ("database: [1, 2]\n", "'database' must be a dictionary"),
        ("logging:\n  level: LOUD\n", "Unknown log level"),
        ("pricing:\n  token_rates: {}\n", "Missing required 'version'"),
        ("pricing:\n  version: v\n  extra: 1\n", "Unknown pricing keys"),
        ("pricing:\n  version: v\n  flat_rates:\n    google: 1\n", "must be a dictionary"),
        ("pricing:\n  version: v\n  flat_rates:\n    google:\n      s: -1\n", "must be >= 0"),
        ("pricing:\n  version: v\n  flat_rates:\n    google:\n      s: abc\n", "must be a number"),
        ("pricing:\n  version: v\n  token_rates:\n    openai:\n      s:\n        input_per_million: 1\n",
         "Missing required 'output_per_million'"),
        ("- just\n- a list\n", "root must be a dictionary"),
    ])
    def test_invalid_config_rejected(self, content, message):
        with tempfile.TemporaryDirectory() as temp_dir:
            path = write_config(temp_dir, content)
            with pytest.raises(ValueError, match=message):
                load_meter_config(path)

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError, match="Meter config file not found"):
            load_meter_config("/nonexistent/meter.yaml")

    def test_invalid_yaml(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            path = write_config(temp_dir, "rollup: [unclosed\n")
            with pytest.raises(yaml.YAMLError):
                load_meter_config(path)


class TestConfigureLogging:

    def test_applies_level(self):
        configure_logging(LoggingConfig(level="DEBUG"))
        assert logging.getLogger().level == logging.DEBUG

    def test_override_wins(self):
        configure_logging(LoggingConfig(level="DEBUG"), "warning")
        assert logging.getLogger().level == logging.WARNING
        configure_logging(LoggingConfig())
