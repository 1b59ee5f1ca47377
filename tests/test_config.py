"""Tests for configuration loading and runtime setting resolution."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from meter_collector.config.manager import ConfigManager
from meter_collector.config.resolve import (
    ConfigSource,
    minutes_to_cron,
    resolve_runtime_config,
)
from meter_collector.config.schema import AppConfig
from meter_collector.errors import ConfigurationError


class TestAppConfig:
    def test_default_config_is_valid(self) -> None:
        config = AppConfig()
        assert config.collection.batch_read_timeout_ms == 5000
        assert config.collection.sequential_read_timeout_ms == 3000
        assert config.collection.batch_size_scope == "meter"
        assert config.schedule.collection_interval_seconds == 900
        assert config.protocol.connect_attempts == 3

    def test_custom_values(self) -> None:
        config = AppConfig(
            collection={"default_batch_size": 20, "worker_pool_size": 8},
            schedule={"upload_cron_expression": "0 * * * *"},
        )
        assert config.collection.default_batch_size == 20
        assert config.collection.worker_pool_size == 8
        assert config.schedule.upload_cron_expression == "0 * * * *"

    def test_rejects_zero_batch_size(self) -> None:
        with pytest.raises(ValidationError):
            AppConfig(collection={"default_batch_size": 0})

    def test_rejects_unknown_scope(self) -> None:
        with pytest.raises(ValidationError):
            AppConfig(collection={"batch_size_scope": "forever"})


class TestConfigManager:
    def test_load_defaults_only(self, tmp_path: Path) -> None:
        defaults_file = tmp_path / "defaults.yaml"
        defaults_file.write_text(
            "collection:\n  default_batch_size: 16\ndb:\n  path: test.db\n"
        )
        mgr = ConfigManager(defaults_path=defaults_file, user_path=tmp_path / "user.yaml")
        config = mgr.load()
        assert config.collection.default_batch_size == 16
        assert config.db.path == "test.db"

    def test_user_overrides(self, tmp_path: Path) -> None:
        defaults_file = tmp_path / "defaults.yaml"
        defaults_file.write_text("collection:\n  worker_pool_size: 4\n")
        user_file = tmp_path / "user.yaml"
        user_file.write_text("collection:\n  worker_pool_size: 12\n")
        mgr = ConfigManager(defaults_path=defaults_file, user_path=user_file)
        config = mgr.load()
        assert config.collection.worker_pool_size == 12
        assert mgr.get_raw()["collection"]["worker_pool_size"] == 12

    def test_missing_files_use_builtin_defaults(self, tmp_path: Path) -> None:
        mgr = ConfigManager(defaults_path=tmp_path / "a.yaml", user_path=tmp_path / "b.yaml")
        config = mgr.load()
        assert config == AppConfig()

    def test_deep_merge(self) -> None:
        base = {"a": {"b": 1, "c": 2}, "d": 3}
        override = {"a": {"b": 10}, "e": 5}
        result = ConfigManager._deep_merge(base, override)
        assert result == {"a": {"b": 10, "c": 2}, "d": 3, "e": 5}

    def test_to_json(self, config_manager: ConfigManager) -> None:
        json_str = config_manager.to_json()
        assert '"batch_read_timeout_ms"' in json_str

    def test_bad_timeouts_in_file_fall_back_with_warnings(self, tmp_path: Path) -> None:
        user_file = tmp_path / "config.yaml"
        user_file.write_text(
            "collection:\n"
            "  batch_read_timeout_ms: 0\n"
            "  sequential_read_timeout_ms: -20\n"
            "schedule:\n"
            "  collection_interval_seconds: fast\n"
            "  upload_cron_expression: 15\n"
        )
        mgr = ConfigManager(defaults_path=tmp_path / "missing.yaml", user_path=user_file)
        config = mgr.load()

        settings = resolve_runtime_config(config, {})
        assert settings.batch_read_timeout_ms.value == 5000
        assert settings.sequential_read_timeout_ms.value == 3000
        assert settings.collection_interval_seconds.value == 900
        assert settings.upload_cron_expression.value == "*/15 * * * *"
        assert {w.setting for w in settings.warnings} == {
            "collection.batch_read_timeout_ms",
            "collection.sequential_read_timeout_ms",
            "schedule.collection_interval_seconds",
            "schedule.upload_cron_expression",
        }
        assert all(isinstance(w, ConfigurationError) for w in settings.warnings)

    def test_valid_numeric_strings_still_parse(self, tmp_path: Path) -> None:
        user_file = tmp_path / "config.yaml"
        user_file.write_text("collection:\n  batch_read_timeout_ms: '7000'\n")
        mgr = ConfigManager(defaults_path=tmp_path / "missing.yaml", user_path=user_file)
        assert mgr.load().collection.batch_read_timeout_ms == 7000

    def test_config_before_load_raises(self, tmp_path: Path) -> None:
        mgr = ConfigManager(defaults_path=tmp_path / "a.yaml")
        with pytest.raises(RuntimeError):
            _ = mgr.config


class TestMinutesToCron:
    def test_divisor_of_hour_is_exact(self) -> None:
        assert minutes_to_cron(15) == ("*/15 * * * *", True)

    def test_non_divisor_is_approximate(self) -> None:
        expression, exact = minutes_to_cron(45)
        assert expression == "*/45 * * * *"
        assert exact is False

    def test_hours(self) -> None:
        assert minutes_to_cron(120) == ("0 */2 * * *", True)

    def test_hours_rounded(self) -> None:
        expression, exact = minutes_to_cron(90)
        assert expression == "0 */2 * * *"
        assert exact is False

    def test_daily(self) -> None:
        assert minutes_to_cron(1440) == ("0 0 * * *", True)

    def test_rejects_non_positive(self) -> None:
        with pytest.raises(ValueError):
            minutes_to_cron(0)


class TestResolveRuntimeConfig:
    def test_defaults(self, config: AppConfig) -> None:
        settings = resolve_runtime_config(config, {})
        assert settings.batch_read_timeout_ms.value == 5000
        assert settings.batch_read_timeout_ms.source == ConfigSource.DEFAULT
        assert settings.sequential_read_timeout_ms.value == 3000
        assert settings.collection_interval_seconds.value == 900
        assert settings.upload_cron_expression.value == "*/15 * * * *"
        assert settings.remote_sync_cron_expression.value == "0 * * * *"
        assert settings.warnings == ()

    def test_config_values_are_defaults_source(self) -> None:
        config = AppConfig(collection={"batch_read_timeout_ms": 8000})
        settings = resolve_runtime_config(config, {})
        assert settings.batch_read_timeout_ms.value == 8000
        assert settings.batch_read_timeout_ms.source == ConfigSource.DEFAULT

    def test_override_wins(self, config: AppConfig) -> None:
        settings = resolve_runtime_config(
            config,
            {
                "BATCH_READ_TIMEOUT_MS": "7000",
                "SEQUENTIAL_READ_TIMEOUT_MS": "1500",
                "COLLECTION_INTERVAL_SECONDS": "300",
                "UPLOAD_CRON_EXPRESSION": "*/5 * * * *",
            },
        )
        assert settings.batch_read_timeout_ms.value == 7000
        assert settings.batch_read_timeout_ms.source == ConfigSource.OVERRIDE
        assert settings.sequential_read_timeout_ms.value == 1500
        assert settings.collection_interval_seconds.value == 300
        assert settings.upload_cron_expression.value == "*/5 * * * *"
        assert settings.upload_cron_expression.source == ConfigSource.OVERRIDE

    def test_override_beats_legacy(self, config: AppConfig) -> None:
        settings = resolve_runtime_config(
            config,
            {"COLLECTION_INTERVAL_SECONDS": "120", "COLLECTION_INTERVAL_MINUTES": "30"},
        )
        assert settings.collection_interval_seconds.value == 120
        assert settings.collection_interval_seconds.source == ConfigSource.OVERRIDE

    def test_legacy_minutes_converted(self, config: AppConfig) -> None:
        settings = resolve_runtime_config(
            config,
            {
                "COLLECTION_INTERVAL_MINUTES": "10",
                "UPLOAD_INTERVAL_MINUTES": "30",
                "REMOTE_SYNC_INTERVAL_MINUTES": "120",
            },
        )
        assert settings.collection_interval_seconds.value == 600
        assert settings.collection_interval_seconds.source == ConfigSource.LEGACY
        assert settings.upload_cron_expression.value == "*/30 * * * *"
        assert settings.upload_cron_expression.source == ConfigSource.LEGACY
        assert settings.remote_sync_cron_expression.value == "0 */2 * * *"
        assert settings.warnings == ()

    def test_inexact_legacy_conversion_warns(self, config: AppConfig) -> None:
        settings = resolve_runtime_config(config, {"UPLOAD_INTERVAL_MINUTES": "45"})
        assert settings.upload_cron_expression.source == ConfigSource.LEGACY
        assert len(settings.warnings) == 1
        assert settings.warnings[0].setting == "UPLOAD_INTERVAL_MINUTES"

    def test_invalid_override_falls_back_with_warning(self, config: AppConfig) -> None:
        settings = resolve_runtime_config(
            config,
            {"BATCH_READ_TIMEOUT_MS": "fast", "UPLOAD_CRON_EXPRESSION": "every day"},
        )
        assert settings.batch_read_timeout_ms.value == 5000
        assert settings.batch_read_timeout_ms.source == ConfigSource.DEFAULT
        assert settings.upload_cron_expression.value == "*/15 * * * *"
        assert {w.setting for w in settings.warnings} == {
            "BATCH_READ_TIMEOUT_MS",
            "UPLOAD_CRON_EXPRESSION",
        }
        assert all(isinstance(w, ConfigurationError) for w in settings.warnings)

    def test_negative_override_rejected(self, config: AppConfig) -> None:
        settings = resolve_runtime_config(config, {"SEQUENTIAL_READ_TIMEOUT_MS": "-5"})
        assert settings.sequential_read_timeout_ms.value == 3000
        assert len(settings.warnings) == 1

    def test_invalid_legacy_falls_through_to_default(self, config: AppConfig) -> None:
        settings = resolve_runtime_config(config, {"COLLECTION_INTERVAL_MINUTES": "0"})
        assert settings.collection_interval_seconds.value == 900
        assert settings.collection_interval_seconds.source == ConfigSource.DEFAULT
        assert len(settings.warnings) == 1

    def test_invalid_configured_cron_uses_builtin(self) -> None:
        config = AppConfig(schedule={"remote_sync_cron_expression": "not a cron"})
        settings = resolve_runtime_config(config, {})
        assert settings.remote_sync_cron_expression.value == "0 * * * *"
        assert len(settings.warnings) == 1

    def test_blank_override_ignored(self, config: AppConfig) -> None:
        settings = resolve_runtime_config(config, {"BATCH_READ_TIMEOUT_MS": "  "})
        assert settings.batch_read_timeout_ms.source == ConfigSource.DEFAULT
        assert settings.warnings == ()

    def test_describe(self, config: AppConfig) -> None:
        settings = resolve_runtime_config(config, {"BATCH_READ_TIMEOUT_MS": "6000"})
        described = settings.describe()
        assert described["batch_read_timeout_ms"] == {"value": 6000, "source": "override"}
        assert described["collection_interval_seconds"]["source"] == "default"
