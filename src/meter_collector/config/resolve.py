"""Startup resolution of timeout and schedule settings.

Each setting is resolved once, in order of precedence:

  1. new-style environment override (``COLLECTION_INTERVAL_SECONDS``,
     ``UPLOAD_CRON_EXPRESSION``, ...)
  2. legacy minute-based environment setting, converted to an equivalent
     interval or cron schedule
  3. the value from the loaded configuration (itself defaulting to the
     built-in default)

Invalid values never abort startup: they are reported as
``ConfigurationError`` warnings and the next precedence level is used.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum

from croniter import croniter

from meter_collector.config.schema import AppConfig, CollectionConfig, ScheduleConfig
from meter_collector.errors import ConfigurationError

logger = logging.getLogger(__name__)

ENV_BATCH_TIMEOUT = "BATCH_READ_TIMEOUT_MS"
ENV_SEQUENTIAL_TIMEOUT = "SEQUENTIAL_READ_TIMEOUT_MS"
ENV_COLLECTION_INTERVAL = "COLLECTION_INTERVAL_SECONDS"
ENV_UPLOAD_CRON = "UPLOAD_CRON_EXPRESSION"
ENV_REMOTE_SYNC_CRON = "REMOTE_SYNC_CRON_EXPRESSION"

LEGACY_COLLECTION_MINUTES = "COLLECTION_INTERVAL_MINUTES"
LEGACY_UPLOAD_MINUTES = "UPLOAD_INTERVAL_MINUTES"
LEGACY_REMOTE_SYNC_MINUTES = "REMOTE_SYNC_INTERVAL_MINUTES"

_BUILTIN_COLLECTION = CollectionConfig()
_BUILTIN_SCHEDULE = ScheduleConfig()


class ConfigSource(str, Enum):
    OVERRIDE = "override"
    LEGACY = "legacy"
    DEFAULT = "default"


@dataclass(frozen=True)
class Resolved:
    value: int | str
    source: ConfigSource


@dataclass(frozen=True)
class RuntimeSettings:
    """Immutable settings resolved at startup. Never re-read during a cycle."""

    batch_read_timeout_ms: Resolved
    sequential_read_timeout_ms: Resolved
    collection_interval_seconds: Resolved
    upload_cron_expression: Resolved
    remote_sync_cron_expression: Resolved
    warnings: tuple[ConfigurationError, ...] = field(default_factory=tuple)

    def describe(self) -> dict[str, dict[str, object]]:
        """Setting name → {value, source}, for logs and the status API."""
        names = (
            "batch_read_timeout_ms",
            "sequential_read_timeout_ms",
            "collection_interval_seconds",
            "upload_cron_expression",
            "remote_sync_cron_expression",
        )
        out: dict[str, dict[str, object]] = {}
        for name in names:
            resolved: Resolved = getattr(self, name)
            out[name] = {"value": resolved.value, "source": resolved.source.value}
        return out


def minutes_to_cron(minutes: int) -> tuple[str, bool]:
    """Convert a legacy every-N-minutes setting to a cron expression.

    Returns (expression, exact). ``exact`` is False when cron cannot express
    the interval precisely and the nearest schedule was used.
    """
    if minutes <= 0:
        raise ValueError("minutes must be positive")
    if minutes < 60:
        return f"*/{minutes} * * * *", 60 % minutes == 0
    hours, rem = divmod(minutes, 60)
    if rem >= 30:
        hours += 1
    if hours < 24:
        return f"0 */{hours} * * *", rem == 0 and 24 % hours == 0
    days, rem_hours = divmod(hours, 24)
    if days == 1 and rem_hours == 0 and rem == 0:
        return "0 0 * * *", True
    return f"0 0 */{days} * *", rem == 0 and rem_hours == 0


def _parse_positive_int(name: str, raw: str) -> int:
    try:
        value = int(raw.strip())
    except ValueError as e:
        raise ConfigurationError(name, raw, "not an integer") from e
    if value <= 0:
        raise ConfigurationError(name, raw, "must be positive")
    return value


def _validate_cron(name: str, raw: str) -> str:
    expression = raw.strip()
    if not expression or not croniter.is_valid(expression):
        raise ConfigurationError(name, raw, "invalid cron expression")
    return expression


def resolve_runtime_config(config: AppConfig, env: Mapping[str, str]) -> RuntimeSettings:
    """Resolve timeouts and schedules with override > legacy > default precedence.

    Pure: reads only its arguments. Pass ``dict(os.environ)`` once at startup.
    """
    warnings: list[ConfigurationError] = []

    def from_override(name: str, parse) -> Resolved | None:
        raw = env.get(name)
        if raw is None or raw.strip() == "":
            return None
        try:
            return Resolved(parse(name, raw), ConfigSource.OVERRIDE)
        except ConfigurationError as e:
            warnings.append(e)
            return None

    def from_legacy(name: str, convert) -> Resolved | None:
        raw = env.get(name)
        if raw is None or raw.strip() == "":
            return None
        try:
            minutes = _parse_positive_int(name, raw)
        except ConfigurationError as e:
            warnings.append(e)
            return None
        return Resolved(convert(name, minutes), ConfigSource.LEGACY)

    def legacy_seconds(name: str, minutes: int) -> int:
        return minutes * 60

    def legacy_cron(name: str, minutes: int) -> str:
        expression, exact = minutes_to_cron(minutes)
        if not exact:
            warnings.append(
                ConfigurationError(
                    name, minutes, f"not expressible exactly in cron, using '{expression}'"
                )
            )
        return expression

    def from_default_int(name: str, value: object, builtin: int) -> Resolved:
        if not isinstance(value, int) or isinstance(value, bool):
            warnings.append(ConfigurationError(name, value, "not an integer"))
            return Resolved(builtin, ConfigSource.DEFAULT)
        if value <= 0:
            warnings.append(ConfigurationError(name, value, "must be positive"))
            return Resolved(builtin, ConfigSource.DEFAULT)
        return Resolved(value, ConfigSource.DEFAULT)

    def from_default_cron(name: str, value: object, builtin: str) -> Resolved:
        if not isinstance(value, str):
            warnings.append(ConfigurationError(name, value, "invalid cron expression"))
            return Resolved(builtin, ConfigSource.DEFAULT)
        try:
            return Resolved(_validate_cron(name, value), ConfigSource.DEFAULT)
        except ConfigurationError as e:
            warnings.append(e)
            return Resolved(builtin, ConfigSource.DEFAULT)

    collection = config.collection
    schedule = config.schedule

    batch_timeout = from_override(ENV_BATCH_TIMEOUT, _parse_positive_int) or from_default_int(
        "collection.batch_read_timeout_ms",
        collection.batch_read_timeout_ms,
        _BUILTIN_COLLECTION.batch_read_timeout_ms,
    )
    sequential_timeout = from_override(
        ENV_SEQUENTIAL_TIMEOUT, _parse_positive_int
    ) or from_default_int(
        "collection.sequential_read_timeout_ms",
        collection.sequential_read_timeout_ms,
        _BUILTIN_COLLECTION.sequential_read_timeout_ms,
    )
    interval = (
        from_override(ENV_COLLECTION_INTERVAL, _parse_positive_int)
        or from_legacy(LEGACY_COLLECTION_MINUTES, legacy_seconds)
        or from_default_int(
            "schedule.collection_interval_seconds",
            schedule.collection_interval_seconds,
            _BUILTIN_SCHEDULE.collection_interval_seconds,
        )
    )
    upload_cron = (
        from_override(ENV_UPLOAD_CRON, _validate_cron)
        or from_legacy(LEGACY_UPLOAD_MINUTES, legacy_cron)
        or from_default_cron(
            "schedule.upload_cron_expression",
            schedule.upload_cron_expression,
            _BUILTIN_SCHEDULE.upload_cron_expression,
        )
    )
    remote_sync_cron = (
        from_override(ENV_REMOTE_SYNC_CRON, _validate_cron)
        or from_legacy(LEGACY_REMOTE_SYNC_MINUTES, legacy_cron)
        or from_default_cron(
            "schedule.remote_sync_cron_expression",
            schedule.remote_sync_cron_expression,
            _BUILTIN_SCHEDULE.remote_sync_cron_expression,
        )
    )

    return RuntimeSettings(
        batch_read_timeout_ms=batch_timeout,
        sequential_read_timeout_ms=sequential_timeout,
        collection_interval_seconds=interval,
        upload_cron_expression=upload_cron,
        remote_sync_cron_expression=remote_sync_cron,
        warnings=tuple(warnings),
    )


def log_runtime_settings(settings: RuntimeSettings) -> None:
    """Log every resolved setting with its source, then any fallbacks taken."""
    for name, info in settings.describe().items():
        logger.info("Resolved %s=%s (source: %s)", name, info["value"], info["source"])
    for warning in settings.warnings:
        logger.warning("Configuration value ignored, falling back: %s", warning)
