"""Configuration management for Meter Collector."""

from meter_collector.config.schema import AppConfig
from meter_collector.config.manager import ConfigManager
from meter_collector.config.resolve import RuntimeSettings, resolve_runtime_config

__all__ = ["AppConfig", "ConfigManager", "RuntimeSettings", "resolve_runtime_config"]
