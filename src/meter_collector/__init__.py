"""Meter Collector: adaptive field-meter data collection engine."""

try:
    from importlib.metadata import version as _pkg_version
    __version__ = _pkg_version("meter-collector")
except Exception:
    __version__ = "dev"
