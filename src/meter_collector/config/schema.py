"""Pydantic configuration models for all system settings."""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, ValidationError, ValidatorFunctionWrapHandler, WrapValidator


def _keep_unparsed(value: Any, handler: ValidatorFunctionWrapHandler) -> Any:
    """Pass a value of the wrong type through unchanged.

    Timeouts and schedules are checked by ``resolve_runtime_config``, which
    reports a bad value and falls back to the built-in default.
    """
    try:
        return handler(value)
    except ValidationError:
        return value


# May hold the raw configured value when it does not parse
LenientInt = Annotated[int, WrapValidator(_keep_unparsed)]
LenientStr = Annotated[str, WrapValidator(_keep_unparsed)]


class CollectionConfig(BaseModel):
    batch_read_timeout_ms: LenientInt = 5000
    sequential_read_timeout_ms: LenientInt = 3000
    default_batch_size: int = Field(10, ge=1)
    max_shrink_attempts: int | None = Field(None, ge=1)  # None = floor(log2(B0)) + 1
    worker_pool_size: int = Field(4, ge=1)
    # "meter": batch size resets for every meter; "cycle": degraded size carries over
    batch_size_scope: Literal["meter", "cycle"] = "meter"
    telemetry_history_size: int = 500


class ProtocolConfig(BaseModel):
    connect_timeout_seconds: float = 3.0
    # Upper bound inside the transport; per-operation timeouts are enforced by the client
    transport_timeout_seconds: float = 60.0
    connect_attempts: int = Field(3, ge=1, le=10)
    connect_backoff_seconds: float = 0.5
    connect_backoff_max_seconds: float = 2.0
    idle_timeout_seconds: int = 300
    max_registers_per_request: int = Field(125, ge=1, le=125)


class ScheduleConfig(BaseModel):
    collection_interval_seconds: LenientInt = 900
    upload_cron_expression: LenientStr = "*/15 * * * *"
    remote_sync_cron_expression: LenientStr = "0 * * * *"
    run_collection_on_start: bool = True


class SyncConfig(BaseModel):
    enabled: bool = False
    base_url: str = ""
    api_key: str = ""
    timeout_seconds: float = 30.0
    skip_history_size: int = 100


class UploadConfig(BaseModel):
    enabled: bool = False
    base_url: str = ""
    api_key: str = ""
    batch_size: int = Field(500, ge=1)
    timeout_seconds: float = 30.0


class APIConfig(BaseModel):
    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8090


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "json"
    file: str = ""


class DBConfig(BaseModel):
    path: str = "meter_collector.db"


class AppConfig(BaseModel):
    """Root configuration model containing all system settings."""

    collection: CollectionConfig = CollectionConfig()
    protocol: ProtocolConfig = ProtocolConfig()
    schedule: ScheduleConfig = ScheduleConfig()
    sync: SyncConfig = SyncConfig()
    upload: UploadConfig = UploadConfig()
    api: APIConfig = APIConfig()
    logging: LoggingConfig = LoggingConfig()
    db: DBConfig = DBConfig()
