from __future__ import annotations

from typing import ClassVar, final

from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [x.strip() for x in value.split(",") if x.strip()]


@final
class Settings(BaseSettings):
    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )
    app_name: str = "Offline Sync Engine"

    # Local durable store. sqlite:// is normalized to the aiosqlite driver at runtime.
    database_url: str = "sqlite:///./offline_sync.db"

    # Remote authority
    remote_base_url: str = "http://localhost:8080"
    remote_request_timeout_seconds: float = 15.0
    # {entity_type} is substituted; explicit per-type paths go in remote_collection_paths.
    remote_collection_template: str = "/api/v1/{entity_type}s"
    # Comma-separated entity_type=path pairs, e.g. "price=/api/v1/prices,region=/api/v1/regions".
    remote_collection_paths: str = ""

    # Connectivity probing
    probe_path: str = Field(
        default="/actuator/health",
        validation_alias=AliasChoices("PROBE_PATH", "HEALTH_PROBE_PATH"),
    )
    probe_interval_seconds: float = 30.0
    probe_timeout_seconds: float = 5.0
    good_latency_threshold_ms: int = 1000

    # Sync runs
    sync_batch_size: int = 10
    sync_inter_batch_delay_seconds: float = 1.0
    auto_sync_interval_seconds: float = 60.0
    reconnect_debounce_seconds: float = 2.0

    # Retry / backoff
    max_retry_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 300.0
    # Applied once attempts reach max_attempts so exhausted items sink without being dropped.
    exhausted_retry_delay_seconds: float = 60 * 60 * 24
    # Comma-separated HTTP statuses treated as terminal client errors (empty: retry everything but 409).
    terminal_status_codes: str = ""

    # Conflicts: entity types where the server copy wins automatically.
    server_wins_entity_types: str = "region,quality,user"

    # Retention
    max_offline_storage_days: int = 30
    reference_max_age_seconds: int = 60 * 60 * 24

    log_level: str = "INFO"

    @model_validator(mode="after")
    def _validate_sync_settings(self) -> "Settings":  # pyright: ignore[reportUnusedFunction]
        errors: list[str] = []
        if self.sync_batch_size <= 0:
            errors.append("SYNC_BATCH_SIZE must be positive")
        if self.max_retry_attempts <= 0:
            errors.append("MAX_RETRY_ATTEMPTS must be positive")
        if self.retry_base_delay_seconds <= 0:
            errors.append("RETRY_BASE_DELAY_SECONDS must be positive")
        if self.retry_max_delay_seconds < self.retry_base_delay_seconds:
            errors.append("RETRY_MAX_DELAY_SECONDS must be >= RETRY_BASE_DELAY_SECONDS")
        if self.probe_timeout_seconds <= 0:
            errors.append("PROBE_TIMEOUT_SECONDS must be positive")
        for raw in _split_csv(self.terminal_status_codes):
            if not raw.isdigit():
                errors.append(f"TERMINAL_STATUS_CODES contains a non-numeric value: {raw}")
        if errors:
            raise ValueError("Invalid sync settings: " + "; ".join(errors))
        return self

    def terminal_status_codes_set(self) -> frozenset[int]:
        return frozenset(int(x) for x in _split_csv(self.terminal_status_codes))

    def server_wins_entity_types_set(self) -> frozenset[str]:
        return frozenset(_split_csv(self.server_wins_entity_types))

    def remote_collection_paths_map(self) -> dict[str, str]:
        out: dict[str, str] = {}
        for pair in _split_csv(self.remote_collection_paths):
            entity_type, sep, path = pair.partition("=")
            if not sep or not entity_type.strip() or not path.strip():
                continue
            out[entity_type.strip()] = path.strip()
        return out


_ = Settings._validate_sync_settings


settings = Settings()
