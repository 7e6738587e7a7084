# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Application configuration via environment variables and .env files."""

from pathlib import Path
from typing import Annotated

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="TIACE_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
    )

    # Storage
    db_backend: str = "sqlite"  # "sqlite" or "memory"
    db_path: Path = Path("tiace.db")
    auto_migrate: bool = True
    max_batch_size: int = 500

    # Feed and rule files
    feeds_file: str = ""
    attribution_rules_file: str = ""
    geo_table_file: str = ""

    # Scheduler
    worker_pool_size: int = 4
    per_type_concurrency: Annotated[dict[str, int], NoDecode] = {}
    backoff_base_seconds: float = 60.0
    backoff_ceiling_seconds: float = 3600.0
    max_consecutive_failures: int = 10
    sync_timeout_seconds: float = 900.0
    cancel_grace_seconds: float = 10.0
    scheduler_tick_seconds: float = 15.0
    sync_history_days: int = 30

    @field_validator("per_type_concurrency", mode="before")
    @classmethod
    def _parse_per_type_concurrency(cls, v: object) -> dict[str, int]:
        if isinstance(v, str):
            caps: dict[str, int] = {}
            for pair in v.split(","):
                if "=" not in pair:
                    continue
                name, _, cap = pair.partition("=")
                caps[name.strip()] = int(cap.strip())
            return caps
        return v if isinstance(v, dict) else {}

    # Transport
    request_timeout: float = 30.0
    request_retries: int = 2
    retry_backoff_seconds: float = 1.0
    user_agent: str = "tiace/0.1"

    # Identity
    trusted_reliability: float = 0.8
    reputable_reliability: float = 0.5
    first_seen_tolerance_hours: float = 24.0
    lock_stripes: int = 64

    # Enrichment
    freshness_half_life_days: float = 30.0
    prevalence_saturation: int = 5
    related_prefix_v4: int = 24
    related_prefix_v6: int = 64
    synthesis_edge_confidence: float = 0.5
    enrich_on_corroborate: bool = True

    # Correlation
    cluster_threshold: float = 0.75
    infrastructure_decay: float = 0.9
    infrastructure_fanout: int = 50

    # Change feed
    changefeed_buffer: int = 1024
    changefeed_retention: int = 100_000

    # Query
    query_timeout_seconds: float = 10.0
    hunt_max_depth: int = 3
    default_search_limit: int = 100

    # Cache
    cache_backend: str = "memory"  # "memory" or "redis"
    cache_ttl: int = 3600
    redis_url: str = "redis://localhost:6379/0"

    # Audit
    audit_log_path: str = ""

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    # API server
    api_host: str = "127.0.0.1"
    api_port: int = 8000
    api_keys: Annotated[list[str], NoDecode] = []

    @field_validator("api_keys", mode="before")
    @classmethod
    def _parse_api_keys(cls, v: object) -> list[str]:
        if isinstance(v, str):
            return [k.strip() for k in v.split(",") if k.strip()]
        return v if isinstance(v, list) else []


def get_settings() -> Settings:
    return Settings()
