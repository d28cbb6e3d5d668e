"""Service settings for the Focal local-first FinOps cache and anomaly engine."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Configuration for the Focal FinOps cache, anomaly and storage services.

    Every field can be overridden through a ``FOCAL_`` prefixed environment
    variable (e.g. ``FOCAL_DATABASE_URL``) or a ``.env`` file.
    """

    service_name: str = "focal-finops"

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    # Key-value store backing the aggregation cache and metadata
    database_url: str = "sqlite+aiosqlite:///./focal-cache.db"
    cache_namespace: str = "focal_cache"
    metadata_namespace: str = "focal-metadata"
    cache_default_ttl_seconds: float = 24 * 60 * 60  # 24 hours

    # Query engine boundary
    focus_database_url: str | None = None  # None = same database as database_url
    query_timeout_seconds: float = 60.0
    focus_table_name: str = "focus_unified"

    # Anomaly session
    anomaly_window_days: int = 30
    anomaly_auto_refresh_seconds: float = 60 * 60  # 1 hour, 0 disables the timer
    anomaly_freshness_seconds: float = 4 * 60 * 60  # persisted results stay valid for 4 hours

    # Local data footprint (parquet files, indexes, cache files)
    data_dir: str = "./focal-data"
    settings_file: str = "./focal-settings.json"
    storage_quota_bytes: int | None = None  # None = size of the underlying disk
    purge_grace_seconds: float = 1.0

    model_config = SettingsConfigDict(env_prefix="FOCAL_", env_file=".env", extra="ignore")
