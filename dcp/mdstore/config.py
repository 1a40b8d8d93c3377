"""
Configuration for the metadata store.

Settings are read from environment variables with the MDSTORE_ prefix,
e.g. MDSTORE_DATA_DIR=/var/lib/mdstore or MDSTORE_LOG_FORMAT=json.

Invariants:
    - Settings are immutable once the store is built from them
    - Every tunable has a working default so tests need no environment

How to change safely:
    - Add new settings with defaults matching current behaviour
    - Keep max_statement_bytes well below SQLite's SQLITE_MAX_SQL_LENGTH
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings


class StoreSettings(BaseSettings):
    """Metadata store configuration."""

    # Storage
    data_dir: str = Field(default="./data")
    database_name: str = Field(default="metadata.db")
    wal_mode: bool = Field(default=True)
    busy_timeout_ms: int = Field(default=5000)
    cache_size_pages: int = Field(default=-64000, description="SQLite cache size (negative = KB)")
    max_statement_bytes: int = Field(
        default=1024 * 1024,
        description="Upper bound on the length of batched SQL statements",
    )

    # Records
    stale_temp_record_minutes: int = Field(
        default=3 * 24 * 60,
        description="Temporary records older than this are removed when new ones are created",
    )

    # Deferred housekeeping
    housekeeping_interval_seconds: float = Field(default=5.0)
    housekeeping_batch_size: int = Field(default=50)
    housekeeping_max_attempts: int = Field(default=5)
    housekeeping_claim_timeout_seconds: float = Field(
        default=600.0,
        description="Claimed units older than this are taken to belong to a dead process and run again",
    )

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="text", description="text or json")

    model_config = {"env_prefix": "MDSTORE_", "frozen": True}

    @property
    def database_path(self) -> Path:
        """Full path of the SQLite database file."""
        return Path(self.data_dir) / self.database_name


def setup_logging(settings: StoreSettings) -> None:
    """Configure logging based on settings.

    Args:
        settings: Store settings
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    if settings.log_format == "json":
        formatter = logging.Formatter(
            '{"time":"%(asctime)s","level":"%(levelname)s","logger":"%(name)s","message":"%(message)s"}'
        )
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]
