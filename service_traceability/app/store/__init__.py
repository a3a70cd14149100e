"""
Record store backends.

- base: the RecordStore interface consumed by RecordService.
- memory: dictionary-backed store used for local runs and tests.
- postgres: asyncpg-backed store for deployments.
"""

from shared.config import BaseConfig
from .base import RecordStore
from .memory import InMemoryRecordStore


def create_record_store(config: BaseConfig) -> RecordStore:
    """Build the store selected by ``config.store_backend``."""
    backend = config.store_backend.lower()
    if backend == "memory":
        return InMemoryRecordStore()
    if backend == "postgres":
        from .postgres import PostgresRecordStore
        return PostgresRecordStore(
            config.postgres_dsn,
            min_size=config.postgres_min_pool_size,
            max_size=config.postgres_max_pool_size,
            command_timeout=config.postgres_command_timeout
        )
    raise ValueError(f"Unknown store backend: {config.store_backend}")
