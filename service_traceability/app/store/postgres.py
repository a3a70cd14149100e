"""
PostgreSQL record store for the Traceability Service.
"""

import asyncio
from datetime import datetime
from typing import Any, Dict, Optional

import asyncpg

from shared.errors import DuplicateRecordError, StoreError
from shared.logging import get_logger
from ..records.models import FoodRecord
from .base import RecordStore

# Columns a merge may touch; also guards the dynamic UPDATE below
UPDATABLE_COLUMNS = (
    "name",
    "origin",
    "quality_check_date",
    "freshness_expiry_date",
    "certifications",
    "contamination_risk",
    "compliance_status",
    "quality_issue_flag",
)

# asyncpg surfaces connection trouble as OSError / timeouts as well as its own errors
BACKEND_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


class PostgresRecordStore(RecordStore):
    """asyncpg-backed record store."""

    def __init__(
        self,
        dsn: str,
        min_size: int = 2,
        max_size: int = 10,
        command_timeout: float = 30
    ):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self.logger = get_logger("traceability.store.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Open the connection pool and create the schema."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=self.command_timeout
            )
            await self._create_tables()
            self.logger.info("PostgreSQL record store started")
        except BACKEND_ERRORS as e:
            self.logger.error("Failed to start PostgreSQL record store", error=str(e))
            raise StoreError("Failed to start PostgreSQL record store", details={"error": str(e)})

    async def stop(self):
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL record store stopped")

    async def health_check(self) -> bool:
        try:
            async with self._acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except (StoreError, *BACKEND_ERRORS):
            return False

    def _acquire(self):
        if self.pool is None:
            raise StoreError("PostgreSQL record store is not started")
        return self.pool.acquire()

    async def _create_tables(self):
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS food_records (
                    trace_id VARCHAR(255) PRIMARY KEY,
                    name TEXT NOT NULL DEFAULT '',
                    origin TEXT NOT NULL DEFAULT '',
                    quality_check_date TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    freshness_expiry_date TIMESTAMP WITH TIME ZONE,
                    certifications TEXT[] NOT NULL DEFAULT '{}',
                    contamination_risk BOOLEAN NOT NULL DEFAULT FALSE,
                    compliance_status BOOLEAN NOT NULL DEFAULT FALSE,
                    quality_issue_flag BOOLEAN NOT NULL DEFAULT FALSE,
                    last_updated TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                );
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_food_records_expiry ON food_records(freshness_expiry_date);
            """)

    async def find_by_trace_id(self, trace_id: str) -> Optional[FoodRecord]:
        try:
            async with self._acquire() as conn:
                row = await conn.fetchrow(
                    "SELECT * FROM food_records WHERE trace_id = $1", trace_id
                )
        except BACKEND_ERRORS as e:
            self.logger.error("Error loading record", trace_id=trace_id, error=str(e))
            raise StoreError("Failed to load record", details={"trace_id": trace_id, "error": str(e)})

        return self._row_to_record(row) if row else None

    async def upsert(
        self,
        trace_id: str,
        fields: Dict[str, Any],
        last_updated: datetime
    ) -> Optional[FoodRecord]:
        unknown = set(fields) - set(UPDATABLE_COLUMNS)
        if unknown:
            raise ValueError(f"Cannot update columns: {sorted(unknown)}")

        columns = [column for column in UPDATABLE_COLUMNS if column in fields]
        values = [self._to_db(column, fields[column]) for column in columns]
        assignments = [f"{column} = ${index}" for index, column in enumerate(columns, start=3)]
        assignments.append("last_updated = $2")

        query = (
            f"UPDATE food_records SET {', '.join(assignments)} "
            "WHERE trace_id = $1 RETURNING *"
        )

        try:
            async with self._acquire() as conn:
                row = await conn.fetchrow(query, trace_id, last_updated, *values)
        except BACKEND_ERRORS as e:
            self.logger.error("Error updating record", trace_id=trace_id, error=str(e))
            raise StoreError("Failed to update record", details={"trace_id": trace_id, "error": str(e)})

        return self._row_to_record(row) if row else None

    async def insert(self, record: FoodRecord) -> FoodRecord:
        try:
            async with self._acquire() as conn:
                row = await conn.fetchrow("""
                    INSERT INTO food_records (
                        trace_id, name, origin, quality_check_date, freshness_expiry_date,
                        certifications, contamination_risk, compliance_status,
                        quality_issue_flag, last_updated
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                    RETURNING *
                """,
                    record.trace_id, record.name, record.origin, record.quality_check_date,
                    record.freshness_expiry_date, sorted(record.certifications),
                    record.contamination_risk, record.compliance_status,
                    record.quality_issue_flag, record.last_updated
                )
        except asyncpg.UniqueViolationError:
            raise DuplicateRecordError(
                f"Food item {record.trace_id} already exists",
                details={"trace_id": record.trace_id}
            )
        except BACKEND_ERRORS as e:
            self.logger.error("Error inserting record", trace_id=record.trace_id, error=str(e))
            raise StoreError("Failed to insert record", details={"trace_id": record.trace_id, "error": str(e)})

        self.logger.info("Record inserted", trace_id=record.trace_id)
        return self._row_to_record(row)

    @staticmethod
    def _to_db(column: str, value: Any) -> Any:
        if column == "certifications":
            return sorted(value)
        return value

    @staticmethod
    def _row_to_record(row: Any) -> FoodRecord:
        return FoodRecord(
            trace_id=row["trace_id"],
            name=row["name"],
            origin=row["origin"],
            quality_check_date=row["quality_check_date"],
            freshness_expiry_date=row["freshness_expiry_date"],
            certifications=set(row["certifications"] or []),
            contamination_risk=row["contamination_risk"],
            compliance_status=row["compliance_status"],
            quality_issue_flag=row["quality_issue_flag"],
            last_updated=row["last_updated"]
        )
