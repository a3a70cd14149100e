"""
In-memory record store.
"""

from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Optional

from shared.errors import DuplicateRecordError
from shared.logging import get_logger
from ..records.models import FoodRecord
from .base import RecordStore


class InMemoryRecordStore(RecordStore):
    """Dictionary-backed store for local runs and tests.

    Records are copied on the way in and out so callers never share state
    with the store.
    """

    def __init__(self):
        self.logger = get_logger("traceability.store.memory")
        self.records: Dict[str, FoodRecord] = {}

    async def find_by_trace_id(self, trace_id: str) -> Optional[FoodRecord]:
        record = self.records.get(trace_id)
        return replace(record) if record else None

    async def upsert(
        self,
        trace_id: str,
        fields: Dict[str, Any],
        last_updated: datetime
    ) -> Optional[FoodRecord]:
        existing = self.records.get(trace_id)
        if existing is None:
            return None

        updated = existing.merged(fields, last_updated)
        self.records[trace_id] = updated
        return replace(updated)

    async def insert(self, record: FoodRecord) -> FoodRecord:
        if record.trace_id in self.records:
            raise DuplicateRecordError(
                f"Food item {record.trace_id} already exists",
                details={"trace_id": record.trace_id}
            )
        self.records[record.trace_id] = replace(record)
        self.logger.info("Record inserted", trace_id=record.trace_id)
        return replace(record)
