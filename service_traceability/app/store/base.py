"""
Record store interface for the Traceability Service.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Optional

from ..records.models import FoodRecord


class RecordStore(ABC):
    """Persistence keyed by trace identifier.

    Backends raise ``StoreError`` when the underlying storage fails and
    ``DuplicateRecordError`` when inserting an existing key.
    """

    async def start(self):
        """Open connections. Default: nothing to do."""

    async def stop(self):
        """Release connections. Default: nothing to do."""

    async def health_check(self) -> bool:
        return True

    @abstractmethod
    async def find_by_trace_id(self, trace_id: str) -> Optional[FoodRecord]:
        """Return the record or None when absent."""

    @abstractmethod
    async def upsert(
        self,
        trace_id: str,
        fields: Dict[str, Any],
        last_updated: datetime
    ) -> Optional[FoodRecord]:
        """Merge ``fields`` into an existing record.

        Returns the updated record, or None when no record exists. Never
        creates a record.
        """

    @abstractmethod
    async def insert(self, record: FoodRecord) -> FoodRecord:
        """Create a new record."""
