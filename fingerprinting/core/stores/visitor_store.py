"""
Visitor store interface and the in-process implementation.

The engine only reads from the store (historical samples for pattern
analysis); upsert rules for recording a visit live in the service layer,
which composes the field set and hands it to ``upsert_visitor``.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

import structlog

from fingerprinting.core.models.visits import VisitorRecord

logger = structlog.get_logger(__name__)

VisitorPredicate = Callable[[VisitorRecord], bool]


class VisitorStore(ABC):
    """Async document store keyed by visitor id."""

    @abstractmethod
    async def find_by_visitor_id(self, visitor_id: str) -> Optional[VisitorRecord]:
        """Return the stored record or None."""

    @abstractmethod
    async def upsert_visitor(self, visitor_id: str, fields: Dict[str, Any]) -> VisitorRecord:
        """Merge ``fields`` into the visitor document, creating it if absent."""

    @abstractmethod
    async def list_recent_visitors(self, limit: int,
                                   sort_by_last_visit_desc: bool = True) -> List[VisitorRecord]:
        """Up to ``limit`` records ordered by last visit."""

    @abstractmethod
    async def count_by_predicate(self, predicate: VisitorPredicate) -> int:
        """Number of records for which ``predicate`` holds."""

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        """Release connections."""


def merge_document(existing: Optional[Dict[str, Any]], visitor_id: str,
                   fields: Dict[str, Any]) -> VisitorRecord:
    """Apply an upsert field set on top of a stored document."""
    document = dict(existing or {})
    document.update({key: value for key, value in fields.items() if value is not None})
    document["visitor_id"] = visitor_id
    return VisitorRecord.from_document(document)


class InMemoryVisitorStore(VisitorStore):
    """Dictionary-backed store for tests, development and single-process use."""

    def __init__(self):
        self._documents: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def find_by_visitor_id(self, visitor_id: str) -> Optional[VisitorRecord]:
        document = self._documents.get(visitor_id)
        if document is None:
            return None
        return VisitorRecord.from_document(document)

    async def upsert_visitor(self, visitor_id: str, fields: Dict[str, Any]) -> VisitorRecord:
        async with self._lock:
            record = merge_document(self._documents.get(visitor_id), visitor_id, fields)
            self._documents[visitor_id] = record.model_dump()
        logger.debug("Visitor upserted", visitor_id=visitor_id, visit_count=record.visit_count)
        return record

    async def list_recent_visitors(self, limit: int,
                                   sort_by_last_visit_desc: bool = True) -> List[VisitorRecord]:
        records = [VisitorRecord.from_document(doc) for doc in self._documents.values()]
        records.sort(key=lambda record: record.last_visit, reverse=sort_by_last_visit_desc)
        return records[:limit]

    async def count_by_predicate(self, predicate: VisitorPredicate) -> int:
        return sum(1 for doc in self._documents.values() if predicate(VisitorRecord.from_document(doc)))

    def __len__(self) -> int:
        return len(self._documents)
