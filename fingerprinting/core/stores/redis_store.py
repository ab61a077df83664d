"""
Redis-backed visitor store.

Layout:
    {prefix}:{visitor_id}      JSON visitor document
    {prefix}:by_last_visit     sorted set, member visitor_id, score last visit (ms)
"""

import json
from typing import Any, Dict, List, Optional

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

from fingerprinting.core.models.config import StoreConfig
from fingerprinting.core.models.visits import VisitorRecord, datetime_to_ms
from fingerprinting.core.stores.visitor_store import VisitorPredicate, VisitorStore, merge_document

logger = structlog.get_logger(__name__)


class RedisVisitorStore(VisitorStore):
    """Visitor documents in Redis, indexed by last visit."""

    def __init__(self, config: StoreConfig, client: Optional[Any] = None):
        self.config = config
        self.redis_client = client or redis.Redis(
            host=config.redis_host,
            port=config.redis_port,
            db=config.redis_db,
            password=config.redis_password,
            socket_timeout=config.socket_timeout,
            decode_responses=True
        )
        self.index_key = f"{config.key_prefix}:by_last_visit"

    def _key(self, visitor_id: str) -> str:
        return f"{self.config.key_prefix}:{visitor_id}"

    async def _load(self, visitor_id: str) -> Optional[Dict[str, Any]]:
        raw = await self.redis_client.get(self._key(visitor_id))
        if raw is None:
            return None
        return json.loads(raw)

    async def find_by_visitor_id(self, visitor_id: str) -> Optional[VisitorRecord]:
        document = await self._load(visitor_id)
        if document is None:
            return None
        return VisitorRecord.from_document(document)

    async def upsert_visitor(self, visitor_id: str, fields: Dict[str, Any]) -> VisitorRecord:
        existing = await self._load(visitor_id)
        record = merge_document(existing, visitor_id, fields)

        await self.redis_client.set(self._key(visitor_id), record.model_dump_json())
        await self.redis_client.zadd(self.index_key, {visitor_id: datetime_to_ms(record.last_visit)})

        logger.debug("Visitor upserted", visitor_id=visitor_id, visit_count=record.visit_count)
        return record

    async def _load_many(self, visitor_ids: List[str]) -> List[VisitorRecord]:
        if not visitor_ids:
            return []
        raw_documents = await self.redis_client.mget([self._key(visitor_id) for visitor_id in visitor_ids])

        records = []
        for visitor_id, raw in zip(visitor_ids, raw_documents):
            if raw is None:
                # Index entry without a document
                continue
            try:
                records.append(VisitorRecord.from_document(json.loads(raw)))
            except ValueError as e:
                logger.warning("Skipping unreadable visitor document", visitor_id=visitor_id, error=str(e))
        return records

    async def list_recent_visitors(self, limit: int,
                                   sort_by_last_visit_desc: bool = True) -> List[VisitorRecord]:
        if limit <= 0:
            return []
        if sort_by_last_visit_desc:
            visitor_ids = await self.redis_client.zrevrange(self.index_key, 0, limit - 1)
        else:
            visitor_ids = await self.redis_client.zrange(self.index_key, 0, limit - 1)
        return await self._load_many(list(visitor_ids))

    async def count_by_predicate(self, predicate: VisitorPredicate) -> int:
        visitor_ids = await self.redis_client.zrange(self.index_key, 0, -1)
        records = await self._load_many(list(visitor_ids))
        return sum(1 for record in records if predicate(record))

    async def health_check(self) -> bool:
        try:
            return bool(await self.redis_client.ping())
        except RedisError as e:
            logger.warning("Redis health check failed", error=str(e))
            return False

    async def close(self) -> None:
        await self.redis_client.aclose()
