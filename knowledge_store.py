"""
Knowledge store — category/key persistence for checkpoints.

Two implementations of IKnowledgeStore:
  InMemoryKnowledgeStore — versioned dict store (default, tests, simulation)
  RedisKnowledgeStore    — JSON values in Redis, survives restarts

Both are best-effort: failures are logged and reported as False / None so the
trading decision path never blocks on storage.
"""
from __future__ import annotations

import copy
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import redis.asyncio as redis
from loguru import logger


class InMemoryKnowledgeStore:
    """Versioned in-process store. Previous values are kept as history."""

    def __init__(self, max_versions: int = 50):
        self.max_versions = max_versions
        self._knowledge: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._versions: Dict[str, Dict[str, List[Dict[str, Any]]]] = {}

    async def store(self, category: str, key: str, data: Any,
                    metadata: Optional[Dict[str, Any]] = None) -> bool:
        """Store ``data`` under category/key, versioning the previous value."""
        try:
            bucket = self._knowledge.setdefault(category, {})
            history = self._versions.setdefault(category, {}).setdefault(key, [])
            if key in bucket:
                history.append(bucket[key])
                if len(history) > self.max_versions:
                    history.pop(0)
            now = datetime.now(timezone.utc)
            bucket[key] = {
                "data": copy.deepcopy(data),
                "metadata": {**(metadata or {}), "last_updated": now.isoformat()},
                "timestamp": now,
            }
            logger.debug(f"Knowledge stored: {category}/{key}")
            return True
        except Exception as e:
            logger.error(f"Error storing knowledge {category}/{key}: {e}")
            return False

    async def get(self, category: str, key: str) -> Optional[Any]:
        """Latest data for category/key, or None."""
        record = self._knowledge.get(category, {}).get(key)
        return copy.deepcopy(record["data"]) if record else None

    async def get_version(self, category: str, key: str, version: int) -> Optional[Any]:
        history = self._versions.get(category, {}).get(key, [])
        if 0 <= version < len(history):
            return copy.deepcopy(history[version]["data"])
        return None

    async def query_by_category(self, category: str) -> List[Dict[str, Any]]:
        return [{"key": k, **copy.deepcopy(v)} for k, v in self._knowledge.get(category, {}).items()]

    def get_categories(self) -> List[str]:
        return list(self._knowledge)

    def get_version_history(self, category: str, key: str) -> List[Dict[str, Any]]:
        return list(self._versions.get(category, {}).get(key, []))


class RedisKnowledgeStore:
    """
    Redis-backed store.

    Keys: ``{prefix}:{category}:{key}`` hold the latest JSON value;
    ``{prefix}:{category}:{key}:history`` keeps the last ``max_versions`` values.
    """

    def __init__(self, client: Optional[redis.Redis] = None, host: str = "localhost",
                 port: int = 6379, db: int = 2, key_prefix: str = "trade_pipeline",
                 max_versions: int = 50):
        self._client = client or redis.Redis(
            host=host, port=port, db=db,
            decode_responses=True, socket_connect_timeout=5)
        self.key_prefix = key_prefix
        self.max_versions = max_versions

    def _key(self, category: str, key: str) -> str:
        return f"{self.key_prefix}:{category}:{key}"

    async def connect(self) -> bool:
        try:
            await self._client.ping()
            logger.info("Redis knowledge store connected")
            return True
        except Exception as e:
            logger.warning(f"Redis failed: {e}")
            return False

    async def close(self) -> None:
        await self._client.aclose()

    async def store(self, category: str, key: str, data: Any) -> bool:
        redis_key = self._key(category, key)
        try:
            payload = json.dumps(data, default=str)
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.set(redis_key, payload)
                pipe.rpush(f"{redis_key}:history", payload)
                pipe.ltrim(f"{redis_key}:history", -self.max_versions, -1)
                await pipe.execute()
            return True
        except Exception as e:
            logger.error(f"Error storing knowledge {category}/{key} in Redis: {e}")
            return False

    async def get(self, category: str, key: str) -> Optional[Any]:
        try:
            raw = await self._client.get(self._key(category, key))
        except Exception as e:
            logger.error(f"Error reading knowledge {category}/{key} from Redis: {e}")
            return None
        return json.loads(raw) if raw else None
